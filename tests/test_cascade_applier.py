"""Tests for planhub.services.cascade_applier.

Test strategy
-------------
Regeneration is never sent over the network: the ``gateway`` fixture
installs a log-only RegenerationGateway and tests patch its ``regenerate``
with patch.object to script successes, failures and timeouts per document.
"""

import threading
from unittest.mock import patch

import pytest
from sqlalchemy import select

from planhub.core.exceptions import ConflictError, NotFoundError, ValidationError
from planhub.integrations.regeneration_gateway import GatewayResult
from planhub.models import db
from planhub.models.change import ApplyBatch, CascadeEvent
from planhub.services import cascade_applier, change_intake, document_service
from planhub.services.cascade_applier import apply_changes, reject_changes


def _ok(*_args, **_kwargs):
    return GatewayResult(ok=True, status_code=202, error=None, duration_ms=1)


def _fail_for(*failing_ids, timed_out=False):
    def _regenerate(doc_id, fields):
        if doc_id in failing_ids:
            return GatewayResult(
                ok=False, status_code=None, error="Request timed out after 1.0s" if timed_out else "HTTP 500: boom",
                duration_ms=1, timed_out=timed_out,
            )
        return _ok()
    return _regenerate


def _status(doc):
    return document_service.get_derived(doc["id"])


# ═════════════════════════════════════════════════════════════════════════════
# Merge
# ═════════════════════════════════════════════════════════════════════════════


class TestMerge:
    def test_cascade_to_auto_updateable_doc(self, root, make_derived, submit, gateway):
        doc = make_derived("presentation", ["companyName"])
        change = submit("companyName", "Acme Corp")

        with patch.object(gateway, "regenerate", side_effect=_ok) as regen:
            result = apply_changes(root["id"], [change["id"]], [doc["id"]])

        assert result.applied_change_ids == [change["id"]]
        assert result.cascaded_doc_ids == [doc["id"]]
        assert result.flagged_doc_ids == []
        assert result.conflicts == []
        regen.assert_called_once_with(doc["id"], ["companyName"])

        live = document_service.get_root(root["id"])
        assert live["fields"]["companyName"] == "Acme Corp"
        assert live["version"] == 2
        assert result.root_version == 2
        assert _status(doc)["status"] == "in_progress"
        assert change_intake.get_change(change["id"])["resolution"] == "accepted"

    def test_unselected_impacted_doc_is_flagged(self, root, make_derived, submit, gateway):
        b = make_derived("presentation", ["companyName"])
        e = make_derived("generic", ["companyName"])
        change = submit("companyName", "Acme Corp")

        with patch.object(gateway, "regenerate", side_effect=_ok):
            result = apply_changes(root["id"], [change["id"]], [b["id"]])

        assert result.cascaded_doc_ids == [b["id"]]
        assert result.flagged_doc_ids == [e["id"]]
        assert "companyName" in result.flag_reasons[e["id"]]

        flagged = _status(e)
        assert flagged["status"] == "needs_update"
        assert flagged["outstanding_fields"] == ["companyName"]
        assert document_service.get_root(root["id"])["fields"]["companyName"] == "Acme Corp"

    def test_no_targets_flags_every_impacted_doc(self, root, make_derived, submit, gateway):
        a = make_derived("marketing", ["targetAudience"])
        make_derived("presentation", ["companyName"])
        change = submit("targetAudience", "Enterprises")

        with patch.object(gateway, "regenerate", side_effect=_ok) as regen:
            result = apply_changes(root["id"], [change["id"]])

        regen.assert_not_called()
        assert result.cascaded_doc_ids == []
        assert result.flagged_doc_ids == [a["id"]]

    def test_new_field_is_added_to_root(self, root, submit, gateway):
        change = submit("strategy.channels", ["web"])
        apply_changes(root["id"], [change["id"]])
        assert document_service.get_root(root["id"])["fields"]["strategy.channels"] == ["web"]

    def test_replacing_parent_drops_child_keys(self, root, submit, gateway):
        change = submit("businessInfo", {"founded": 2020, "city": "Oslo"})
        apply_changes(root["id"], [change["id"]])

        fields = document_service.get_root(root["id"])["fields"]
        assert fields["businessInfo"] == {"founded": 2020, "city": "Oslo"}
        assert "businessInfo.founded" not in fields

    def test_batch_records_events(self, root, make_derived, submit, gateway):
        b = make_derived("presentation", ["companyName"])
        e = make_derived("generic", ["companyName"])
        change = submit("companyName", "Acme Corp")

        with patch.object(gateway, "regenerate", side_effect=_ok):
            result = apply_changes(root["id"], [change["id"]], [b["id"]])

        batch = db.session.get(ApplyBatch, result.batch_id)
        outcomes = {ev.derived_document_id: ev.outcome for ev in batch.events}
        assert outcomes == {b["id"]: "cascaded", e["id"]: "flagged"}


# ═════════════════════════════════════════════════════════════════════════════
# Validation is all-or-nothing
# ═════════════════════════════════════════════════════════════════════════════


class TestValidation:
    def test_stale_change_aborts_whole_batch(self, root, make_derived, submit, gateway):
        make_derived("presentation", ["companyName", "industry"])
        first = submit("companyName", "Acme Corp")
        stale = submit("industry", "Tea")
        newer = submit("industry", "Cocoa")
        apply_changes(root["id"], [newer["id"]])
        version = document_service.get_root(root["id"])["version"]

        with pytest.raises(ConflictError) as exc_info:
            apply_changes(root["id"], [first["id"], stale["id"]])

        assert exc_info.value.change_ids == [stale["id"]]
        live = document_service.get_root(root["id"])
        assert live["fields"]["companyName"] == "Acme"
        assert live["version"] == version
        assert change_intake.get_change(first["id"])["resolution"] is None

    def test_child_change_stale_after_parent_replaced(self, root, submit, gateway):
        child = submit("objectives.primary", "Grow ARR")
        parent = submit("objectives", {"primary": "Cut costs"})
        apply_changes(root["id"], [parent["id"]])
        version = document_service.get_root(root["id"])["version"]

        with pytest.raises(ConflictError) as exc_info:
            apply_changes(root["id"], [child["id"]])

        assert exc_info.value.change_ids == [child["id"]]
        live = document_service.get_root(root["id"])
        assert live["fields"]["objectives"] == {"primary": "Cut costs"}
        assert "objectives.primary" not in live["fields"]
        assert live["version"] == version
        assert change_intake.get_change(child["id"])["resolution"] is None

    def test_parent_change_stale_after_child_edited(self, root, submit, gateway):
        parent = submit("businessInfo", {"founded": 2019})
        child = submit("businessInfo.founded", 2020)
        apply_changes(root["id"], [child["id"]])

        with pytest.raises(ConflictError) as exc_info:
            apply_changes(root["id"], [parent["id"]])

        assert exc_info.value.change_ids == [parent["id"]]
        assert document_service.get_root(root["id"])["fields"]["businessInfo.founded"] == 2020

    def test_parent_and_child_in_one_batch_rejected(self, root, submit, gateway):
        parent = submit("objectives", {"primary": "Cut costs"})
        child = submit("objectives.primary", "Grow ARR")

        with pytest.raises(ValidationError) as exc_info:
            apply_changes(root["id"], [parent["id"], child["id"]])

        assert exc_info.value.details["change_ids"] == [parent["id"], child["id"]]
        live = document_service.get_root(root["id"])
        assert live["fields"]["objectives"] == "Open 3 stores"
        assert live["version"] == 1

    def test_sibling_paths_apply_together(self, root, submit, gateway):
        a = submit("strategy.channels", ["web"])
        b = submit("strategy.pricing", "premium")
        result = apply_changes(root["id"], [a["id"], b["id"]])
        assert result.applied_change_ids == [a["id"], b["id"]]

    def test_empty_batch_rejected(self, root, gateway):
        with pytest.raises(ValidationError):
            apply_changes(root["id"], [])

    def test_unknown_change_rejected(self, root, gateway):
        with pytest.raises(NotFoundError):
            apply_changes(root["id"], ["nope"])

    def test_two_changes_to_same_path_rejected(self, root, submit, gateway):
        a = submit("companyName", "A")
        b = submit("companyName", "B")
        with pytest.raises(ValidationError):
            apply_changes(root["id"], [a["id"], b["id"]])

    def test_rejected_change_cannot_be_applied(self, root, submit, gateway):
        change = submit("companyName", "A")
        reject_changes(root["id"], [change["id"]])
        with pytest.raises(ValidationError):
            apply_changes(root["id"], [change["id"]])

    def test_target_requiring_review_is_ineligible(self, root, make_derived, submit, gateway):
        doc = make_derived("marketing", ["targetAudience"])
        change = submit("targetAudience", "Enterprises")

        with pytest.raises(ValidationError) as exc_info:
            apply_changes(root["id"], [change["id"]], [doc["id"]])

        assert exc_info.value.details["ineligible"] == [doc["id"]]
        assert document_service.get_root(root["id"])["version"] == 1

    def test_target_without_impact_is_ineligible(self, root, make_derived, submit, gateway):
        doc = make_derived("marketing", ["keywords"])
        change = submit("companyName", "Acme Corp")
        with pytest.raises(ValidationError):
            apply_changes(root["id"], [change["id"]], [doc["id"]])

    def test_target_of_other_root_not_found(self, root, make_derived, submit, gateway):
        other = document_service.create_root(name="Other", fields={"companyName": "X"})
        foreign = make_derived("presentation", ["companyName"], root_id=other["id"])
        change = submit("companyName", "Acme Corp")
        with pytest.raises(NotFoundError):
            apply_changes(root["id"], [change["id"]], [foreign["id"]])


# ═════════════════════════════════════════════════════════════════════════════
# Cascade failures
# ═════════════════════════════════════════════════════════════════════════════


class TestCascadeFailures:
    def test_failure_flags_only_failing_doc(self, root, make_derived, submit, gateway):
        a = make_derived("presentation", ["companyName"])
        b = make_derived("social_media", ["companyName"])
        change = submit("companyName", "Acme Corp")

        with patch.object(gateway, "regenerate", side_effect=_fail_for(b["id"])):
            result = apply_changes(root["id"], [change["id"]], [a["id"], b["id"]])

        assert result.cascaded_doc_ids == [a["id"]]
        assert result.flagged_doc_ids == [b["id"]]
        assert "HTTP 500" in result.flag_reasons[b["id"]]
        assert _status(a)["status"] == "in_progress"
        assert _status(b)["status"] == "needs_update"
        assert document_service.get_root(root["id"])["fields"]["companyName"] == "Acme Corp"

    def test_timeout_is_a_failure(self, root, make_derived, submit, gateway):
        a = make_derived("presentation", ["companyName"])
        change = submit("companyName", "Acme Corp")

        with patch.object(gateway, "regenerate", side_effect=_fail_for(a["id"], timed_out=True)):
            result = apply_changes(root["id"], [change["id"]], [a["id"]])

        assert result.flagged_doc_ids == [a["id"]]
        assert "timed out" in result.flag_reasons[a["id"]]

    def test_unexpected_exception_is_contained(self, root, make_derived, submit, gateway):
        a = make_derived("presentation", ["companyName"])
        change = submit("companyName", "Acme Corp")

        with patch.object(gateway, "regenerate", side_effect=RuntimeError("kaboom")):
            result = apply_changes(root["id"], [change["id"]], [a["id"]])

        assert result.flagged_doc_ids == [a["id"]]
        assert "kaboom" in result.flag_reasons[a["id"]]

    def test_flagged_impact_resurfaces_until_handled(self, root, make_derived, submit, gateway):
        doc = make_derived("presentation", ["companyName"])
        change = submit("companyName", "Acme Corp")
        apply_changes(root["id"], [change["id"]])

        from planhub.services.impact_classifier import compute_impacts_for
        [record] = compute_impacts_for(root["id"], [])
        assert record.derived_document_id == doc["id"]
        assert record.affected_fields == frozenset({"companyName"})

        document_service.start_work(doc["id"])
        assert compute_impacts_for(root["id"], []) == []


# ═════════════════════════════════════════════════════════════════════════════
# Retry safety and rejection
# ═════════════════════════════════════════════════════════════════════════════


class TestRetryAndReject:
    def test_reapplying_same_batch_replays_result(self, root, make_derived, submit, gateway):
        doc = make_derived("presentation", ["companyName"])
        change = submit("companyName", "Acme Corp")

        with patch.object(gateway, "regenerate", side_effect=_ok) as regen:
            first = apply_changes(root["id"], [change["id"]], [doc["id"]])
            again = apply_changes(root["id"], [change["id"]], [doc["id"]])

        assert regen.call_count == 1
        assert again.replayed is True
        assert again.batch_id == first.batch_id
        assert again.cascaded_doc_ids == first.cascaded_doc_ids
        assert document_service.get_root(root["id"])["version"] == 2
        assert len(db.session.execute(select(CascadeEvent)).scalars().all()) == 1

    def test_reject_is_inert(self, root, make_derived, submit, gateway):
        doc = make_derived("presentation", ["companyName"])
        change = submit("companyName", "Acme Corp")

        rejected = reject_changes(root["id"], [change["id"]])

        assert rejected == [change["id"]]
        live = document_service.get_root(root["id"])
        assert live["fields"]["companyName"] == "Acme"
        assert live["version"] == 1
        assert _status(doc)["status"] == "not_started"
        assert change_intake.list_pending_changes(root["id"]) == []

    def test_reject_twice_is_noop(self, root, submit, gateway):
        change = submit("companyName", "Acme Corp")
        reject_changes(root["id"], [change["id"]])
        assert reject_changes(root["id"], [change["id"]]) == []

    def test_accepted_change_cannot_be_rejected(self, root, submit, gateway):
        change = submit("companyName", "Acme Corp")
        apply_changes(root["id"], [change["id"]])
        with pytest.raises(ValidationError):
            reject_changes(root["id"], [change["id"]])


# ═════════════════════════════════════════════════════════════════════════════
# Concurrency
# ═════════════════════════════════════════════════════════════════════════════


class TestConcurrency:
    def test_regeneration_runs_in_parallel(self, root, make_derived, submit, gateway):
        docs = [make_derived("presentation", ["companyName"]) for _ in range(3)]
        change = submit("companyName", "Acme Corp")
        barrier = threading.Barrier(3, timeout=5)

        def _regenerate(doc_id, fields):
            barrier.wait()
            return _ok()

        with patch.object(gateway, "regenerate", side_effect=_regenerate):
            result = apply_changes(
                root["id"], [change["id"]], [d["id"] for d in docs], max_workers=3,
            )

        assert sorted(result.cascaded_doc_ids) == sorted(d["id"] for d in docs)

    def test_outcomes_written_after_relocking_rows(self, root, make_derived, submit, gateway):
        target = make_derived("presentation", ["companyName"])
        other = make_derived("generic", ["companyName"])
        change = submit("companyName", "Acme Corp")
        calls = []
        load_root = document_service.load_root
        lock_derived = document_service.lock_derived

        def _load_root(root_id, *, for_update=False):
            calls.append(("root", for_update))
            return load_root(root_id, for_update=for_update)

        def _lock_derived(ids):
            calls.append(("derived", sorted(ids)))
            return lock_derived(ids)

        def _regenerate(doc_id, fields):
            calls.append(("regenerate", doc_id))
            return _ok()

        with patch.object(document_service, "load_root", side_effect=_load_root), \
                patch.object(document_service, "lock_derived", side_effect=_lock_derived), \
                patch.object(gateway, "regenerate", side_effect=_regenerate):
            result = apply_changes(root["id"], [change["id"]], [target["id"]])

        assert calls == [
            ("root", True),
            ("root", True),
            ("derived", sorted([target["id"], other["id"]])),
            ("regenerate", target["id"]),
        ]
        assert result.cascaded_doc_ids == [target["id"]]
        assert _status(other)["status"] == "needs_update"

    def test_root_lock_blocks_same_root_only(self):
        results = {}

        def _try(key):
            lock = cascade_applier.root_locks._get(key)
            got = lock.acquire(timeout=0.05)
            results[key] = got
            if got:
                lock.release()

        with cascade_applier.root_locks.hold("root-1"):
            threads = [threading.Thread(target=_try, args=(k,)) for k in ("root-1", "root-2")]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

        assert results == {"root-1": False, "root-2": True}
