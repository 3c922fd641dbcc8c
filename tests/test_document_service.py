"""Tests for planhub.services.document_service — roots, derived documents and
their explicit lifecycle transitions."""

import pytest

from planhub.core.exceptions import NotFoundError, ValidationError
from planhub.models import db
from planhub.models.document import DerivedDocument
from planhub.services import document_service as svc


# ── Roots ─────────────────────────────────────────────────────────────────────


class TestRootDocuments:
    def test_create_root_defaults(self):
        root = svc.create_root()
        assert root["status"] == "draft"
        assert root["version"] == 1
        assert root["fields"] == {}
        assert root["name"] == "Untitled plan"

    def test_create_root_rejects_malformed_field_path(self):
        with pytest.raises(ValidationError):
            svc.create_root(fields={"bad path": 1})

    def test_list_and_get(self, root):
        assert [r["id"] for r in svc.list_roots()] == [root["id"]]
        assert svc.get_root(root["id"])["fields"]["companyName"] == "Acme"

    def test_get_unknown_root(self):
        with pytest.raises(NotFoundError):
            svc.get_root("nope")

    def test_status_moves_forward(self, root):
        assert svc.advance_root_status(root["id"], "in_review")["status"] == "in_review"
        assert svc.advance_root_status(root["id"], "approved")["status"] == "approved"

    def test_status_may_skip_review(self, root):
        assert svc.advance_root_status(root["id"], "approved")["status"] == "approved"

    def test_status_never_regresses(self, root):
        svc.advance_root_status(root["id"], "approved")
        with pytest.raises(ValidationError):
            svc.advance_root_status(root["id"], "draft")

    def test_unknown_status_rejected(self, root):
        with pytest.raises(ValidationError):
            svc.advance_root_status(root["id"], "archived")


# ── Derived documents ─────────────────────────────────────────────────────────


class TestDerivedDocuments:
    def test_create_derived(self, root, make_derived):
        doc = make_derived("presentation", ["companyName", "description", "companyName"])
        assert doc["root_id"] == root["id"]
        assert doc["status"] == "not_started"
        assert doc["inherited_fields"] == ["companyName", "description"]
        assert doc["outstanding_fields"] == []

    def test_unknown_type_rejected(self, make_derived):
        with pytest.raises(ValidationError):
            make_derived("newsletter", ["companyName"])

    def test_empty_inherited_fields_rejected(self, make_derived):
        with pytest.raises(ValidationError):
            make_derived("presentation", [])

    def test_malformed_inherited_field_rejected(self, make_derived):
        with pytest.raises(ValidationError):
            make_derived("presentation", ["company name"])

    def test_unknown_root_rejected(self, make_derived):
        with pytest.raises(NotFoundError):
            make_derived("presentation", ["companyName"], root_id="missing")

    def test_list_derived_scoped_to_root(self, root, make_derived):
        a = make_derived("presentation", ["companyName"])
        other = svc.create_root(name="Other")
        make_derived("generic", ["companyName"], root_id=other["id"])

        assert [d["id"] for d in svc.list_derived(root["id"])] == [a["id"]]

    def test_update_inherited_fields_drops_stale_outstanding(self, make_derived):
        doc = make_derived("marketing", ["targetAudience", "keywords"])
        row = db.session.get(DerivedDocument, doc["id"])
        row.outstanding_fields = ["targetAudience", "keywords"]
        db.session.commit()

        updated = svc.update_inherited_fields(doc["id"], ["keywords", "companyName"])

        assert updated["inherited_fields"] == ["keywords", "companyName"]
        assert updated["outstanding_fields"] == ["keywords"]


# ── Author lifecycle ──────────────────────────────────────────────────────────


class TestLifecycle:
    def test_start_then_complete(self, make_derived):
        doc = make_derived("presentation", ["companyName"])
        assert svc.start_work(doc["id"])["status"] == "in_progress"

        done = svc.complete_work(doc["id"])
        assert done["status"] == "completed"
        assert done["last_synced_at"] is not None

    def test_cannot_complete_before_starting(self, make_derived):
        doc = make_derived("presentation", ["companyName"])
        with pytest.raises(ValidationError):
            svc.complete_work(doc["id"])

    def test_start_from_needs_update_clears_outstanding(self, make_derived):
        doc = make_derived("marketing", ["targetAudience"])
        row = db.session.get(DerivedDocument, doc["id"])
        row.status = "needs_update"
        row.outstanding_fields = ["targetAudience"]
        row.needs_update_reason = "Awaiting review of targetAudience"
        db.session.commit()

        started = svc.start_work(doc["id"])

        assert started["status"] == "in_progress"
        assert started["outstanding_fields"] == []
        assert started["needs_update_reason"] is None

    def test_author_cannot_move_to_needs_update(self, make_derived):
        doc = make_derived("presentation", ["companyName"])
        svc.start_work(doc["id"])
        row = db.session.get(DerivedDocument, doc["id"])

        with pytest.raises(ValidationError):
            svc._author_transition(row, "needs_update")

        assert svc.complete_work(doc["id"])["status"] == "completed"
        row = db.session.get(DerivedDocument, doc["id"])
        with pytest.raises(ValidationError):
            svc._author_transition(row, "needs_update")

    def test_unknown_derived(self):
        with pytest.raises(NotFoundError):
            svc.start_work("missing")
