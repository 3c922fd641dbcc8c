"""
Cascade applier — merges approved changes into a root and propagates them.

apply_changes(root_id, change_ids, approved_cascade_target_ids):
    1. Validate  every change is an unresolved PendingChange of the root and
                 its recorded old value, and the values of keys above or
                 below its path, still equal the live root.  Any stale
                 change aborts the whole call with ConflictError.  No two
                 changes in a batch may touch the same or overlapping paths.
                 Every cascade target must carry an eligible ImpactRecord.
    2. Merge     write all new values in one transaction, bump the root
                 version, mark changes accepted, record an ApplyBatch.
    3. Cascade   request regeneration for each approved target in parallel.
                 Success → in_progress; failure / timeout → needs_update,
                 flagged with a reason.  Targets are independent.
    4. Flag      every other impacted document → needs_update, keeping its
                 affected fields as outstanding so it resurfaces.

reject_changes(root_id, change_ids):
    Marks changes rejected.  Never touches root fields or derived documents.

Locking: both hold the per-root lock (planhub.core.locks) for their whole
duration.  Across workers, steps 1-2 run in one transaction holding
SELECT ... FOR UPDATE on the root; steps 3-4 run in a second transaction
that re-locks the root and every impacted derived row before any write.
Steps 1 and 2 are all-or-nothing; step 3 may partially fail without
rolling back the merge.

Retry safety: re-applying exactly the ids of an earlier successful batch
returns that batch's recorded result.  Re-rejecting rejected ids is a
no-op.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone

from flask import current_app

from planhub.core.exceptions import CascadeFailure, ConflictError, NotFoundError, ValidationError
from planhub.core.locks import document_locks, root_locks
from planhub.integrations.regeneration_gateway import RegenerationGateway
from planhub.models import db
from planhub.models.change import ApplyBatch, CascadeEvent, PendingChange
from planhub.models.document import DerivedDocument, RootDocument
from planhub.services import change_intake, document_service
from planhub.services.impact_classifier import (
    ImpactRecord,
    compute_impacts,
    snapshot_change,
    snapshot_document,
)
from planhub.utils.field_paths import field_matches, overlapping_fields

logger = logging.getLogger(__name__)

_GATEWAY_EXTENSION = "regeneration_gateway"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ApplyResult:
    """Outcome of one apply_changes call.

    cascaded_doc_ids and flagged_doc_ids are disjoint; flag_reasons holds
    one entry per flagged document.
    """
    applied_change_ids: list[str]
    cascaded_doc_ids: list[str] = field(default_factory=list)
    flagged_doc_ids: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    flag_reasons: dict[str, str] = field(default_factory=dict)
    batch_id: int | None = None
    root_version: int | None = None
    replayed: bool = False

    def to_dict(self) -> dict:
        return {
            "applied_change_ids": list(self.applied_change_ids),
            "cascaded_doc_ids": list(self.cascaded_doc_ids),
            "flagged_doc_ids": list(self.flagged_doc_ids),
            "conflicts": list(self.conflicts),
            "flag_reasons": dict(self.flag_reasons),
            "batch_id": self.batch_id,
            "root_version": self.root_version,
            "replayed": self.replayed,
        }


# ── Gateway wiring ────────────────────────────────────────────────────────────


def get_gateway() -> RegenerationGateway:
    """Return the app-wide RegenerationGateway, creating it from config once."""
    gateway = current_app.extensions.get(_GATEWAY_EXTENSION)
    if gateway is None:
        gateway = RegenerationGateway.from_config(current_app.config)
        current_app.extensions[_GATEWAY_EXTENSION] = gateway
    return gateway


def set_gateway(app, gateway: RegenerationGateway) -> None:
    app.extensions[_GATEWAY_EXTENSION] = gateway


# ── Validation helpers ────────────────────────────────────────────────────────


def _normalise_targets(target_ids) -> list[str]:
    if target_ids is None:
        return []
    if isinstance(target_ids, str) or not isinstance(target_ids, (list, tuple)):
        raise ValidationError(
            "cascade target ids must be a list",
            details={"cascade_target_ids": "must be a list"},
        )
    if not all(isinstance(t, str) for t in target_ids):
        raise ValidationError("cascade target ids must be strings")
    return list(dict.fromkeys(target_ids))


def _replayable_batch(changes: list[PendingChange]) -> ApplyBatch | None:
    """Return the earlier batch if ``changes`` are exactly that batch's changes."""
    batch_ids = {c.apply_batch_id for c in changes}
    if len(batch_ids) != 1 or None in batch_ids:
        return None
    if any(c.resolution != "accepted" for c in changes):
        return None
    batch = db.session.get(ApplyBatch, batch_ids.pop())
    if batch is None or {c.id for c in batch.changes} != {c.id for c in changes}:
        return None
    return batch


def _check_resolution(changes: list[PendingChange]) -> None:
    resolved = [c.id for c in changes if c.is_resolved]
    if resolved:
        raise ValidationError(
            "Changes already resolved",
            details={"change_ids": resolved},
        )
    # A parent path replaces its children, so overlapping paths collide too
    for i, first in enumerate(changes):
        for second in changes[i + 1:]:
            if field_matches(second.field_path, first.field_path):
                raise ValidationError(
                    f"Changes {first.id} and {second.id} both edit "
                    f"{min(first.field_path, second.field_path, key=len)}",
                    details={
                        "field_paths": [first.field_path, second.field_path],
                        "change_ids": [first.id, second.id],
                    },
                )


def _is_stale(fields: dict, change: PendingChange) -> bool:
    if (change.field_path in fields) != change.field_existed:
        return True
    if fields.get(change.field_path) != change.old_value:
        return True
    return overlapping_fields(fields, change.field_path) != (change.related_values or {})


def _check_freshness(root: RootDocument, changes: list[PendingChange]) -> None:
    """Optimistic concurrency check against the locked root snapshot.

    A change is stale when its own path, or any ancestor or descendant key
    of it, differs from what the root held at submission.
    """
    fields = root.fields or {}
    stale = [c for c in changes if _is_stale(fields, c)]
    if stale:
        logger.warning(
            "Apply rejected: %d stale change(s)", len(stale),
            extra={"root_id": root.id, "change_count": len(changes)},
        )
        first = stale[0]
        raise ConflictError(
            resource="RootDocument",
            field=first.field_path,
            value=fields.get(first.field_path),
            change_ids=[c.id for c in stale],
        )


def _check_targets(
    root_id: str,
    targets: list[str],
    docs_by_id: dict[str, DerivedDocument],
    impacts: dict[str, ImpactRecord],
) -> None:
    for target in targets:
        if target not in docs_by_id:
            raise NotFoundError(resource="DerivedDocument", resource_id=target)
    ineligible = [
        t for t in targets
        if t not in impacts or not impacts[t].cascade_eligible
    ]
    if ineligible:
        raise ValidationError(
            "Cascade targets must have an impact that is auto-updateable or needs no review",
            details={"ineligible": ineligible, "root_id": root_id},
        )


# ── Cascade dispatch ──────────────────────────────────────────────────────────


def _regenerate_one(gateway: RegenerationGateway, doc_id: str, fields: list[str]):
    """Run one regeneration request, serialised per derived document."""
    with document_locks.hold(doc_id):
        result = gateway.regenerate(doc_id, fields)
    if not result.ok:
        raise CascadeFailure(doc_id, result.error or "regeneration failed")
    return result


def _dispatch(
    gateway: RegenerationGateway,
    requests_by_doc: dict[str, list[str]],
    max_workers: int,
) -> dict[str, CascadeFailure | None]:
    """Fan regeneration requests out; return doc id → failure (None on success).

    Runs no database work in worker threads.
    """
    outcomes: dict[str, CascadeFailure | None] = {}
    if not requests_by_doc:
        return outcomes

    workers = max(1, min(max_workers, len(requests_by_doc)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cascade") as pool:
        futures = {
            doc_id: pool.submit(_regenerate_one, gateway, doc_id, fields)
            for doc_id, fields in requests_by_doc.items()
        }
        for doc_id, future in futures.items():
            try:
                future.result()
                outcomes[doc_id] = None
            except CascadeFailure as exc:
                outcomes[doc_id] = exc
            except Exception as exc:
                logger.exception(
                    "Unexpected regeneration error", extra={"derived_document_id": doc_id},
                )
                outcomes[doc_id] = CascadeFailure(doc_id, f"unexpected error: {exc}")
    return outcomes


def _mark_needs_update(doc: DerivedDocument, affected, reason: str) -> None:
    doc.status = "needs_update"
    doc.outstanding_fields = sorted(set(doc.outstanding_fields or []) | set(affected))
    doc.needs_update_reason = reason


# ── Public API ────────────────────────────────────────────────────────────────


def apply_changes(
    root_id: str,
    change_ids,
    approved_cascade_target_ids=None,
    *,
    gateway: RegenerationGateway | None = None,
    max_workers: int | None = None,
) -> ApplyResult:
    """Merge ``change_ids`` into the root and cascade to approved targets.

    Raises:
        ValidationError: Empty batch, resolved change, two changes to one
                         field path, or an ineligible cascade target.
        NotFoundError:   Unknown root, change or derived document id.
        ConflictError:   A change's old value no longer matches the root.
    """
    targets = _normalise_targets(approved_cascade_target_ids)
    gateway = gateway or get_gateway()
    if max_workers is None:
        max_workers = int(current_app.config.get("CASCADE_MAX_WORKERS", 4))

    with root_locks.hold(root_id):
        try:
            return _apply_locked(root_id, change_ids, targets, gateway, max_workers)
        except Exception:
            db.session.rollback()
            raise


def _apply_locked(
    root_id: str,
    change_ids,
    targets: list[str],
    gateway: RegenerationGateway,
    max_workers: int,
) -> ApplyResult:
    root = document_service.load_root(root_id, for_update=True)
    changes = change_intake.load_changes(root_id, change_ids)

    batch = _replayable_batch(changes)
    if batch is not None:
        logger.info(
            "Apply replayed from earlier batch",
            extra={"root_id": root_id, "batch_id": batch.id},
        )
        return _replay(batch, [c.id for c in changes])

    # ── 1. Validate ──────────────────────────────────────────────────────
    _check_resolution(changes)
    _check_freshness(root, changes)

    docs = document_service.load_derived_for_root(root_id)
    docs_by_id = {d.id: d for d in docs}
    impacts = {
        r.derived_document_id: r
        for r in compute_impacts(
            [snapshot_document(d) for d in docs],
            [snapshot_change(c) for c in changes],
        )
    }
    _check_targets(root_id, targets, docs_by_id, impacts)

    # ── 2. Merge ─────────────────────────────────────────────────────────
    merged = dict(root.fields or {})
    for c in changes:
        # Replacing a parent replaces its children
        for key in [k for k in merged if k.startswith(c.field_path + ".")]:
            del merged[key]
        merged[c.field_path] = c.new_value
    root.fields = merged
    root.version = (root.version or 1) + 1

    batch = ApplyBatch(root_id=root.id, root_version=root.version)
    db.session.add(batch)
    db.session.flush()
    batch_id, root_version = batch.id, batch.root_version

    now = _utcnow()
    for c in changes:
        c.resolution = "accepted"
        c.resolved_at = now
        c.apply_batch_id = batch_id
    db.session.commit()

    logger.info(
        "Changes merged into root", extra={
            "root_id": root_id,
            "root_version": root_version,
            "batch_id": batch_id,
            "change_count": len(changes),
        },
    )

    # ── 3. Cascade ───────────────────────────────────────────────────────
    # The merge commit ended the transaction holding the root row lock.
    # Re-lock the root and every impacted derived row until outcomes commit.
    document_service.load_root(root_id, for_update=True)
    docs_by_id = document_service.lock_derived(impacts)

    requests_by_doc = {t: sorted(impacts[t].affected_fields) for t in targets}
    outcomes = _dispatch(gateway, requests_by_doc, max_workers)

    result = ApplyResult(
        applied_change_ids=[c.id for c in changes],
        batch_id=batch_id,
        root_version=root_version,
    )
    for doc_id in sorted(requests_by_doc):
        doc = docs_by_id[doc_id]
        fields = requests_by_doc[doc_id]
        failure = outcomes.get(doc_id)
        if failure is None:
            doc.status = "in_progress"
            doc.outstanding_fields = []
            doc.needs_update_reason = None
            db.session.add(CascadeEvent(
                batch_id=batch_id, derived_document_id=doc_id,
                outcome="cascaded", triggering_fields=fields,
            ))
            result.cascaded_doc_ids.append(doc_id)
        else:
            reason = f"Regeneration failed: {failure.reason}"
            _mark_needs_update(doc, fields, reason)
            db.session.add(CascadeEvent(
                batch_id=batch_id, derived_document_id=doc_id,
                outcome="failed", triggering_fields=fields, reason=reason,
            ))
            result.flagged_doc_ids.append(doc_id)
            result.flag_reasons[doc_id] = reason

    # ── 4. Flag the rest ─────────────────────────────────────────────────
    for doc_id in sorted(set(impacts) - set(requests_by_doc)):
        doc = docs_by_id[doc_id]
        fields = sorted(impacts[doc_id].affected_fields)
        reason = f"Awaiting review of {', '.join(fields)}"
        _mark_needs_update(doc, fields, reason)
        db.session.add(CascadeEvent(
            batch_id=batch_id, derived_document_id=doc_id,
            outcome="flagged", triggering_fields=fields, reason=reason,
        ))
        result.flagged_doc_ids.append(doc_id)
        result.flag_reasons[doc_id] = reason

    result.flagged_doc_ids.sort()
    db.session.commit()

    logger.info(
        "Cascade finished: %d cascaded, %d flagged",
        len(result.cascaded_doc_ids), len(result.flagged_doc_ids),
        extra={"root_id": root_id, "batch_id": batch_id},
    )
    return result


def _replay(batch: ApplyBatch, change_ids: list[str]) -> ApplyResult:
    result = ApplyResult(
        applied_change_ids=change_ids,
        batch_id=batch.id,
        root_version=batch.root_version,
        replayed=True,
    )
    for event in batch.events:
        if event.outcome == "cascaded":
            result.cascaded_doc_ids.append(event.derived_document_id)
        else:
            result.flagged_doc_ids.append(event.derived_document_id)
            result.flag_reasons[event.derived_document_id] = event.reason or ""
    result.cascaded_doc_ids.sort()
    result.flagged_doc_ids.sort()
    return result


def reject_changes(root_id: str, change_ids) -> list[str]:
    """Discard pending changes.  Already-rejected ids are accepted silently.

    Returns:
        Ids newly marked rejected by this call.

    Raises:
        ValidationError: Empty batch, or a change that was already accepted.
        NotFoundError:   Unknown root or change id.
    """
    with root_locks.hold(root_id):
        try:
            document_service.load_root(root_id, for_update=True)
            changes = change_intake.load_changes(root_id, change_ids)

            accepted = [c.id for c in changes if c.resolution == "accepted"]
            if accepted:
                raise ValidationError(
                    "Accepted changes cannot be rejected",
                    details={"change_ids": accepted},
                )

            now = _utcnow()
            rejected = []
            for c in changes:
                if c.resolution is None:
                    c.resolution = "rejected"
                    c.resolved_at = now
                    rejected.append(c.id)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    logger.info(
        "Changes rejected", extra={"root_id": root_id, "change_count": len(rejected)},
    )
    return rejected
