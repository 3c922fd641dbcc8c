"""
Document graph service — root and derived documents.

Owns creation, lookup and the explicit (non-cascade) lifecycle operations
of RootDocument and DerivedDocument.

Rules:
  - db.session.commit() for document lifecycle happens only in this file;
    the cascade applier owns commits for merges and cascade outcomes.
  - Root fields are never written here after creation; they change only
    through accepted pending changes.
  - inherited_fields changes only through update_inherited_fields (admin).

Public functions return serialised dicts.  ``load_root`` / ``load_derived``
return ORM instances for the other services in this package.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import select

from planhub.core.exceptions import NotFoundError, ValidationError
from planhub.models import db
from planhub.models.document import (
    AUTHOR_TRANSITIONS,
    DERIVED_TYPES,
    ROOT_STATUSES,
    DerivedDocument,
    RootDocument,
)
from planhub.utils.field_paths import invalid_paths

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Loaders (ORM) ─────────────────────────────────────────────────────────────


def load_root(root_id: str, *, for_update: bool = False) -> RootDocument:
    """Fetch a RootDocument or raise NotFoundError.

    for_update=True issues SELECT ... FOR UPDATE on databases that support
    row locks (ignored by SQLite).
    """
    stmt = select(RootDocument).where(RootDocument.id == root_id)
    if for_update:
        stmt = stmt.with_for_update()
    root = db.session.execute(stmt).scalar_one_or_none()
    if root is None:
        raise NotFoundError(resource="RootDocument", resource_id=root_id)
    return root


def load_derived(derived_id: str) -> DerivedDocument:
    doc = db.session.get(DerivedDocument, derived_id)
    if doc is None:
        raise NotFoundError(resource="DerivedDocument", resource_id=derived_id)
    return doc


def load_derived_for_root(root_id: str) -> list[DerivedDocument]:
    return list(
        db.session.execute(
            select(DerivedDocument)
            .where(DerivedDocument.root_id == root_id)
            .order_by(DerivedDocument.created_at.asc(), DerivedDocument.id.asc())
        ).scalars().all()
    )


def lock_derived(derived_ids) -> dict[str, DerivedDocument]:
    """Re-read derived documents under SELECT ... FOR UPDATE, keyed by id.

    Rows are locked in id order and refreshed from the database.
    """
    ids = sorted(set(derived_ids))
    if not ids:
        return {}
    rows = db.session.execute(
        select(DerivedDocument)
        .where(DerivedDocument.id.in_(ids))
        .order_by(DerivedDocument.id.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().all()
    return {d.id: d for d in rows}


# ── Validation helpers ────────────────────────────────────────────────────────


def _validate_inherited_fields(inherited_fields) -> list[str]:
    """Return a de-duplicated list of inherited fields, order preserved."""
    if isinstance(inherited_fields, str) or not inherited_fields:
        raise ValidationError(
            "inherited_fields must be a non-empty list of field paths",
            details={"inherited_fields": "required"},
        )
    bad = invalid_paths(inherited_fields)
    if bad:
        raise ValidationError(
            f"Malformed field path(s): {', '.join(map(str, bad))}",
            details={"inherited_fields": [str(b) for b in bad]},
        )
    return list(dict.fromkeys(inherited_fields))


def _validate_fields(fields) -> dict:
    if fields is None:
        return {}
    if not isinstance(fields, dict):
        raise ValidationError("fields must be an object of field path → value")
    bad = invalid_paths(fields.keys())
    if bad:
        raise ValidationError(
            f"Malformed field path(s): {', '.join(map(str, bad))}",
            details={"fields": [str(b) for b in bad]},
        )
    try:
        json.dumps(fields)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"fields must be JSON-serialisable: {exc}") from exc
    return dict(fields)


# ── Root documents ────────────────────────────────────────────────────────────


def create_root(name: str | None = None, fields: dict | None = None) -> dict:
    """Create a root planning record in ``draft`` status.

    Args:
        name:   Display name; defaults to "Untitled plan".
        fields: Initial field map (field path → value).  Later edits must go
                through change intake.

    Raises:
        ValidationError: Malformed field paths or non-JSON values.
    """
    root = RootDocument(
        name=(name or "").strip() or "Untitled plan",
        status="draft",
        fields=_validate_fields(fields),
        version=1,
    )
    db.session.add(root)
    db.session.commit()
    logger.info("Root document created", extra={"root_id": root.id})
    return root.to_dict()


def get_root(root_id: str) -> dict:
    return load_root(root_id).to_dict()


def list_roots() -> list[dict]:
    roots = db.session.execute(
        select(RootDocument).order_by(RootDocument.created_at.asc(), RootDocument.id.asc())
    ).scalars().all()
    return [r.to_dict() for r in roots]


def advance_root_status(root_id: str, new_status: str) -> dict:
    """Move a root forward along draft → in_review → approved.

    Status is monotonic: regression (or staying put) is a ValidationError.
    Skipping a step (draft → approved) is allowed.
    """
    if new_status not in ROOT_STATUSES:
        raise ValidationError(
            f"status must be one of: {', '.join(ROOT_STATUSES)}",
            details={"status": new_status},
        )
    root = load_root(root_id)
    current_idx = ROOT_STATUSES.index(root.status)
    new_idx = ROOT_STATUSES.index(new_status)
    if new_idx <= current_idx:
        raise ValidationError(
            f"Root status cannot move from {root.status} to {new_status}",
            details={"current": root.status, "requested": new_status},
        )
    old_status = root.status
    root.status = new_status
    db.session.commit()
    logger.info(
        "Root status %s → %s", old_status, new_status, extra={"root_id": root_id},
    )
    return root.to_dict()


# ── Derived documents ─────────────────────────────────────────────────────────


def create_derived(
    root_id: str,
    doc_type: str,
    inherited_fields: list[str],
    name: str | None = None,
) -> dict:
    """Spin up a derived document under a root.

    Raises:
        NotFoundError:   Unknown root.
        ValidationError: Unknown type, empty or malformed inherited_fields.
    """
    if doc_type not in DERIVED_TYPES:
        raise ValidationError(
            f"type must be one of: {', '.join(sorted(DERIVED_TYPES))}",
            details={"type": doc_type},
        )
    fields = _validate_inherited_fields(inherited_fields)
    root = load_root(root_id)

    doc = DerivedDocument(
        root_id=root.id,
        type=doc_type,
        name=(name or "").strip() or None,
        status="not_started",
        inherited_fields=fields,
        outstanding_fields=[],
    )
    db.session.add(doc)
    db.session.commit()
    logger.info(
        "Derived document created type=%s", doc_type,
        extra={"root_id": root.id, "derived_document_id": doc.id},
    )
    return doc.to_dict()


def get_derived(derived_id: str) -> dict:
    return load_derived(derived_id).to_dict()


def list_derived(root_id: str) -> list[dict]:
    load_root(root_id)
    return [d.to_dict() for d in load_derived_for_root(root_id)]


def update_inherited_fields(derived_id: str, inherited_fields: list[str]) -> dict:
    """Admin action: redeclare which root fields a derived document inherits.

    Outstanding fields no longer inherited are dropped.
    """
    fields = _validate_inherited_fields(inherited_fields)
    doc = load_derived(derived_id)
    doc.inherited_fields = fields
    doc.outstanding_fields = [f for f in (doc.outstanding_fields or []) if f in fields]
    db.session.commit()
    logger.info(
        "Inherited fields redeclared: %s", ", ".join(fields),
        extra={"root_id": doc.root_id, "derived_document_id": doc.id},
    )
    return doc.to_dict()


def _author_transition(doc: DerivedDocument, new_status: str) -> None:
    allowed = AUTHOR_TRANSITIONS.get(doc.status, set())
    if new_status not in allowed:
        raise ValidationError(
            f"DerivedDocument cannot move from {doc.status} to {new_status}",
            details={"current": doc.status, "requested": new_status},
        )
    doc.status = new_status


def start_work(derived_id: str) -> dict:
    """Author resumes or starts work on a derived document.

    Moving needs_update → in_progress hands the outstanding impact to the
    author, so outstanding fields and the reason are cleared.
    """
    doc = load_derived(derived_id)
    _author_transition(doc, "in_progress")
    doc.outstanding_fields = []
    doc.needs_update_reason = None
    db.session.commit()
    logger.info("Work started", extra={"derived_document_id": doc.id})
    return doc.to_dict()


def complete_work(derived_id: str) -> dict:
    """Mark a derived document completed.

    Also the regeneration collaborator's completion signal: a cascade leaves
    the document in_progress until this is called.
    """
    doc = load_derived(derived_id)
    _author_transition(doc, "completed")
    doc.last_synced_at = _utcnow()
    db.session.commit()
    logger.info("Work completed", extra={"derived_document_id": doc.id})
    return doc.to_dict()
