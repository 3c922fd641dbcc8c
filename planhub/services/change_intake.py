"""
Change intake — records proposed root field edits as PendingChanges.

Submission snapshots the root's current value at the field path as the
change's old value, plus the values of any ancestor or descendant keys.
The cascade applier later compares both snapshots to the live root
(optimistic concurrency check).

Submission does not take the root lock: new proposals never interrupt an
apply already validated against its own snapshot.

Retry safety: callers may supply ``change_id``.  Re-submitting the same id
with the same root, field path and new value returns the stored change;
a different payload under an existing id is rejected.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import select

from planhub.core.exceptions import NotFoundError, ValidationError
from planhub.models import db
from planhub.models.change import PROPOSERS, PendingChange
from planhub.services.document_service import load_root
from planhub.utils.field_paths import is_valid_field_path, overlapping_fields

logger = logging.getLogger(__name__)

MAX_CHANGE_ID_LENGTH = 64


def _validate_submission(field_path, new_value, proposed_by, change_id) -> None:
    if not is_valid_field_path(field_path):
        raise ValidationError(
            f"Malformed field path: {field_path!r}",
            details={"field_path": "must be dotted identifiers, e.g. objectives.primary"},
        )
    if proposed_by not in PROPOSERS:
        raise ValidationError(
            f"proposed_by must be one of: {', '.join(PROPOSERS)}",
            details={"proposed_by": proposed_by},
        )
    try:
        json.dumps(new_value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"new_value must be JSON-serialisable: {exc}") from exc
    if change_id is not None:
        if not isinstance(change_id, str) or not change_id.strip():
            raise ValidationError("change_id must be a non-empty string")
        if len(change_id) > MAX_CHANGE_ID_LENGTH:
            raise ValidationError(f"change_id must be ≤ {MAX_CHANGE_ID_LENGTH} characters")


def submit_change(
    root_id: str,
    field_path: str,
    new_value,
    proposed_by: str,
    change_id: str | None = None,
) -> dict:
    """Record a proposed edit to one field of a root document.

    Args:
        root_id:     Target root.
        field_path:  Dotted path; may name an existing field or introduce one.
        new_value:   Any JSON-serialisable value.
        proposed_by: "user" | "expert" | "system".
        change_id:   Optional caller-supplied id for idempotent retries.

    Returns:
        Serialised PendingChange.

    Raises:
        NotFoundError:   Unknown root.
        ValidationError: Malformed path, unknown proposer, non-JSON value, or
                         change_id reused with a different payload.
    """
    _validate_submission(field_path, new_value, proposed_by, change_id)
    root = load_root(root_id)

    if change_id is not None:
        existing = db.session.get(PendingChange, change_id)
        if existing is not None:
            same = (
                existing.root_id == root_id
                and existing.field_path == field_path
                and existing.new_value == new_value
                and existing.proposed_by == proposed_by
            )
            if not same:
                raise ValidationError(
                    f"change_id {change_id} already used for a different change",
                    details={"change_id": change_id},
                )
            logger.debug(
                "Duplicate submission replayed",
                extra={"root_id": root_id, "change_id": change_id},
            )
            return existing.to_dict()

    current_fields = root.fields or {}
    change = PendingChange(
        root_id=root.id,
        field_path=field_path,
        old_value=current_fields.get(field_path),
        field_existed=field_path in current_fields,
        related_values=overlapping_fields(current_fields, field_path),
        new_value=new_value,
        proposed_by=proposed_by,
    )
    if change_id is not None:
        change.id = change_id
    db.session.add(change)
    db.session.commit()

    logger.info(
        "Pending change submitted by %s", proposed_by,
        extra={"root_id": root.id, "change_id": change.id, "field_path": field_path},
    )
    return change.to_dict()


def list_pending_changes(root_id: str) -> list[dict]:
    """Return all unresolved changes for a root, oldest first."""
    load_root(root_id)
    changes = db.session.execute(
        select(PendingChange)
        .where(
            PendingChange.root_id == root_id,
            PendingChange.resolution.is_(None),
        )
        .order_by(PendingChange.created_at.asc(), PendingChange.id.asc())
    ).scalars().all()
    return [c.to_dict() for c in changes]


def get_change(change_id: str) -> dict:
    change = db.session.get(PendingChange, change_id)
    if change is None:
        raise NotFoundError(resource="PendingChange", resource_id=change_id)
    return change.to_dict()


def load_changes(root_id: str, change_ids) -> list[PendingChange]:
    """Load PendingChanges by id, all belonging to ``root_id``.

    Duplicate ids are collapsed; order follows first occurrence.

    Raises:
        ValidationError: change_ids empty or not a list of strings.
        NotFoundError:   Any id unknown or owned by another root.
    """
    if isinstance(change_ids, str) or not change_ids:
        raise ValidationError(
            "change_ids must be a non-empty list",
            details={"change_ids": "required"},
        )
    ids = list(dict.fromkeys(change_ids))
    if not all(isinstance(cid, str) for cid in ids):
        raise ValidationError("change_ids must be strings")

    rows = db.session.execute(
        select(PendingChange).where(PendingChange.id.in_(ids))
    ).scalars().all()
    by_id = {c.id: c for c in rows}

    loaded = []
    for cid in ids:
        change = by_id.get(cid)
        if change is None or change.root_id != root_id:
            raise NotFoundError(resource="PendingChange", resource_id=cid)
        loaded.append(change)
    return loaded
