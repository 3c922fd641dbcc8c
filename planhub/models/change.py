"""
Change review — PendingChange, ApplyBatch and CascadeEvent models.

PendingChange rows are created by change intake and resolved exactly once
(accepted or rejected).  Apart from that single resolution write they are
never updated.

ApplyBatch and CascadeEvent are APPEND-ONLY: one batch per successful
apply call, one event per impacted derived document in that batch.  A
retried apply call replays its ApplyResult from these rows.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from planhub.models import db


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Constants ─────────────────────────────────────────────────────────────────

class Proposer(str, Enum):
    """Who proposed a change.  Closed set; policy rules branch on it."""
    USER = "user"
    EXPERT = "expert"
    SYSTEM = "system"


PROPOSERS = tuple(p.value for p in Proposer)

RESOLUTIONS = frozenset({"accepted", "rejected"})

CASCADE_OUTCOMES = frozenset({"cascaded", "failed", "flagged"})


class PendingChange(db.Model):
    """Proposed edit to one root field path.

    old_value is the root's value at submission time; field_existed tells
    an absent path apart from a path holding null, so the optimistic
    concurrency check in the cascade applier can compare both.
    related_values snapshots the root keys that are ancestors or
    descendants of field_path, which the same check also compares.
    """

    __tablename__ = "pending_changes"

    id = db.Column(db.String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    root_id = db.Column(
        db.String(36),
        db.ForeignKey("root_documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    field_path = db.Column(db.String(255), nullable=False)
    old_value = db.Column(db.JSON, nullable=True)
    field_existed = db.Column(db.Boolean, nullable=False, default=True)
    new_value = db.Column(db.JSON, nullable=True)
    related_values = db.Column(
        db.JSON,
        nullable=False,
        default=dict,
        comment="Ancestor / descendant root keys at submission",
    )
    proposed_by = db.Column(
        db.String(20),
        nullable=False,
        comment="user | expert | system",
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    # NULL while pending
    resolution = db.Column(db.String(20), nullable=True, comment="accepted | rejected")
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    apply_batch_id = db.Column(
        db.Integer,
        db.ForeignKey("apply_batches.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    __table_args__ = (
        db.Index("ix_pending_changes_root_resolution", "root_id", "resolution"),
    )

    @property
    def is_resolved(self) -> bool:
        return self.resolution is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "root_id": self.root_id,
            "field_path": self.field_path,
            "old_value": self.old_value,
            "field_existed": self.field_existed,
            "new_value": self.new_value,
            "related_values": dict(self.related_values or {}),
            "proposed_by": self.proposed_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "resolution": self.resolution,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }

    def __repr__(self) -> str:
        state = self.resolution or "pending"
        return f"<PendingChange {self.id} {self.field_path} {state}>"


class ApplyBatch(db.Model):
    """One successful apply_changes call against a root."""

    __tablename__ = "apply_batches"

    id = db.Column(db.Integer, primary_key=True)
    root_id = db.Column(
        db.String(36),
        db.ForeignKey("root_documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    root_version = db.Column(db.Integer, nullable=False, comment="Root version after the merge")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    changes = db.relationship("PendingChange", lazy="select", order_by="PendingChange.id")
    events = db.relationship(
        "CascadeEvent",
        back_populates="batch",
        lazy="select",
        order_by="CascadeEvent.id",
    )

    def __repr__(self) -> str:
        return f"<ApplyBatch #{self.id} root={self.root_id} v{self.root_version}>"


class CascadeEvent(db.Model):
    """What happened to one impacted derived document within a batch."""

    __tablename__ = "cascade_events"

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(
        db.Integer,
        db.ForeignKey("apply_batches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    derived_document_id = db.Column(
        db.String(36),
        db.ForeignKey("derived_documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    outcome = db.Column(db.String(20), nullable=False, comment="cascaded | failed | flagged")
    triggering_fields = db.Column(db.JSON, nullable=False, default=list)
    reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    batch = db.relationship("ApplyBatch", back_populates="events")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "derived_document_id": self.derived_document_id,
            "outcome": self.outcome,
            "triggering_fields": list(self.triggering_fields or []),
            "reason": self.reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
