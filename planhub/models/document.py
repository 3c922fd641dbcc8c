"""
Document graph — RootDocument and DerivedDocument models.

A RootDocument is the hub planning record (the product's Genesis blueprint).
DerivedDocuments are sub-deliverables (presentation, financial model, ...)
that declare which root field paths they inherit.

JSON columns:
    RootDocument.fields              field path → value, flat mapping
    DerivedDocument.inherited_fields list[str], fixed at creation
    DerivedDocument.outstanding_fields list[str], impact not yet propagated

JSON columns are never mutated in place; services assign a fresh copy so
SQLAlchemy sees the change without MutableDict tracking.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from planhub.models import db


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


# ── Constants ─────────────────────────────────────────────────────────────────

# Ordered: status only ever moves forward through this tuple.
ROOT_STATUSES = ("draft", "in_review", "approved")

DERIVED_TYPES = frozenset({
    "presentation",
    "social_media",
    "financial_model",
    "marketing",
    "operations",
    "generic",
})

DERIVED_STATUSES = frozenset({"not_started", "in_progress", "completed", "needs_update"})

# Author-driven transitions. Only cascades move a document to needs_update;
# they bypass this table, as does a successful regeneration (in_progress).
AUTHOR_TRANSITIONS = {
    "not_started": {"in_progress"},
    "in_progress": {"completed"},
    "completed": {"in_progress"},
    "needs_update": {"in_progress"},
}


class RootDocument(db.Model):
    """Single source-of-truth planning record.

    ``fields`` is only written by the cascade applier when accepted
    pending changes are merged; ``version`` increments on every merge.
    """

    __tablename__ = "root_documents"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(255), nullable=False, default="Untitled plan")
    status = db.Column(
        db.String(20),
        nullable=False,
        default="draft",
        comment="draft | in_review | approved",
    )
    fields = db.Column(db.JSON, nullable=False, default=dict)
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    derived_documents = db.relationship(
        "DerivedDocument",
        back_populates="root",
        cascade="all, delete-orphan",
        lazy="select",
        order_by="DerivedDocument.created_at",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "fields": dict(self.fields or {}),
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<RootDocument {self.id} v{self.version} {self.status}>"


class DerivedDocument(db.Model):
    """A document whose content is partly defined by inherited root fields.

    Business rules:
    - inherited_fields is non-empty and only changes through the explicit
      admin operation in document_service, never as a cascade side effect.
    - outstanding_fields holds the affected fields of an impact that was
      flagged rather than propagated, so the next classification pass
      reports the document again.
    """

    __tablename__ = "derived_documents"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    root_id = db.Column(
        db.String(36),
        db.ForeignKey("root_documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(255), nullable=True)
    type = db.Column(
        db.String(30),
        nullable=False,
        comment="presentation | social_media | financial_model | marketing | operations | generic",
    )
    status = db.Column(
        db.String(20),
        nullable=False,
        default="not_started",
        comment="not_started | in_progress | completed | needs_update",
    )
    inherited_fields = db.Column(db.JSON, nullable=False, default=list)
    outstanding_fields = db.Column(db.JSON, nullable=False, default=list)
    needs_update_reason = db.Column(db.Text, nullable=True)
    last_synced_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    root = db.relationship("RootDocument", back_populates="derived_documents")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "root_id": self.root_id,
            "name": self.name,
            "type": self.type,
            "status": self.status,
            "inherited_fields": list(self.inherited_fields or []),
            "outstanding_fields": list(self.outstanding_fields or []),
            "needs_update_reason": self.needs_update_reason,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<DerivedDocument {self.id} {self.type} {self.status}>"
