"""
Impact classifier — which derived documents a change set affects, and how.

Pure core:
    compute_impacts(documents, changes) -> list[ImpactRecord]

    Works on frozen snapshots (DocumentInput / ChangeInput), never on live
    ORM rows, so identical inputs always yield identical output with no
    dependency on call order, prior calls or session state.  Safe to call
    concurrently and speculatively (live preview while a reviewer is still
    selecting changes) without any locking.

Service wrapper:
    compute_impacts_for(root_id, change_ids) loads snapshots through the
    document store and change intake, then calls the pure core.

Classification rules (per affected inherited field, dotted paths are
classified by their segments):

    severity        high   valueProposition, objectives, targetAudience, strategy
                    medium businessInfo, revenueModel, keywords
                    low    everything else
                    A path's severity is the highest of its segments.
    simple          companyName, industry, description (leaf segment)
    strategic       valueProposition, objectives, targetAudience, strategy
    revenue         any segment containing "revenue"

    document severity   = max over affected fields
    requires_review     = any affected field strategic
                          OR financial_model and any affected field revenue
                          OR financial_model and any matching change
                             proposed by "system"
    auto_updateable     = every affected field simple AND not requires_review
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from planhub.core.exceptions import ValidationError
from planhub.models.change import PendingChange, Proposer
from planhub.models.document import DerivedDocument
from planhub.services import change_intake, document_service
from planhub.utils.field_paths import field_matches, split_path

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Enums & Data Classes
# ═════════════════════════════════════════════════════════════════════════════

class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


@dataclass(frozen=True)
class DocumentInput:
    """Classifier view of a derived document."""
    id: str
    type: str
    inherited_fields: tuple[str, ...]
    outstanding_fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class ChangeInput:
    """Classifier view of a pending change."""
    id: str
    field_path: str
    proposed_by: str = Proposer.USER.value


@dataclass(frozen=True)
class ImpactRecord:
    """Computed impact of a change set on one derived document."""
    derived_document_id: str
    derived_document_type: str
    affected_fields: frozenset[str]
    severity: Severity
    auto_updateable: bool
    requires_review: bool
    change_ids: frozenset[str] = field(default_factory=frozenset)

    @property
    def cascade_eligible(self) -> bool:
        """May this document be cascaded automatically when approved?"""
        return self.auto_updateable or not self.requires_review

    def to_dict(self) -> dict:
        return {
            "derived_document_id": self.derived_document_id,
            "derived_document_type": self.derived_document_type,
            "affected_fields": sorted(self.affected_fields),
            "severity": self.severity.value,
            "auto_updateable": self.auto_updateable,
            "requires_review": self.requires_review,
            "cascade_eligible": self.cascade_eligible,
            "change_ids": sorted(self.change_ids),
        }


# ═════════════════════════════════════════════════════════════════════════════
# Classification tables
# ═════════════════════════════════════════════════════════════════════════════

FIELD_SEVERITY: dict[str, Severity] = {
    "valueProposition": Severity.HIGH,
    "objectives": Severity.HIGH,
    "targetAudience": Severity.HIGH,
    "strategy": Severity.HIGH,
    "businessInfo": Severity.MEDIUM,
    "revenueModel": Severity.MEDIUM,
    "keywords": Severity.MEDIUM,
}

SIMPLE_FIELDS = frozenset({"companyName", "industry", "description"})

# Audience shifts reposition every derived deliverable, so they are
# reviewed alongside the strategic core.
STRATEGIC_FIELDS = frozenset({"valueProposition", "objectives", "targetAudience", "strategy"})

REVENUE_MARKER = "revenue"

FINANCIAL_MODEL = "financial_model"


# ═════════════════════════════════════════════════════════════════════════════
# Per-field rules
# ═════════════════════════════════════════════════════════════════════════════

def field_severity(path: str) -> Severity:
    best = Severity.LOW
    for segment in split_path(path):
        sev = FIELD_SEVERITY.get(segment, Severity.LOW)
        if sev.rank > best.rank:
            best = sev
    return best


def is_simple_field(path: str) -> bool:
    return split_path(path)[-1] in SIMPLE_FIELDS


def is_strategic_field(path: str) -> bool:
    return any(segment in STRATEGIC_FIELDS for segment in split_path(path))


def touches_revenue(path: str) -> bool:
    return any(REVENUE_MARKER in segment.lower() for segment in split_path(path))


# ═════════════════════════════════════════════════════════════════════════════
# Document-level rules
# ═════════════════════════════════════════════════════════════════════════════

def document_requires_review(doc_type: str, affected, proposers=()) -> bool:
    if any(is_strategic_field(f) for f in affected):
        return True
    if doc_type == FINANCIAL_MODEL:
        if any(touches_revenue(f) for f in affected):
            return True
        if Proposer.SYSTEM.value in proposers:
            return True
    return False


def classify_document(
    doc: DocumentInput,
    affected,
    change_ids=(),
    proposers=(),
) -> ImpactRecord:
    """Build the ImpactRecord for one document from its affected fields."""
    affected = frozenset(affected)
    severity = max((field_severity(f) for f in affected), key=lambda s: s.rank)
    requires_review = document_requires_review(doc.type, affected, proposers)
    auto_updateable = all(is_simple_field(f) for f in affected) and not requires_review
    return ImpactRecord(
        derived_document_id=doc.id,
        derived_document_type=doc.type,
        affected_fields=affected,
        severity=severity,
        auto_updateable=auto_updateable,
        requires_review=requires_review,
        change_ids=frozenset(change_ids),
    )


def compute_impacts(documents, changes) -> list[ImpactRecord]:
    """Classify the impact of ``changes`` on every document in ``documents``.

    Args:
        documents: Iterable of DocumentInput for one root.
        changes:   Iterable of ChangeInput selected by the reviewer.

    Returns:
        At most one ImpactRecord per document, sorted by document id.
        Documents with no affected field produce no record.
    """
    changes = tuple(changes)
    records = []
    for doc in documents:
        affected = set()
        matched_ids = set()
        proposers = set()
        for inherited in doc.inherited_fields:
            for change in changes:
                if field_matches(change.field_path, inherited):
                    affected.add(inherited)
                    matched_ids.add(change.id)
                    proposers.add(change.proposed_by)
        # Impact flagged in an earlier apply resurfaces until propagated
        affected.update(f for f in doc.outstanding_fields if f in doc.inherited_fields)

        if not affected:
            continue
        records.append(classify_document(doc, affected, matched_ids, proposers))

    records.sort(key=lambda r: r.derived_document_id)
    return records


# ═════════════════════════════════════════════════════════════════════════════
# Snapshots & service wrapper
# ═════════════════════════════════════════════════════════════════════════════

def snapshot_document(doc: DerivedDocument) -> DocumentInput:
    return DocumentInput(
        id=doc.id,
        type=doc.type,
        inherited_fields=tuple(doc.inherited_fields or ()),
        outstanding_fields=tuple(doc.outstanding_fields or ()),
    )


def snapshot_change(change: PendingChange) -> ChangeInput:
    return ChangeInput(id=change.id, field_path=change.field_path, proposed_by=change.proposed_by)


def load_inputs(root_id: str, change_ids) -> tuple[list[DocumentInput], list[ChangeInput]]:
    """Load classifier snapshots for a root and a selection of its changes.

    An empty selection is allowed and yields only outstanding impacts.

    Raises:
        NotFoundError:   Unknown root, or a change id not on this root.
        ValidationError: change_ids not a list, or a selected change resolved.
    """
    if change_ids is None or isinstance(change_ids, str) or not isinstance(change_ids, (list, tuple)):
        raise ValidationError("change_ids must be a list", details={"change_ids": "required"})

    document_service.load_root(root_id)
    changes = change_intake.load_changes(root_id, change_ids) if change_ids else []
    resolved = [c.id for c in changes if c.is_resolved]
    if resolved:
        raise ValidationError(
            "Selected changes are already resolved",
            details={"change_ids": resolved},
        )
    docs = document_service.load_derived_for_root(root_id)
    return [snapshot_document(d) for d in docs], [snapshot_change(c) for c in changes]


def compute_impacts_for(root_id: str, change_ids) -> list[ImpactRecord]:
    documents, changes = load_inputs(root_id, change_ids)
    records = compute_impacts(documents, changes)
    logger.debug(
        "Impacts computed: %d record(s)", len(records),
        extra={"root_id": root_id, "change_count": len(changes)},
    )
    return records
