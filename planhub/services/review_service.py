"""
Review orchestration — the operations a reviewer (UI or API client) calls.

Thin façade over change intake, the impact classifier and the cascade
applier.  Carries no rules of its own beyond presentation concerns:
ordering impacts for display and proposing the default cascade selection.

Usage:
    from planhub.services import review_service

    change = review_service.submit_change(root_id, "objectives.primary", "Grow ARR", "user")
    impacts = review_service.compute_impacts(root_id, [change["id"]])
    result = review_service.apply_changes(root_id, [change["id"]], [])
"""

from __future__ import annotations

from planhub.services import cascade_applier, change_intake, impact_classifier
from planhub.services.cascade_applier import ApplyResult
from planhub.services.impact_classifier import ImpactRecord, Severity


def submit_change(root_id, field_path, new_value, proposed_by, change_id=None) -> dict:
    return change_intake.submit_change(root_id, field_path, new_value, proposed_by, change_id=change_id)


def list_pending_changes(root_id) -> list[dict]:
    return change_intake.list_pending_changes(root_id)


def compute_impacts(root_id, change_ids) -> list[ImpactRecord]:
    return impact_classifier.compute_impacts_for(root_id, change_ids)


def apply_changes(root_id, change_ids, approved_cascade_target_ids=None) -> ApplyResult:
    return cascade_applier.apply_changes(root_id, change_ids, approved_cascade_target_ids)


def reject_changes(root_id, change_ids) -> list[str]:
    return cascade_applier.reject_changes(root_id, change_ids)


# ── Presentation helpers ──────────────────────────────────────────────────────


def order_for_display(impacts) -> list[ImpactRecord]:
    """Severity descending, then document id."""
    return sorted(impacts, key=lambda r: (-r.severity.rank, r.derived_document_id))


def suggest_cascade_targets(root_id, change_ids) -> list[str]:
    """Default cascade selection: every document whose impact is eligible."""
    return [
        r.derived_document_id
        for r in compute_impacts(root_id, change_ids)
        if r.cascade_eligible
    ]


def review_summary(root_id, change_ids) -> dict:
    """Everything a review screen needs for one selection of changes.

    Returns:
        {
            "impacts": [ImpactRecord dicts, severity desc],
            "suggested_cascade_target_ids": [...],
            "counts": {"high": N, "medium": N, "low": N,
                       "requires_review": N, "auto_updateable": N},
        }
    """
    impacts = order_for_display(compute_impacts(root_id, change_ids))
    counts = {s.value: 0 for s in Severity}
    counts["requires_review"] = 0
    counts["auto_updateable"] = 0
    for r in impacts:
        counts[r.severity.value] += 1
        counts["requires_review"] += int(r.requires_review)
        counts["auto_updateable"] += int(r.auto_updateable)
    return {
        "impacts": [r.to_dict() for r in impacts],
        "suggested_cascade_target_ids": sorted(
            r.derived_document_id for r in impacts if r.cascade_eligible
        ),
        "counts": counts,
    }
