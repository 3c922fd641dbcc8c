"""
Change Review Blueprint.

Exposes the review operations over HTTP.  Every mutating call is safe to
retry with the same caller-supplied change ids.

Endpoints:
    POST   /api/v1/roots/<root_id>/changes
           Body: { "field_path": "...", "new_value": <any>,
                   "proposed_by": "user|expert|system", "change_id": "..." }
           Returns: 201 with the PendingChange.

    GET    /api/v1/roots/<root_id>/changes
           Returns: 200 with unresolved changes.

    POST   /api/v1/roots/<root_id>/impacts
           Body: { "change_ids": [...] }
           Returns: 200 with impacts (severity desc), suggested cascade
                    targets and per-severity counts.  Read-only.

    POST   /api/v1/roots/<root_id>/changes/apply
           Body: { "change_ids": [...], "cascade_target_ids": [...] }
           Returns: 200 with ApplyResult; 409 on stale changes.

    POST   /api/v1/roots/<root_id>/changes/reject
           Body: { "change_ids": [...] }
           Returns: 200 with the ids newly rejected by this call.
"""

import logging

from flask import Blueprint, jsonify, request

from planhub.services import review_service
from planhub.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

review_bp = Blueprint("review", __name__, url_prefix="/api/v1")
register_error_handlers(review_bp)

_MISSING = object()


def _change_ids(data: dict, *, required: bool = True):
    """Return (change_ids, err_response)."""
    ids = data.get("change_ids", _MISSING)
    if ids is _MISSING:
        if required:
            return None, api_error(E.VALIDATION_REQUIRED, "Field 'change_ids' is required.")
        return [], None
    if not isinstance(ids, list):
        return None, api_error(E.VALIDATION_INVALID, "Field 'change_ids' must be a list.")
    return ids, None


@review_bp.route("/roots/<root_id>/changes", methods=["POST"])
def submit_change(root_id: str):
    data = request.get_json(silent=True)
    if data is None:
        return api_error(E.VALIDATION_REQUIRED, "JSON body is required.")
    if not data.get("field_path"):
        return api_error(E.VALIDATION_REQUIRED, "Field 'field_path' is required.")
    if "new_value" not in data:
        return api_error(E.VALIDATION_REQUIRED, "Field 'new_value' is required.")

    change = review_service.submit_change(
        root_id,
        data["field_path"],
        data["new_value"],
        data.get("proposed_by") or "user",
        change_id=data.get("change_id"),
    )
    return jsonify(change), 201


@review_bp.route("/roots/<root_id>/changes", methods=["GET"])
def list_pending_changes(root_id: str):
    changes = review_service.list_pending_changes(root_id)
    return jsonify({"items": changes, "total": len(changes)}), 200


@review_bp.route("/roots/<root_id>/impacts", methods=["POST"])
def compute_impacts(root_id: str):
    data = request.get_json(silent=True) or {}
    change_ids, err = _change_ids(data, required=False)
    if err:
        return err
    return jsonify(review_service.review_summary(root_id, change_ids)), 200


@review_bp.route("/roots/<root_id>/changes/apply", methods=["POST"])
def apply_changes(root_id: str):
    data = request.get_json(silent=True) or {}
    change_ids, err = _change_ids(data)
    if err:
        return err
    targets = data.get("cascade_target_ids") or []
    if not isinstance(targets, list):
        return api_error(E.VALIDATION_INVALID, "Field 'cascade_target_ids' must be a list.")

    result = review_service.apply_changes(root_id, change_ids, targets)
    return jsonify(result.to_dict()), 200


@review_bp.route("/roots/<root_id>/changes/reject", methods=["POST"])
def reject_changes(root_id: str):
    data = request.get_json(silent=True) or {}
    change_ids, err = _change_ids(data)
    if err:
        return err
    rejected = review_service.reject_changes(root_id, change_ids)
    return jsonify({"rejected_change_ids": rejected}), 200
