"""
Document Graph Blueprint.

Endpoints:
    POST   /api/v1/roots                              create root
    GET    /api/v1/roots                              list roots
    GET    /api/v1/roots/<root_id>                    get root
    POST   /api/v1/roots/<root_id>/status             advance root status
           Body: { "status": "in_review|approved" }

    POST   /api/v1/roots/<root_id>/derived            create derived document
           Body: { "type": "...", "inherited_fields": [...], "name": "..." }
    GET    /api/v1/roots/<root_id>/derived            list derived documents
    GET    /api/v1/derived/<derived_id>               get derived document
    PUT    /api/v1/derived/<derived_id>/inherited-fields
           Body: { "inherited_fields": [...] }        admin redeclaration
    POST   /api/v1/derived/<derived_id>/start         author starts / resumes work
    POST   /api/v1/derived/<derived_id>/complete      author or regeneration
                                                      collaborator signals completion

Layer contract:
    - Blueprint: parse input, call document_service, return JSON.
    - NO db.session calls here; all writes are owned by the service.
"""

import logging

from flask import Blueprint, jsonify, request

from planhub.services import document_service
from planhub.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

documents_bp = Blueprint("documents", __name__, url_prefix="/api/v1")
register_error_handlers(documents_bp)


# ── Root documents ────────────────────────────────────────────────────────────


@documents_bp.route("/roots", methods=["POST"])
def create_root():
    data = request.get_json(silent=True) or {}
    root = document_service.create_root(name=data.get("name"), fields=data.get("fields"))
    return jsonify(root), 201


@documents_bp.route("/roots", methods=["GET"])
def list_roots():
    roots = document_service.list_roots()
    return jsonify({"items": roots, "total": len(roots)}), 200


@documents_bp.route("/roots/<root_id>", methods=["GET"])
def get_root(root_id: str):
    return jsonify(document_service.get_root(root_id)), 200


@documents_bp.route("/roots/<root_id>/status", methods=["POST"])
def advance_root_status(root_id: str):
    data = request.get_json(silent=True) or {}
    status = (data.get("status") or "").strip()
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "Field 'status' is required.")
    return jsonify(document_service.advance_root_status(root_id, status)), 200


# ── Derived documents ─────────────────────────────────────────────────────────


@documents_bp.route("/roots/<root_id>/derived", methods=["POST"])
def create_derived(root_id: str):
    data = request.get_json(silent=True) or {}
    doc_type = (data.get("type") or "").strip()
    if not doc_type:
        return api_error(E.VALIDATION_REQUIRED, "Field 'type' is required.")
    doc = document_service.create_derived(
        root_id,
        doc_type,
        data.get("inherited_fields"),
        name=data.get("name"),
    )
    return jsonify(doc), 201


@documents_bp.route("/roots/<root_id>/derived", methods=["GET"])
def list_derived(root_id: str):
    docs = document_service.list_derived(root_id)
    return jsonify({"items": docs, "total": len(docs)}), 200


@documents_bp.route("/derived/<derived_id>", methods=["GET"])
def get_derived(derived_id: str):
    return jsonify(document_service.get_derived(derived_id)), 200


@documents_bp.route("/derived/<derived_id>/inherited-fields", methods=["PUT"])
def update_inherited_fields(derived_id: str):
    data = request.get_json(silent=True) or {}
    if "inherited_fields" not in data:
        return api_error(E.VALIDATION_REQUIRED, "Field 'inherited_fields' is required.")
    doc = document_service.update_inherited_fields(derived_id, data["inherited_fields"])
    return jsonify(doc), 200


@documents_bp.route("/derived/<derived_id>/start", methods=["POST"])
def start_work(derived_id: str):
    return jsonify(document_service.start_work(derived_id)), 200


@documents_bp.route("/derived/<derived_id>/complete", methods=["POST"])
def complete_work(derived_id: str):
    return jsonify(document_service.complete_work(derived_id)), 200
