"""
Phase Catalog Blueprint - reference data.

Endpoints:
    GET  /api/v1/phases                      phase library (with requirements)
    GET  /api/v1/phases/<key>
    GET  /api/v1/service-types?include_inactive=1
    GET  /api/v1/service-types/<code>
    POST /api/v1/service-types/compose       preview a composition
         Body: { "services": ["SP", "WEB"] }
    GET  /api/v1/requirements?phase_key=ONB
    POST /api/v1/requirements                create requirement
    PUT  /api/v1/requirements/<id>           update requirement
"""

import logging

from flask import Blueprint, jsonify, request

from portal.services import phase_catalog, requirement_registry
from portal.services.service_composer import compose_phases
from portal.utils.errors import E, api_error, register_workflow_error_handlers

logger = logging.getLogger(__name__)

phase_catalog_bp = Blueprint("phase_catalog", __name__, url_prefix="/api/v1")
register_workflow_error_handlers(phase_catalog_bp)


@phase_catalog_bp.route("/phases", methods=["GET"])
def list_phases():
    items = [p.to_dict(include_requirements=True) for p in phase_catalog.list_phases()]
    return jsonify({"items": items, "total": len(items)}), 200


@phase_catalog_bp.route("/phases/<key>", methods=["GET"])
def get_phase(key):
    return jsonify(phase_catalog.get_phase(key.upper()).to_dict(include_requirements=True)), 200


@phase_catalog_bp.route("/service-types", methods=["GET"])
def list_service_types():
    include_inactive = request.args.get("include_inactive", "").lower() in ("1", "true", "yes")
    items = [s.to_dict() for s in phase_catalog.list_service_types(active_only=not include_inactive)]
    return jsonify({"items": items, "total": len(items)}), 200


@phase_catalog_bp.route("/service-types/<code>", methods=["GET"])
def get_service_type(code):
    return jsonify(phase_catalog.get_service_type(code.upper()).to_dict()), 200


@phase_catalog_bp.route("/service-types/compose", methods=["POST"])
def compose():
    """Compose phases for a service set without creating tracking."""
    data = request.get_json(silent=True) or {}
    services = data.get("services", [])
    if not isinstance(services, list):
        return api_error(E.VALIDATION_INVALID, "Field 'services' must be a list of service codes.")
    return jsonify({"services": services, "phase_keys": compose_phases(services)}), 200


@phase_catalog_bp.route("/requirements", methods=["GET"])
def list_requirements():
    phase_key = (request.args.get("phase_key") or "").strip().upper()
    if not phase_key:
        return api_error(E.VALIDATION_REQUIRED, "Query parameter 'phase_key' is required.")
    items = [r.to_dict() for r in requirement_registry.requirements_for(phase_key)]
    return jsonify({"items": items, "total": len(items)}), 200


@phase_catalog_bp.route("/requirements", methods=["POST"])
def create_requirement():
    data = request.get_json(silent=True) or {}
    for field in ("phase_key", "requirement_key", "requirement_type", "requirement_text"):
        if not str(data.get(field) or "").strip():
            return api_error(E.VALIDATION_REQUIRED, f"Field '{field}' is required.")
    if "sort_order" in data and not isinstance(data["sort_order"], int):
        return api_error(E.VALIDATION_INVALID, "Field 'sort_order' must be an integer.")

    req = requirement_registry.create_requirement(data)
    return jsonify(req.to_dict()), 201


@phase_catalog_bp.route("/requirements/<int:requirement_id>", methods=["PUT"])
def update_requirement(requirement_id):
    data = request.get_json(silent=True) or {}
    if not data:
        return api_error(E.VALIDATION_REQUIRED, "Request body is required.")
    if "sort_order" in data and not isinstance(data["sort_order"], int):
        return api_error(E.VALIDATION_INVALID, "Field 'sort_order' must be an integer.")

    req = requirement_registry.update_requirement(requirement_id, data)
    return jsonify(req.to_dict()), 200
