"""
Project Workflow Blueprint.

HTTP binding of the Workflow API Facade. Every route is project-scoped
under /api/v1/projects/<project_id>/workflow.

Endpoints:
    POST   /projects/<pid>/workflow                           start tracking
           Body: { "services": ["SP", ...], "actor_id": "..." }
    GET    /projects/<pid>/workflow                           progress
    GET    /projects/<pid>/workflow/pending                   pending actions
    GET    /projects/<pid>/workflow/history                   transition history
    POST   /projects/<pid>/workflow/requirements/<key>        submit requirement
           Body: { "actor_id", "metadata"?, "notes"? }
    POST   /projects/<pid>/workflow/advance                   manual advance
           Body: { "actor_id", "reason"? }
    POST   /projects/<pid>/workflow/override                  manual override
           Body: { "actor_id", "target_phase_key", "reason" }
    POST   /projects/<pid>/workflow/complete                  complete project
           Body: { "actor_id", "notes"? }
    POST   /projects/<pid>/workflow/payments                  payment signal
           Body: { "payment_id", "amount"?, "received_at"?, "actor_id"? }
    POST   /projects/<pid>/workflow/evaluate                  re-run automation
    GET    /workflow/stuck?threshold_days=                    stuck-project report

Layer contract:
    - Blueprint: parse + validate input shape (400), call the facade.
    - NO db.session calls here; the services own commits.
    - Authentication is out of scope: actor_id comes from the body.
"""

import logging

from flask import Blueprint, jsonify, request

from portal.models.workflow import SYSTEM_ACTOR
from portal.services import workflow_service
from portal.utils.errors import E, api_error, register_workflow_error_handlers
from portal.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")
register_workflow_error_handlers(workflow_bp)


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _required(data: dict, *fields: str):
    """Return a 400 response naming the first missing text field, or None."""
    for name in fields:
        value = data.get(name)
        if not isinstance(value, str) or not value.strip():
            return api_error(E.VALIDATION_REQUIRED, f"Field '{name}' is required.")
    return None


# ── Tracking lifecycle ─────────────────────────────────────────────────────────


@workflow_bp.route("/projects/<project_id>/workflow", methods=["POST"])
def start_project(project_id):
    data = _body()
    err = _required(data, "actor_id")
    if err:
        return err
    services = data.get("services", [])
    if not isinstance(services, list):
        return api_error(E.VALIDATION_INVALID, "Field 'services' must be a list of service codes.")

    progress = workflow_service.start_project(project_id, services, data["actor_id"])
    return jsonify(progress), 201


@workflow_bp.route("/projects/<project_id>/workflow", methods=["GET"])
def get_progress(project_id):
    return jsonify(workflow_service.get_progress(project_id)), 200


@workflow_bp.route("/projects/<project_id>/workflow/pending", methods=["GET"])
def list_pending_actions(project_id):
    items = workflow_service.list_pending_actions(project_id)
    return jsonify({"items": items, "total": len(items)}), 200


@workflow_bp.route("/projects/<project_id>/workflow/history", methods=["GET"])
def get_history(project_id):
    items = workflow_service.get_history(project_id)
    return jsonify({"items": items, "total": len(items)}), 200


# ── Requirement completion & payments ──────────────────────────────────────────


@workflow_bp.route("/projects/<project_id>/workflow/requirements/<requirement_key>", methods=["POST"])
def submit_requirement(project_id, requirement_key):
    """Record a requirement as completed; automation runs inline afterwards.

    Returns 200 even when automation fails; see ``automation.status``.
    """
    data = _body()
    err = _required(data, "actor_id")
    if err:
        return err
    metadata = data.get("metadata") or {}
    if not isinstance(metadata, dict):
        return api_error(E.VALIDATION_INVALID, "Field 'metadata' must be an object.")

    result = workflow_service.submit_requirement(
        project_id, requirement_key, data["actor_id"],
        metadata=metadata, notes=data.get("notes"),
    )
    return jsonify(result), 200


@workflow_bp.route("/projects/<project_id>/workflow/payments", methods=["POST"])
def record_payment(project_id):
    data = _body()
    err = _required(data, "payment_id")
    if err:
        return err
    try:
        received_at = parse_datetime(data.get("received_at"))
    except ValueError as exc:
        return api_error(E.VALIDATION_INVALID, str(exc))

    result = workflow_service.record_payment(
        project_id, data["payment_id"],
        actor_id=data.get("actor_id") or SYSTEM_ACTOR,
        amount=data.get("amount"),
        received_at=received_at,
    )
    return jsonify(result), 201


# ── Manual transitions ─────────────────────────────────────────────────────────


@workflow_bp.route("/projects/<project_id>/workflow/advance", methods=["POST"])
def advance(project_id):
    data = _body()
    err = _required(data, "actor_id")
    if err:
        return err
    return jsonify(workflow_service.advance(project_id, data["actor_id"], data.get("reason"))), 200


@workflow_bp.route("/projects/<project_id>/workflow/override", methods=["POST"])
def override(project_id):
    """Admin override; a non-empty reason is mandatory."""
    data = _body()
    err = _required(data, "actor_id", "target_phase_key", "reason")
    if err:
        return err
    result = workflow_service.override(
        project_id, data["target_phase_key"].strip(), data["actor_id"], data["reason"],
    )
    return jsonify(result), 200


@workflow_bp.route("/projects/<project_id>/workflow/complete", methods=["POST"])
def complete(project_id):
    data = _body()
    err = _required(data, "actor_id")
    if err:
        return err
    return jsonify(workflow_service.complete(project_id, data["actor_id"], data.get("notes"))), 200


@workflow_bp.route("/projects/<project_id>/workflow/evaluate", methods=["POST"])
def evaluate(project_id):
    return jsonify(workflow_service.evaluate(project_id)), 200


# ── Reports ────────────────────────────────────────────────────────────────────


@workflow_bp.route("/workflow/stuck", methods=["GET"])
def stuck_projects():
    threshold = request.args.get("threshold_days", type=int)
    if threshold is not None and threshold < 0:
        return api_error(E.VALIDATION_INVALID, "threshold_days must be >= 0")
    items = workflow_service.find_stuck_projects(threshold)
    return jsonify({"items": items, "total": len(items)}), 200
