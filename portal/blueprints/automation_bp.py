"""
Automation Blueprint - rule administration, execution log and sweep jobs.

Endpoints:
    GET  /api/v1/automation/rules?from_phase_key=&active_only=
    POST /api/v1/automation/rules
         Body: { name, from_phase_key, to_phase_key?, condition_type,
                 condition_params?, description?, is_active? }
    GET  /api/v1/automation/rules/<id>
    PUT  /api/v1/automation/rules/<id>
    POST /api/v1/automation/rules/<id>/test        dry run
         Body: { "project_id": "..." }
    GET  /api/v1/automation/rules/<id>/executions
    GET  /api/v1/automation/executions?project_id=
    GET  /api/v1/automation/jobs
    POST /api/v1/automation/jobs/<name>/run
"""

import logging

from flask import Blueprint, jsonify, request

from portal.services import automation_engine
from portal.services.scheduler_service import SchedulerService
from portal.utils.errors import E, api_error, register_workflow_error_handlers

logger = logging.getLogger(__name__)

automation_bp = Blueprint("automation", __name__, url_prefix="/api/v1/automation")
register_workflow_error_handlers(automation_bp)


def _limit() -> int:
    return request.args.get("limit", default=100, type=int)


# ── Rules ──────────────────────────────────────────────────────────────────────


@automation_bp.route("/rules", methods=["GET"])
def list_rules():
    rules = automation_engine.list_rules(
        from_phase_key=(request.args.get("from_phase_key") or "").strip().upper() or None,
        active_only=request.args.get("active_only", "").lower() in ("1", "true", "yes"),
    )
    items = [r.to_dict() for r in rules]
    return jsonify({"items": items, "total": len(items)}), 200


@automation_bp.route("/rules", methods=["POST"])
def create_rule():
    data = request.get_json(silent=True) or {}
    for field in ("name", "from_phase_key", "condition_type"):
        if not str(data.get(field) or "").strip():
            return api_error(E.VALIDATION_REQUIRED, f"Field '{field}' is required.")
    if "condition_params" in data and not isinstance(data["condition_params"], dict):
        return api_error(E.VALIDATION_INVALID, "Field 'condition_params' must be an object.")

    rule = automation_engine.create_rule(data)
    return jsonify(rule.to_dict()), 201


@automation_bp.route("/rules/<int:rule_id>", methods=["GET"])
def get_rule(rule_id):
    return jsonify(automation_engine.get_rule(rule_id).to_dict()), 200


@automation_bp.route("/rules/<int:rule_id>", methods=["PUT"])
def update_rule(rule_id):
    data = request.get_json(silent=True) or {}
    if not data:
        return api_error(E.VALIDATION_REQUIRED, "Request body is required.")
    if "condition_params" in data and not isinstance(data["condition_params"], dict):
        return api_error(E.VALIDATION_INVALID, "Field 'condition_params' must be an object.")

    rule = automation_engine.update_rule(rule_id, data)
    return jsonify(rule.to_dict()), 200


@automation_bp.route("/rules/<int:rule_id>/test", methods=["POST"])
def dry_run_rule(rule_id):
    """Report whether the rule would fire for a project now; no transition."""
    data = request.get_json(silent=True) or {}
    project_id = str(data.get("project_id") or "").strip()
    if not project_id:
        return api_error(E.VALIDATION_REQUIRED, "Field 'project_id' is required.")
    return jsonify(automation_engine.dry_run_rule(rule_id, project_id)), 200


@automation_bp.route("/rules/<int:rule_id>/executions", methods=["GET"])
def rule_executions(rule_id):
    logs = automation_engine.list_executions(rule_id=rule_id, limit=_limit())
    items = [log.to_dict() for log in logs]
    return jsonify({"items": items, "total": len(items)}), 200


@automation_bp.route("/executions", methods=["GET"])
def list_executions():
    project_id = (request.args.get("project_id") or "").strip() or None
    logs = automation_engine.list_executions(project_id=project_id, limit=_limit())
    items = [log.to_dict() for log in logs]
    return jsonify({"items": items, "total": len(items)}), 200


# ── Sweep jobs ─────────────────────────────────────────────────────────────────


@automation_bp.route("/jobs", methods=["GET"])
def list_jobs():
    jobs = SchedulerService.list_jobs()
    return jsonify({"items": jobs, "total": len(jobs)}), 200


@automation_bp.route("/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    """Trigger a sweep job now (ops / development)."""
    result = SchedulerService.run_job(job_name)
    status = 200 if result["status"] == "success" else 500
    return jsonify(result), status
