"""Standardised API error responses.

Usage
-----
    from portal.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Project not found")
    return api_error(E.TERMINAL_PHASE, "Project already at final phase")
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from portal.core.exceptions import (
    AlreadyTrackedError,
    ConcurrentModificationError,
    ConflictError,
    NotFoundError,
    TerminalPhaseError,
    UnknownRequirementError,
    ValidationError,
)
from portal.models import db

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Business rule – HTTP 422
    BUSINESS_RULE = "ERR_BUSINESS_RULE"
    TERMINAL_PHASE = "ERR_TERMINAL_PHASE"
    UNKNOWN_REQUIREMENT = "ERR_UNKNOWN_REQUIREMENT"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    ALREADY_TRACKED = "ERR_ALREADY_TRACKED"
    CONCURRENT_MODIFICATION = "ERR_CONCURRENT_MODIFICATION"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.BUSINESS_RULE: 422,
    E.TERMINAL_PHASE: 422,
    E.UNKNOWN_REQUIREMENT: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.ALREADY_TRACKED: 409,
    E.CONCURRENT_MODIFICATION: 409,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload.

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_workflow_error_handlers(bp) -> None:
    """Attach the workflow exception → HTTP mapping to a blueprint."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(AlreadyTrackedError)
    def _handle_already_tracked(error: AlreadyTrackedError):
        return api_error(E.ALREADY_TRACKED, str(error))

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @bp.errorhandler(ConcurrentModificationError)
    def _handle_concurrent(error: ConcurrentModificationError):
        return api_error(E.CONCURRENT_MODIFICATION, str(error), details={"retryable": True})

    @bp.errorhandler(TerminalPhaseError)
    def _handle_terminal(error: TerminalPhaseError):
        return api_error(E.TERMINAL_PHASE, str(error), details=error.details)

    @bp.errorhandler(UnknownRequirementError)
    def _handle_unknown_requirement(error: UnknownRequirementError):
        return api_error(E.UNKNOWN_REQUIREMENT, str(error), details=error.details)

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.BUSINESS_RULE, str(error), details=error.details)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        db.session.rollback()
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
