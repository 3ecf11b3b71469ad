"""
Automation Rule Engine.

Evaluates the active rules leaving a project's current phase and, when one
is satisfied, advances the project as actor ``system``. Every attempted
transition is recorded in AutomationExecutionLog (outcome ``completed`` or
``failed``); failures are never raised to the event that triggered the
evaluation.

Conditions are parsed from the stored ``condition_type`` /
``condition_params`` columns into a closed set of typed values:

    AllActionsComplete        current phase satisfied (requirement registry)
    PaymentReceived           payment signal at/after phase_started_at
    TimeElapsed(threshold)    now - phase_started_at >= threshold days
    ManualOnly                never auto-satisfied

Rule selection: a rule applies when its from_phase_key is the current phase
and its to_phase_key is NULL or equal to the project's next phase. When
several applicable rules hold at once the oldest wins (created_at, id) and
the ambiguity is written to the log row's ``details``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select

from portal.core.exceptions import (
    AutomationEvaluationError,
    ConflictError,
    ConcurrentModificationError,
    NotFoundError,
    ValidationError,
    WorkflowError,
)
from portal.models import db
from portal.models.workflow import (
    CONDITION_TYPES,
    SYSTEM_ACTOR,
    AutomationExecutionLog,
    AutomationRule,
    ProjectPhaseTracking,
)
from portal.services import phase_catalog, phase_tracker, requirement_registry
from portal.services.project_lock import project_transaction
from portal.utils.helpers import as_utc, isoformat, utcnow

logger = logging.getLogger(__name__)

# Largest threshold a timedelta can hold; NaN and infinity fall outside the range
MAX_THRESHOLD_DAYS = timedelta.max.days


# ═════════════════════════════════════════════════════════════════════════════
# Conditions
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class AllActionsComplete:
    condition_type = "all_actions_complete"


@dataclass(frozen=True)
class PaymentReceived:
    condition_type = "payment_received"


@dataclass(frozen=True)
class TimeElapsed:
    threshold_days: float
    condition_type = "time_elapsed"


@dataclass(frozen=True)
class ManualOnly:
    condition_type = "manual_only"


AutomationCondition = AllActionsComplete | PaymentReceived | TimeElapsed | ManualOnly


def parse_condition(condition_type: str, params: dict | None = None) -> AutomationCondition:
    """Build the typed condition for a rule, raising ValidationError when
    the type is unknown or its parameters are malformed."""
    params = params or {}
    if not isinstance(params, dict):
        raise ValidationError("condition_params must be an object")

    if condition_type == "all_actions_complete":
        return AllActionsComplete()
    if condition_type == "payment_received":
        return PaymentReceived()
    if condition_type == "manual_only":
        return ManualOnly()
    if condition_type == "time_elapsed":
        threshold = params.get("threshold_days")
        if (isinstance(threshold, bool) or not isinstance(threshold, (int, float))
                or not 0 <= threshold <= MAX_THRESHOLD_DAYS):
            raise ValidationError(
                f"time_elapsed requires a numeric threshold_days between 0 and {MAX_THRESHOLD_DAYS}",
                details={"condition_params": params},
            )
        return TimeElapsed(threshold_days=float(threshold))
    raise ValidationError(
        f"Unknown condition_type {condition_type!r}",
        details={"condition_type": f"must be one of {sorted(CONDITION_TYPES)}"},
    )


def condition_holds(condition: AutomationCondition, tracking: ProjectPhaseTracking, now: datetime) -> bool:
    if isinstance(condition, AllActionsComplete):
        return requirement_registry.is_phase_satisfied(tracking.project_id, tracking.current_phase_key)
    if isinstance(condition, PaymentReceived):
        return phase_tracker.payment_received_since(tracking.project_id, tracking.phase_started_at)
    if isinstance(condition, TimeElapsed):
        started = as_utc(tracking.phase_started_at)
        return now - started >= timedelta(days=condition.threshold_days)
    if isinstance(condition, ManualOnly):
        return False
    raise TypeError(f"Unhandled automation condition {condition!r}")


# ═════════════════════════════════════════════════════════════════════════════
# Evaluation
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class EvaluationResult:
    """Outcome of one ``evaluate`` call.

    status: terminal | no_rules | not_satisfied | advanced | failed
    """
    project_id: str
    status: str
    phase_key: str | None = None
    rule_id: int | None = None
    to_phase_key: str | None = None
    log_id: int | None = None
    history_id: int | None = None
    error: str | None = None
    warnings: list[dict] = field(default_factory=list)

    @property
    def advanced(self) -> bool:
        return self.status == "advanced"

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "status": self.status,
            "phase_key": self.phase_key,
            "rule_id": self.rule_id,
            "to_phase_key": self.to_phase_key,
            "log_id": self.log_id,
            "history_id": self.history_id,
            "error": self.error,
            "warnings": list(self.warnings),
        }


def _active_rules_from(phase_key: str) -> list[AutomationRule]:
    stmt = (
        select(AutomationRule)
        .where(AutomationRule.from_phase_key == phase_key, AutomationRule.is_active.is_(True))
        .order_by(AutomationRule.created_at, AutomationRule.id)
    )
    return list(db.session.scalars(stmt))


def _rule_applies(rule: AutomationRule, tracking: ProjectPhaseTracking) -> bool:
    return (
        rule.from_phase_key == tracking.current_phase_key
        and rule.to_phase_key in (None, tracking.next_phase_key)
    )


def _snapshot(tracking: ProjectPhaseTracking, rule: AutomationRule, now: datetime) -> dict:
    return {
        "current_phase_key": tracking.current_phase_key,
        "current_phase_index": tracking.current_phase_index,
        "next_phase_key": tracking.next_phase_key,
        "phase_started_at": isoformat(tracking.phase_started_at),
        "condition_type": rule.condition_type,
        "condition_params": dict(rule.condition_params or {}),
        "evaluated_at": now.isoformat(),
    }


def _satisfied_rules(tracking: ProjectPhaseTracking, now: datetime) -> list[AutomationRule]:
    satisfied = []
    for rule in _active_rules_from(tracking.current_phase_key):
        if not _rule_applies(rule, tracking):
            continue
        try:
            condition = parse_condition(rule.condition_type, rule.condition_params)
        except ValidationError as exc:
            logger.warning("Skipping misconfigured automation rule #%s: %s", rule.id, exc,
                           extra={"rule_id": rule.id, "project_id": tracking.project_id})
            continue
        if condition_holds(condition, tracking, now):
            satisfied.append(rule)
    return satisfied


def evaluate(project_id: str) -> EvaluationResult:
    """Re-evaluate automation for a project's current phase.

    Runs under the project's lock so it sees the latest committed state.
    NotFoundError and ConcurrentModificationError propagate; every failure
    of the transition itself is logged and reported in the result.
    """
    attempt: dict = {}
    try:
        with project_transaction(project_id):
            return _evaluate_locked(project_id, attempt)
    except (NotFoundError, ConcurrentModificationError):
        raise
    except Exception as exc:
        logger.exception("Automation evaluation crashed",
                         extra={"project_id": project_id, "rule_id": attempt.get("rule_id")})
        log = _record_failure_after_rollback(project_id, attempt, exc)
        return EvaluationResult(
            project_id=project_id,
            status="failed",
            phase_key=attempt.get("from_phase_key"),
            rule_id=attempt.get("rule_id"),
            to_phase_key=attempt.get("to_phase_key"),
            log_id=log.id if log is not None else None,
            error=str(exc),
        )


def _evaluate_locked(project_id: str, attempt: dict) -> EvaluationResult:
    tracking = phase_tracker.lock_tracking(project_id)
    phase_key = tracking.current_phase_key
    if tracking.is_completed or tracking.is_last_phase:
        return EvaluationResult(project_id=project_id, status="terminal", phase_key=phase_key)

    now = utcnow()
    if not _active_rules_from(phase_key):
        return EvaluationResult(project_id=project_id, status="no_rules", phase_key=phase_key)

    satisfied = _satisfied_rules(tracking, now)
    if not satisfied:
        return EvaluationResult(project_id=project_id, status="not_satisfied", phase_key=phase_key)

    rule = satisfied[0]
    to_key = tracking.next_phase_key
    warnings = []
    if len(satisfied) > 1:
        warnings.append({
            "type": "ambiguous_rules",
            "message": "Multiple automation rules satisfied; first by creation order applied",
            "rule_ids": [r.id for r in satisfied],
        })
        logger.warning("Ambiguous automation configuration for phase %s: rules %s",
                       phase_key, [r.id for r in satisfied],
                       extra={"project_id": project_id, "phase_key": phase_key, "rule_id": rule.id})

    snapshot = _snapshot(tracking, rule, now)
    attempt.update(rule_id=rule.id, from_phase_key=phase_key, to_phase_key=to_key, snapshot=snapshot)

    try:
        history = phase_tracker.advance_phase(project_id, SYSTEM_ACTOR, reason=rule.description or rule.name)
    except WorkflowError as exc:
        failure = AutomationEvaluationError(rule.id, project_id, exc)
        log = _write_log(rule.id, project_id, phase_key, to_key, "failed", snapshot,
                         error_detail=str(failure), details={"warnings": warnings} if warnings else {})
        logger.warning("%s", failure, extra={"project_id": project_id, "rule_id": rule.id})
        return EvaluationResult(project_id=project_id, status="failed", phase_key=phase_key,
                                rule_id=rule.id, to_phase_key=to_key, log_id=log.id,
                                error=str(exc), warnings=warnings)

    log = _write_log(rule.id, project_id, phase_key, to_key, "completed", snapshot,
                     details={"warnings": warnings} if warnings else {})
    logger.info("Automation rule #%s advanced %s -> %s", rule.id, phase_key, to_key,
                extra={"project_id": project_id, "rule_id": rule.id,
                       "from_phase": phase_key, "to_phase": to_key})
    return EvaluationResult(project_id=project_id, status="advanced", phase_key=phase_key,
                            rule_id=rule.id, to_phase_key=to_key, log_id=log.id,
                            history_id=history.id, warnings=warnings)


def _write_log(rule_id, project_id, from_key, to_key, outcome, snapshot, error_detail=None, details=None):
    log = AutomationExecutionLog(
        rule_id=rule_id,
        project_id=project_id,
        from_phase_key=from_key,
        to_phase_key=to_key,
        outcome=outcome,
        input_snapshot=snapshot or {},
        error_detail=error_detail,
        details=details or {},
    )
    db.session.add(log)
    db.session.flush()
    return log


def _record_failure_after_rollback(project_id: str, attempt: dict, exc: Exception):
    """Persist a failed-outcome row in a fresh transaction."""
    try:
        log = _write_log(
            attempt.get("rule_id"), project_id,
            attempt.get("from_phase_key"), attempt.get("to_phase_key"),
            "failed", attempt.get("snapshot"),
            error_detail=f"{type(exc).__name__}: {exc}",
        )
        db.session.commit()
        return log
    except Exception:
        db.session.rollback()
        logger.exception("Could not record automation failure", extra={"project_id": project_id})
        return None


def sweep_open_projects(on_advance=None) -> dict:
    """Evaluate every open project, each under its own lock.

    Needed for ``time_elapsed`` rules, which no event triggers.
    ``on_advance`` receives the result of every automatic transition.
    """
    project_ids = [t.project_id for t in phase_tracker.list_open_projects()]
    summary = {"evaluated": 0, "advanced": 0, "failed": 0, "skipped": 0}
    for project_id in project_ids:
        try:
            result = evaluate(project_id)
        except WorkflowError as exc:
            summary["skipped"] += 1
            logger.warning("Sweep skipped project: %s", exc, extra={"project_id": project_id})
            continue
        summary["evaluated"] += 1
        if result.status == "advanced":
            summary["advanced"] += 1
            if on_advance is not None:
                on_advance(result)
        elif result.status == "failed":
            summary["failed"] += 1
    logger.info("Automation sweep finished: %s", summary)
    return summary


def dry_run_rule(rule_id: int, project_id: str) -> dict:
    """Dry run: report whether a rule would fire for a project right now.

    Writes an execution log row with outcome ``test``; never transitions.
    """
    rule = get_rule(rule_id)
    tracking = phase_tracker.get_tracking(project_id)
    now = utcnow()
    condition = parse_condition(rule.condition_type, rule.condition_params)

    applies = _rule_applies(rule, tracking) and not tracking.is_completed and not tracking.is_last_phase
    holds = condition_holds(condition, tracking, now)
    would_advance = applies and holds and rule.is_active
    snapshot = _snapshot(tracking, rule, now)
    details = {"applies": applies, "condition_met": holds, "would_advance": would_advance}

    log = _write_log(rule.id, project_id, tracking.current_phase_key,
                     tracking.next_phase_key if applies else rule.to_phase_key,
                     "test", snapshot, details=details)
    db.session.commit()
    logger.info("Automation rule #%s dry run: %s", rule.id, details,
                extra={"project_id": project_id, "rule_id": rule.id})
    return {"rule_id": rule.id, "project_id": project_id, "log_id": log.id,
            "input_snapshot": snapshot, **details}


# ═════════════════════════════════════════════════════════════════════════════
# Rule administration
# ═════════════════════════════════════════════════════════════════════════════


def list_rules(from_phase_key: str | None = None, active_only: bool = False) -> list[AutomationRule]:
    stmt = select(AutomationRule).order_by(AutomationRule.created_at, AutomationRule.id)
    if from_phase_key:
        stmt = stmt.where(AutomationRule.from_phase_key == from_phase_key)
    if active_only:
        stmt = stmt.where(AutomationRule.is_active.is_(True))
    return list(db.session.scalars(stmt))


def get_rule(rule_id: int) -> AutomationRule:
    rule = db.session.get(AutomationRule, rule_id)
    if rule is None:
        raise NotFoundError(resource="AutomationRule", resource_id=rule_id)
    return rule


def _check_unique(from_key: str, to_key: str | None, condition_type: str, exclude_id: int | None = None) -> None:
    stmt = select(AutomationRule).where(
        AutomationRule.from_phase_key == from_key,
        AutomationRule.condition_type == condition_type,
        AutomationRule.to_phase_key.is_(None) if to_key is None else AutomationRule.to_phase_key == to_key,
    )
    for rule in db.session.scalars(stmt):
        if rule.id != exclude_id:
            raise ConflictError("AutomationRule", "from/to/condition_type",
                                f"{from_key}->{to_key or '*'}:{condition_type}")


def create_rule(data: dict) -> AutomationRule:
    """Create an automation rule after validating phases and condition."""
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    from_key = (data.get("from_phase_key") or "").strip()
    phase_catalog.get_phase(from_key)
    to_key = (data.get("to_phase_key") or "").strip() or None
    if to_key is not None:
        phase_catalog.get_phase(to_key)
    condition_type = (data.get("condition_type") or "").strip()
    params = data.get("condition_params") or {}
    parse_condition(condition_type, params)
    _check_unique(from_key, to_key, condition_type)

    rule = AutomationRule(
        name=name,
        description=data.get("description"),
        from_phase_key=from_key,
        to_phase_key=to_key,
        condition_type=condition_type,
        condition_params=dict(params),
        is_active=bool(data.get("is_active", True)),
    )
    db.session.add(rule)
    db.session.commit()
    logger.info("Automation rule #%s created %s -> %s (%s)", rule.id, from_key, to_key or "*",
                condition_type, extra={"rule_id": rule.id, "phase_key": from_key})
    return rule


def update_rule(rule_id: int, data: dict) -> AutomationRule:
    """Update name, description, target, condition or active flag.

    from_phase_key is immutable; create a new rule instead.
    """
    rule = get_rule(rule_id)

    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("name cannot be empty")
        rule.name = name
    if "description" in data:
        rule.description = data.get("description")
    if "is_active" in data:
        rule.is_active = bool(data["is_active"])

    to_key = rule.to_phase_key
    if "to_phase_key" in data:
        to_key = (data.get("to_phase_key") or "").strip() or None
        if to_key is not None:
            phase_catalog.get_phase(to_key)
    condition_type = data.get("condition_type", rule.condition_type)
    params = data.get("condition_params", rule.condition_params) or {}
    parse_condition(condition_type, params)
    _check_unique(rule.from_phase_key, to_key, condition_type, exclude_id=rule.id)

    rule.to_phase_key = to_key
    rule.condition_type = condition_type
    rule.condition_params = dict(params)
    db.session.commit()
    logger.info("Automation rule #%s updated", rule.id, extra={"rule_id": rule.id})
    return rule


def list_executions(rule_id: int | None = None, project_id: str | None = None, limit: int = 100) -> list[AutomationExecutionLog]:
    """Execution log rows, newest first."""
    stmt = select(AutomationExecutionLog).order_by(
        AutomationExecutionLog.created_at.desc(), AutomationExecutionLog.id.desc()
    )
    if rule_id is not None:
        get_rule(rule_id)
        stmt = stmt.where(AutomationExecutionLog.rule_id == rule_id)
    if project_id:
        stmt = stmt.where(AutomationExecutionLog.project_id == project_id)
    return list(db.session.scalars(stmt.limit(max(1, min(limit, 500)))))
