"""
Workflow API Facade.

The only entry point external collaborators (forms, billing, admin UI,
client UI) use. Wraps tracker and engine operations and adds:

    - one automatic retry of ConcurrentModificationError after a short
      backoff (WORKFLOW_RETRY_BACKOFF_SECONDS)
    - inline automation evaluation after requirement completions and
      payment signals, isolated from the caller's success path
    - TransitionEvent emission after every committed transition
    - read models for progress, pending actions, history and the
      stuck-project report

Returns plain dicts ready for ``jsonify``.
"""

from __future__ import annotations

import logging
import time
from datetime import timedelta

from flask import current_app

from portal.core.exceptions import ConcurrentModificationError, WorkflowError
from portal.models import db
from portal.models.workflow import SYSTEM_ACTOR, PhaseTransitionHistory
from portal.services import automation_engine, phase_catalog, phase_tracker, requirement_registry
from portal.services.transition_events import TransitionEvent, bus
from portal.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


# ── Internals ────────────────────────────────────────────────────────────────


def _with_retry(project_id: str, fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except ConcurrentModificationError as exc:
        backoff = float(current_app.config.get("WORKFLOW_RETRY_BACKOFF_SECONDS", 0.05))
        logger.warning("Concurrent modification, retrying once in %.2fs: %s", backoff, exc,
                       extra={"project_id": project_id})
        time.sleep(backoff)
        return fn(*args, **kwargs)


def _emit(history: PhaseTransitionHistory) -> None:
    bus.emit(TransitionEvent.from_history(history))


def emit_automation_transition(result: automation_engine.EvaluationResult) -> None:
    if result.advanced and result.history_id is not None:
        history = db.session.get(PhaseTransitionHistory, result.history_id)
        if history is not None:
            _emit(history)


def _evaluate_quietly(project_id: str) -> dict:
    """Automation after a triggering event; never fails the trigger."""
    try:
        result = _with_retry(project_id, automation_engine.evaluate, project_id)
    except WorkflowError as exc:
        logger.warning("Automation evaluation deferred: %s", exc, extra={"project_id": project_id})
        return {"project_id": project_id, "status": "deferred", "error": str(exc)}
    emit_automation_transition(result)
    return result.to_dict()


def _transition_response(project_id: str, history: PhaseTransitionHistory) -> dict:
    return {"transition": history.to_dict(), "state": phase_tracker.get_state(project_id)}


# ── Operations ───────────────────────────────────────────────────────────────


def start_project(project_id: str, services, actor_id: str) -> dict:
    """Create tracking for a project; AlreadyTrackedError if it exists."""
    _with_retry(project_id, phase_tracker.create_tracking, project_id, services, actor_id)
    return get_progress(project_id)


def submit_requirement(
    project_id: str,
    requirement_key: str,
    actor_id: str,
    metadata: dict | None = None,
    notes: str | None = None,
) -> dict:
    """Record a requirement completion, then re-evaluate automation.

    The completion is committed before evaluation starts, so an automation
    failure cannot undo it.
    """
    completion = _with_retry(
        project_id, phase_tracker.record_requirement_completion,
        project_id, requirement_key, actor_id, metadata=metadata, notes=notes,
    )
    completion_data = completion.to_dict()
    automation = _evaluate_quietly(project_id)
    return {
        "completion": completion_data,
        "automation": automation,
        "state": phase_tracker.get_state(project_id),
    }


def record_payment(project_id: str, payment_id: str, actor_id: str = SYSTEM_ACTOR,
                   amount=None, received_at=None) -> dict:
    """Store a billing confirmation, then re-evaluate automation."""
    signal = _with_retry(
        project_id, phase_tracker.record_payment,
        project_id, payment_id, amount=amount, received_at=received_at, recorded_by=actor_id,
    )
    payment = signal.to_dict()
    automation = _evaluate_quietly(project_id)
    return {"payment": payment, "automation": automation, "state": phase_tracker.get_state(project_id)}


def advance(project_id: str, actor_id: str, reason: str | None = None) -> dict:
    history = _with_retry(project_id, phase_tracker.advance_phase, project_id, actor_id, reason)
    _emit(history)
    return _transition_response(project_id, history)


def override(project_id: str, target_phase_key: str, actor_id: str, reason: str) -> dict:
    history = _with_retry(
        project_id, phase_tracker.override_to_phase, project_id, target_phase_key, actor_id, reason,
    )
    _emit(history)
    return _transition_response(project_id, history)


def complete(project_id: str, actor_id: str, notes: str | None = None) -> dict:
    history = _with_retry(project_id, phase_tracker.complete_project, project_id, actor_id, notes)
    _emit(history)
    return _transition_response(project_id, history)


def evaluate(project_id: str) -> dict:
    """Manual re-evaluation; unlike the inline trigger, errors propagate."""
    result = _with_retry(project_id, automation_engine.evaluate, project_id)
    emit_automation_transition(result)
    return {"automation": result.to_dict(), "state": phase_tracker.get_state(project_id)}


# ── Read models ──────────────────────────────────────────────────────────────


def get_progress(project_id: str) -> dict:
    """Phase timeline with per-phase status plus current-phase requirements.

    Phase status is ``completed``, ``current`` or ``upcoming``; a completed
    project reports every phase as completed.
    """
    tracking = phase_tracker.get_tracking(project_id)
    phases = phase_catalog.get_phases(tracking.phase_keys)
    completions = tracking.phase_completions or {}

    timeline = []
    for index, key in enumerate(tracking.phase_keys):
        if tracking.is_completed or index < tracking.current_phase_index:
            status = "completed"
        elif index == tracking.current_phase_index:
            status = "current"
        else:
            status = "upcoming"
        phase = phases[key]
        timeline.append({
            "index": index,
            "key": key,
            "name": phase.name,
            "icon": phase.icon,
            "category": phase.category,
            "requires_client_action": phase.requires_client_action,
            "status": status,
            "completed_at": completions.get(key),
        })

    done = sum(1 for p in timeline if p["status"] == "completed")
    requirements = requirement_registry.requirement_status(project_id, tracking.current_phase_key)
    return {
        "state": tracking.to_dict(),
        "phases": timeline,
        "completed_phases": done,
        "total_phases": len(timeline),
        "percent_complete": round(100 * done / len(timeline)) if timeline else 0,
        "current_phase": {
            "key": tracking.current_phase_key,
            "name": phases[tracking.current_phase_key].name,
            "satisfied": requirement_registry.is_phase_satisfied(project_id, tracking.current_phase_key),
            "requirements": requirements,
        },
    }


def list_pending_actions(project_id: str) -> list[dict]:
    """Incomplete requirements of the current phase, mandatory first.

    Empty for completed projects.
    """
    tracking = phase_tracker.get_tracking(project_id)
    if tracking.is_completed:
        return []
    pending = [
        r for r in requirement_registry.requirement_status(project_id, tracking.current_phase_key)
        if not r["completed"]
    ]
    pending.sort(key=lambda r: (not r["is_mandatory"], r["sort_order"], r["requirement_key"]))
    return pending


def get_history(project_id: str) -> list[dict]:
    return [row.to_dict() for row in phase_tracker.get_history(project_id)]


def find_stuck_projects(threshold_days: int | None = None) -> list[dict]:
    """Open projects whose current phase started ``threshold_days`` or more ago.

    Sorted longest-waiting first, with the current phase's pending
    mandatory requirements.
    """
    if threshold_days is None:
        threshold_days = current_app.config.get("WORKFLOW_STUCK_THRESHOLD_DAYS", 7)
    now = utcnow()
    cutoff = now - timedelta(days=threshold_days)

    stuck = []
    for tracking in phase_tracker.list_open_projects():
        started = as_utc(tracking.phase_started_at)
        if started > cutoff:
            continue
        pending = [
            r["requirement_key"]
            for r in requirement_registry.requirement_status(tracking.project_id, tracking.current_phase_key)
            if r["is_mandatory"] and not r["completed"]
        ]
        stuck.append({
            "project_id": tracking.project_id,
            "current_phase_key": tracking.current_phase_key,
            "current_phase_index": tracking.current_phase_index,
            "phase_started_at": started.isoformat(),
            "days_in_phase": (now - started).days,
            "pending_mandatory": pending,
        })
    stuck.sort(key=lambda s: s["days_in_phase"], reverse=True)
    return stuck
