"""
Project Phase Tracker - per-project workflow state machine.

Mutating operations (each one atomic under ``project_transaction``):
    create_tracking               freeze composition, start at index 0
    record_requirement_completion upsert one completion row
    advance_phase                 i → i+1, structural checks only
    override_to_phase             jump anywhere in the composition (audited)
    complete_project              close the final phase once it is satisfied
    record_payment                store a billing confirmation

Read operations (never lock):
    get_tracking / get_state / get_history / payment_received_since

Invariant held by every write: ``current_phase_index`` is the position of
``current_phase_key`` in ``phase_keys``; both are only ever set together
through ``_move_to``.

The tracker never checks requirement satisfaction before ``advance_phase``;
callers (admins, automation) decide when advancing is appropriate.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from portal.core.exceptions import (
    AlreadyTrackedError,
    NotFoundError,
    TerminalPhaseError,
    UnknownRequirementError,
    ValidationError,
)
from portal.models import db
from portal.models.workflow import (
    SYSTEM_ACTOR,
    PaymentSignal,
    PhaseTransitionHistory,
    ProjectPhaseTracking,
    ProjectRequirementCompletion,
)
from portal.services import phase_catalog, requirement_registry
from portal.services.project_lock import project_transaction
from portal.services.service_composer import compose_phases
from portal.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _require_text(value, field: str) -> str:
    text = value.strip() if isinstance(value, str) else ""
    if not text:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return text


def lock_tracking(project_id: str) -> ProjectPhaseTracking:
    """Load the tracking row with a row lock; must run inside project_transaction."""
    stmt = (
        select(ProjectPhaseTracking)
        .where(ProjectPhaseTracking.project_id == project_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    tracking = db.session.scalar(stmt)
    if tracking is None:
        raise NotFoundError(resource="ProjectPhaseTracking", resource_id=project_id)
    return tracking


def _move_to(tracking: ProjectPhaseTracking, index: int, now: datetime) -> None:
    tracking.current_phase_index = index
    tracking.current_phase_key = tracking.phase_keys[index]
    tracking.phase_started_at = now


def _stamp_completion(tracking: ProjectPhaseTracking, phase_key: str, now: datetime) -> None:
    completions = dict(tracking.phase_completions or {})
    completions[phase_key] = now.isoformat()
    tracking.phase_completions = completions


def _history(tracking, from_key, to_key, transition_type, actor_id, reason=None, notes=None, now=None):
    row = PhaseTransitionHistory(
        project_id=tracking.project_id,
        from_phase_key=from_key,
        to_phase_key=to_key,
        transition_type=transition_type,
        is_override=transition_type == "override",
        transitioned_by=actor_id,
        reason=reason,
        notes=notes,
        created_at=now or utcnow(),
    )
    db.session.add(row)
    return row


# ── Reads ────────────────────────────────────────────────────────────────────


def get_tracking(project_id: str) -> ProjectPhaseTracking:
    """Tracking row for ``project_id`` (last committed state) or NotFoundError."""
    tracking = db.session.scalar(
        select(ProjectPhaseTracking).where(ProjectPhaseTracking.project_id == project_id)
    )
    if tracking is None:
        raise NotFoundError(resource="ProjectPhaseTracking", resource_id=project_id)
    return tracking


def get_state(project_id: str) -> dict:
    """Read-only snapshot of a project's workflow state."""
    return get_tracking(project_id).to_dict()


def get_history(project_id: str) -> list[PhaseTransitionHistory]:
    """Transition history, oldest first."""
    get_tracking(project_id)
    stmt = (
        select(PhaseTransitionHistory)
        .where(PhaseTransitionHistory.project_id == project_id)
        .order_by(PhaseTransitionHistory.created_at, PhaseTransitionHistory.id)
    )
    return list(db.session.scalars(stmt))


def list_open_projects() -> list[ProjectPhaseTracking]:
    stmt = (
        select(ProjectPhaseTracking)
        .where(ProjectPhaseTracking.is_completed.is_(False))
        .order_by(ProjectPhaseTracking.id)
    )
    return list(db.session.scalars(stmt))


def payment_received_since(project_id: str, since: datetime) -> bool:
    """True if a payment signal was received at or after ``since``."""
    since = as_utc(since)
    signals = db.session.scalars(
        select(PaymentSignal).where(PaymentSignal.project_id == project_id)
    )
    return any(as_utc(s.received_at) >= since for s in signals)


# ── Writes ───────────────────────────────────────────────────────────────────


def create_tracking(project_id: str, service_codes, initiated_by: str) -> ProjectPhaseTracking:
    """Start tracking a project at the first phase of its composition.

    Raises:
        AlreadyTrackedError: the project already has tracking state.
        NotFoundError: unknown service code.
        ValidationError: blank project id / actor.
    """
    project_id = _require_text(project_id, "project_id")
    initiated_by = _require_text(initiated_by, "initiated_by")
    services = [s.strip().upper() for s in service_codes or [] if isinstance(s, str)]
    phase_keys = compose_phases(service_codes)

    try:
        with project_transaction(project_id):
            existing = db.session.scalar(
                select(ProjectPhaseTracking.id).where(ProjectPhaseTracking.project_id == project_id)
            )
            if existing is not None:
                raise AlreadyTrackedError(project_id)

            now = utcnow()
            tracking = ProjectPhaseTracking(
                project_id=project_id,
                services=services,
                phase_keys=phase_keys,
                phase_completions={},
                is_completed=False,
                created_by=initiated_by,
            )
            _move_to(tracking, 0, now)
            db.session.add(tracking)
            _history(tracking, None, phase_keys[0], "initial", initiated_by,
                     reason="Project workflow started", now=now)
            db.session.flush()
    except IntegrityError as exc:
        # Another worker inserted the row between our check and our flush
        raise AlreadyTrackedError(project_id) from exc

    logger.info("Tracking created with phases %s", phase_keys,
                extra={"project_id": project_id, "phase_key": phase_keys[0], "actor_id": initiated_by})
    return tracking


def record_requirement_completion(
    project_id: str,
    requirement_key: str,
    actor_id: str,
    metadata: dict | None = None,
    notes: str | None = None,
) -> ProjectRequirementCompletion:
    """Mark a requirement completed for a project (insert or overwrite).

    The key is resolved against the current phase first, then the rest of
    the project's phases. Re-submission keeps the row and replaces its data.

    Raises:
        NotFoundError: project is not tracked.
        UnknownRequirementError: key belongs to none of the project's phases.
    """
    actor_id = _require_text(actor_id, "actor_id")
    if metadata is not None and not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object", details={"metadata": "object expected"})

    with project_transaction(project_id):
        tracking = lock_tracking(project_id)
        requirement = requirement_registry.find_requirement(
            tracking.phase_keys, requirement_key, preferred_phase=tracking.current_phase_key,
        )
        if requirement is None:
            logger.warning("Unknown requirement %r submitted", requirement_key,
                           extra={"project_id": project_id, "requirement_key": requirement_key,
                                  "actor_id": actor_id})
            raise UnknownRequirementError(project_id, requirement_key)
        phase_key = requirement.phase_key

        completion = db.session.scalar(select(ProjectRequirementCompletion).where(
            ProjectRequirementCompletion.project_id == project_id,
            ProjectRequirementCompletion.requirement_id == requirement.id,
        ))
        if completion is None:
            completion = ProjectRequirementCompletion(project_id=project_id, requirement_id=requirement.id)
            db.session.add(completion)

        completion.completed = True
        completion.completed_at = utcnow()
        completion.completed_by = actor_id
        completion.notes = notes
        completion.completion_metadata = dict(metadata or {})
        db.session.flush()

    logger.info("Requirement %s/%s completed", phase_key, requirement_key,
                extra={"project_id": project_id, "phase_key": phase_key,
                       "requirement_key": requirement_key, "actor_id": actor_id})
    return completion


def advance_phase(project_id: str, actor_id: str, reason: str | None = None) -> PhaseTransitionHistory:
    """Move the project from phase i to phase i+1.

    Structural checks only: no skipping, no advancing past the last phase.
    Everything is validated before the first mutation, so a failure leaves
    tracking and history untouched.

    Returns the appended history row.
    """
    actor_id = _require_text(actor_id, "actor_id")

    with project_transaction(project_id):
        tracking = lock_tracking(project_id)
        if tracking.is_completed or tracking.is_last_phase:
            raise TerminalPhaseError(project_id, tracking.current_phase_key)

        from_key = tracking.current_phase_key
        to_index = tracking.current_phase_index + 1
        to_key = tracking.phase_keys[to_index]

        now = utcnow()
        _stamp_completion(tracking, from_key, now)
        _move_to(tracking, to_index, now)
        row = _history(tracking, from_key, to_key, "advance", actor_id, reason=reason, now=now)
        db.session.flush()

    logger.info("Phase advanced %s -> %s", from_key, to_key,
                extra={"project_id": project_id, "from_phase": from_key, "to_phase": to_key,
                       "actor_id": actor_id})
    return row


def override_to_phase(project_id: str, target_phase_key: str, actor_id: str, reason: str) -> PhaseTransitionHistory:
    """Manual escape hatch: move to any phase of the composition.

    Forward overrides stamp the departed phase as passed and leave skipped
    phases unstamped. Backward overrides clear the stamps of the target and
    every later phase. A completed project is re-opened.

    Raises:
        ValidationError: empty reason, target outside the composition, or
            target equal to the current phase of an open project.
    """
    actor_id = _require_text(actor_id, "actor_id")
    reason = _require_text(reason, "reason")
    target_phase_key = _require_text(target_phase_key, "target_phase_key")

    with project_transaction(project_id):
        tracking = lock_tracking(project_id)
        if target_phase_key not in tracking.phase_keys:
            phase_catalog.get_phase(target_phase_key)
            raise ValidationError(
                f"Phase {target_phase_key!r} is not part of this project's workflow",
                details={"phase_keys": list(tracking.phase_keys)},
            )
        target_index = tracking.phase_keys.index(target_phase_key)
        from_index = tracking.current_phase_index
        from_key = tracking.current_phase_key
        if target_index == from_index and not tracking.is_completed:
            raise ValidationError(f"Project is already at phase {target_phase_key!r}")

        now = utcnow()
        if target_index > from_index:
            _stamp_completion(tracking, from_key, now)
        else:
            keep = set(tracking.phase_keys[:target_index])
            tracking.phase_completions = {
                k: v for k, v in (tracking.phase_completions or {}).items() if k in keep
            }
        tracking.is_completed = False
        tracking.completed_at = None
        _move_to(tracking, target_index, now)
        row = _history(tracking, from_key, target_phase_key, "override", actor_id, reason=reason, now=now)
        db.session.flush()

    logger.warning("Phase override %s -> %s: %s", from_key, target_phase_key, reason,
                   extra={"project_id": project_id, "from_phase": from_key,
                          "to_phase": target_phase_key, "actor_id": actor_id})
    return row


def complete_project(project_id: str, actor_id: str, notes: str | None = None) -> PhaseTransitionHistory:
    """Close the final phase and mark the project completed.

    Gated by requirement satisfaction of the final phase.
    """
    actor_id = _require_text(actor_id, "actor_id")

    with project_transaction(project_id):
        tracking = lock_tracking(project_id)
        if tracking.is_completed:
            raise TerminalPhaseError(project_id, tracking.current_phase_key)
        if not tracking.is_last_phase:
            raise ValidationError(
                "Project can only be completed from its final phase",
                details={"current_phase_key": tracking.current_phase_key,
                         "final_phase_key": tracking.phase_keys[-1]},
            )
        phase_key = tracking.current_phase_key
        if not requirement_registry.is_phase_satisfied(project_id, phase_key):
            pending = [r["requirement_key"]
                       for r in requirement_registry.requirement_status(project_id, phase_key)
                       if r["is_mandatory"] and not r["completed"]]
            raise ValidationError(
                f"Final phase {phase_key!r} has incomplete mandatory requirements",
                details={"pending": pending},
            )

        now = utcnow()
        _stamp_completion(tracking, phase_key, now)
        tracking.is_completed = True
        tracking.completed_at = now
        row = _history(tracking, phase_key, phase_key, "completion", actor_id,
                       reason="Project completed", notes=notes, now=now)
        db.session.flush()

    logger.info("Project completed at %s", phase_key,
                extra={"project_id": project_id, "phase_key": phase_key, "actor_id": actor_id})
    return row


def record_payment(
    project_id: str,
    payment_id: str,
    amount=None,
    received_at: datetime | None = None,
    recorded_by: str = SYSTEM_ACTOR,
) -> PaymentSignal:
    """Store a payment confirmation. Repeated deliveries of the same
    payment_id return the stored signal unchanged."""
    payment_id = _require_text(payment_id, "payment_id")
    if amount is not None:
        try:
            amount = Decimal(str(amount))
        except InvalidOperation as exc:
            raise ValidationError("amount must be numeric", details={"amount": repr(amount)}) from exc

    with project_transaction(project_id):
        lock_tracking(project_id)
        signal = db.session.scalar(select(PaymentSignal).where(
            PaymentSignal.project_id == project_id,
            PaymentSignal.payment_id == payment_id,
        ))
        if signal is not None:
            logger.info("Duplicate payment signal %s ignored", payment_id, extra={"project_id": project_id})
            return signal
        signal = PaymentSignal(
            project_id=project_id,
            payment_id=payment_id,
            amount=amount,
            received_at=as_utc(received_at) or utcnow(),
            recorded_by=recorded_by or SYSTEM_ACTOR,
        )
        db.session.add(signal)
        db.session.flush()

    logger.info("Payment %s recorded", payment_id,
                extra={"project_id": project_id, "actor_id": recorded_by or SYSTEM_ACTOR})
    return signal
