"""
Requirement Registry - phase requirements and their per-project status.

Read side (pure queries):
    requirements_for(phase_key)             ordered reference data
    is_phase_satisfied(project_id, phase)   all mandatory requirements done?
    requirement_status(project_id, phase)   requirements joined with completions
    find_requirement(phase_keys, key)       resolve a key within a phase list

Admin side (reference-data editing, commits):
    create_requirement(data)
    update_requirement(requirement_id, data)
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from portal.core.exceptions import ConflictError, NotFoundError, ValidationError
from portal.models import db
from portal.models.workflow import (
    REQUIREMENT_TYPES,
    PhaseRequirement,
    ProjectRequirementCompletion,
)
from portal.services import phase_catalog

logger = logging.getLogger(__name__)


# ── Queries ──────────────────────────────────────────────────────────────────


def requirements_for(phase_key: str) -> list[PhaseRequirement]:
    """Requirements of a phase sorted by sort_order, ties by requirement_key.

    Raises NotFoundError for an unknown phase key.
    """
    phase_catalog.get_phase(phase_key)
    stmt = (
        select(PhaseRequirement)
        .where(PhaseRequirement.phase_key == phase_key)
        .order_by(PhaseRequirement.sort_order, PhaseRequirement.requirement_key)
    )
    return list(db.session.scalars(stmt))


def _completions_by_requirement(project_id: str, requirement_ids: list[int]) -> dict[int, ProjectRequirementCompletion]:
    if not requirement_ids:
        return {}
    stmt = select(ProjectRequirementCompletion).where(
        ProjectRequirementCompletion.project_id == project_id,
        ProjectRequirementCompletion.requirement_id.in_(requirement_ids),
    )
    return {c.requirement_id: c for c in db.session.scalars(stmt)}


def is_phase_satisfied(project_id: str, phase_key: str) -> bool:
    """True iff every mandatory requirement of the phase is completed.

    A phase without mandatory requirements is trivially satisfied; optional
    requirements never affect the result.
    """
    mandatory = [r for r in requirements_for(phase_key) if r.is_mandatory]
    if not mandatory:
        return True
    done = _completions_by_requirement(project_id, [r.id for r in mandatory])
    return all(r.id in done and done[r.id].completed for r in mandatory)


def requirement_status(project_id: str, phase_key: str) -> list[dict]:
    """Requirements of a phase with this project's completion data merged in."""
    requirements = requirements_for(phase_key)
    done = _completions_by_requirement(project_id, [r.id for r in requirements])
    rows = []
    for req in requirements:
        completion = done.get(req.id)
        row = req.to_dict()
        row.update({
            "completed": bool(completion and completion.completed),
            "completed_at": completion.to_dict()["completed_at"] if completion else None,
            "completed_by": completion.completed_by if completion else None,
            "metadata": dict(completion.completion_metadata or {}) if completion else {},
        })
        rows.append(row)
    return rows


def find_requirement(
    phase_keys: list[str],
    requirement_key: str,
    preferred_phase: str | None = None,
) -> PhaseRequirement | None:
    """Resolve ``requirement_key`` among the given phases.

    ``preferred_phase`` (normally the project's current phase) is searched
    first, then the remaining phases in composition order.
    """
    if not phase_keys:
        return None
    stmt = select(PhaseRequirement).where(
        PhaseRequirement.requirement_key == requirement_key,
        PhaseRequirement.phase_key.in_(phase_keys),
    )
    candidates = {r.phase_key: r for r in db.session.scalars(stmt)}
    if preferred_phase and preferred_phase in candidates:
        return candidates[preferred_phase]
    for key in phase_keys:
        if key in candidates:
            return candidates[key]
    return None


# ── Reference-data administration ────────────────────────────────────────────


def _validate_type(requirement_type: str) -> str:
    requirement_type = (requirement_type or "").strip()
    if requirement_type not in REQUIREMENT_TYPES:
        raise ValidationError(
            f"Invalid requirement_type '{requirement_type}'",
            details={"requirement_type": f"must be one of {sorted(REQUIREMENT_TYPES)}"},
        )
    return requirement_type


def _sort_order(value) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("sort_order must be an integer", details={"sort_order": repr(value)}) from exc


def create_requirement(data: dict) -> PhaseRequirement:
    """Create a requirement for an existing phase.

    Required keys: phase_key, requirement_key, requirement_type, requirement_text.
    """
    phase_key = (data.get("phase_key") or "").strip()
    requirement_key = (data.get("requirement_key") or "").strip()
    text = (data.get("requirement_text") or "").strip()
    if not requirement_key or not text:
        raise ValidationError(
            "requirement_key and requirement_text are required",
            details={"requirement_key": requirement_key or "required",
                     "requirement_text": text or "required"},
        )
    phase_catalog.get_phase(phase_key)
    requirement_type = _validate_type(data.get("requirement_type"))

    duplicate = db.session.scalar(select(PhaseRequirement).where(
        PhaseRequirement.phase_key == phase_key,
        PhaseRequirement.requirement_key == requirement_key,
    ))
    if duplicate is not None:
        raise ConflictError("PhaseRequirement", "requirement_key", f"{phase_key}/{requirement_key}")

    req = PhaseRequirement(
        phase_key=phase_key,
        requirement_key=requirement_key,
        requirement_type=requirement_type,
        requirement_text=text,
        is_mandatory=bool(data.get("is_mandatory", False)),
        sort_order=_sort_order(data.get("sort_order")),
    )
    db.session.add(req)
    db.session.commit()
    logger.info("Requirement created %s/%s mandatory=%s",
                phase_key, requirement_key, req.is_mandatory,
                extra={"phase_key": phase_key, "requirement_key": requirement_key})
    return req


def update_requirement(requirement_id: int, data: dict) -> PhaseRequirement:
    """Update text, type, mandatory flag or sort order of a requirement.

    The (phase_key, requirement_key) identity is immutable because
    completion rows reference it.
    """
    req = db.session.get(PhaseRequirement, requirement_id)
    if req is None:
        raise NotFoundError(resource="PhaseRequirement", resource_id=requirement_id)

    if "requirement_text" in data:
        text = (data.get("requirement_text") or "").strip()
        if not text:
            raise ValidationError("requirement_text cannot be empty")
        req.requirement_text = text
    if "requirement_type" in data:
        req.requirement_type = _validate_type(data.get("requirement_type"))
    if "is_mandatory" in data:
        req.is_mandatory = bool(data["is_mandatory"])
    if "sort_order" in data:
        req.sort_order = _sort_order(data["sort_order"])

    db.session.commit()
    logger.info("Requirement updated %s/%s", req.phase_key, req.requirement_key,
                extra={"phase_key": req.phase_key, "requirement_key": req.requirement_key})
    return req
