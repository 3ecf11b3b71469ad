"""
Phase Catalog - read access to phase and service-type reference data.

Pure lookups, no side effects. Listing order is the catalog's
``sort_order`` (ties by key); a project's own phase order comes from its
frozen composition, not from here.
"""

from __future__ import annotations

from sqlalchemy import select

from portal.core.exceptions import NotFoundError
from portal.models import db
from portal.models.workflow import Phase, ServiceType


def list_phases() -> list[Phase]:
    """All phases in catalog order."""
    stmt = select(Phase).order_by(Phase.sort_order, Phase.key)
    return list(db.session.scalars(stmt))


def get_phase(key: str) -> Phase:
    """Return the phase with ``key`` or raise NotFoundError."""
    phase = db.session.scalar(select(Phase).where(Phase.key == key))
    if phase is None:
        raise NotFoundError(resource="Phase", resource_id=key)
    return phase


def get_phases(keys: list[str]) -> dict[str, Phase]:
    """Map key → Phase for the given keys; unknown keys raise NotFoundError."""
    if not keys:
        return {}
    found = {p.key: p for p in db.session.scalars(select(Phase).where(Phase.key.in_(keys)))}
    for key in keys:
        if key not in found:
            raise NotFoundError(resource="Phase", resource_id=key)
    return found


def list_service_types(active_only: bool = True) -> list[ServiceType]:
    stmt = select(ServiceType).order_by(ServiceType.sort_order, ServiceType.code)
    if active_only:
        stmt = stmt.where(ServiceType.is_active.is_(True))
    return list(db.session.scalars(stmt))


def get_service_type(code: str) -> ServiceType:
    """Return the service type with ``code`` or raise NotFoundError."""
    service = db.session.scalar(select(ServiceType).where(ServiceType.code == code))
    if service is None:
        raise NotFoundError(resource="ServiceType", resource_id=code)
    return service
