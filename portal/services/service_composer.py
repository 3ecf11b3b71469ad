"""
Service-Type Composer - derive a project's ordered phase list from its
selected service codes.

Algorithm:
    1. Walk the services in the order supplied and append each service's
       default phase keys, skipping keys already seen (first occurrence wins).
    2. Move onboarding-category phases to the head and delivery-category
       phases to the tail, both in first-seen order.
    3. If no onboarding-category phase is present, prepend the configured
       onboarding phase (ONB); if no delivery-category phase is present,
       append the configured wrap phase (WRAP).

Empty input yields ``[ONB, WRAP]``. The result is frozen onto the
project's tracking row at creation and never recomputed automatically.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from flask import current_app

from portal.core.exceptions import ValidationError
from portal.services import phase_catalog

logger = logging.getLogger(__name__)


def _normalise_codes(service_codes: Iterable[str] | None) -> list[str]:
    codes: list[str] = []
    for raw in service_codes or []:
        if not isinstance(raw, str) or not raw.strip():
            raise ValidationError("Service codes must be non-empty strings",
                                  details={"services": repr(raw)})
        code = raw.strip().upper()
        if code not in codes:
            codes.append(code)
    return codes


def compose_phases(service_codes: Iterable[str] | None) -> list[str]:
    """Return the ordered, de-duplicated phase keys for ``service_codes``.

    Raises:
        NotFoundError: an unknown service code, or a service referencing a
            phase missing from the catalog.
        ValidationError: a blank / non-string service code.
    """
    onboarding_key = current_app.config.get("WORKFLOW_ONBOARDING_PHASE", "ONB")
    wrap_key = current_app.config.get("WORKFLOW_WRAP_PHASE", "WRAP")

    merged: list[str] = []
    for code in _normalise_codes(service_codes):
        service = phase_catalog.get_service_type(code)
        for key in service.default_phase_keys or []:
            if key not in merged:
                merged.append(key)

    phases = phase_catalog.get_phases(merged + [onboarding_key, wrap_key])

    head = [k for k in merged if phases[k].category == "onboarding"]
    tail = [k for k in merged if phases[k].category == "delivery"]
    middle = [k for k in merged if k not in head and k not in tail]

    if not head:
        head = [onboarding_key]
    if not tail:
        tail = [wrap_key]

    composed = head + middle + tail
    logger.debug("Composed phases %s from services %s", composed, list(service_codes or []))
    return composed
