"""
Phase catalog and default seed tests.

Covers:
    - seed_default_catalog idempotency
    - phase / service-type lookups and NotFoundError
"""

import pytest

from portal.core.exceptions import NotFoundError
from portal.models import db
from portal.models.workflow import Phase
from portal.services import phase_catalog
from portal.services.catalog_seed import DEFAULT_PHASES, seed_default_catalog


class TestCatalogSeed:
    def test_default_phases_loaded(self):
        assert Phase.query.count() == len(DEFAULT_PHASES)

    def test_reseed_inserts_nothing(self):
        counts = seed_default_catalog()
        assert counts == {"phases": 0, "service_types": 0, "requirements": 0, "rules": 0}

    def test_reseed_keeps_admin_edits(self):
        onb = phase_catalog.get_phase("ONB")
        onb.name = "Kick-off"
        db.session.commit()
        seed_default_catalog()
        assert phase_catalog.get_phase("ONB").name == "Kick-off"


class TestLookups:
    def test_list_phases_in_catalog_order(self):
        keys = [p.key for p in phase_catalog.list_phases()]
        assert keys[0] == "ONB"
        assert keys[-1] == "WRAP"

    def test_get_phase_unknown(self):
        with pytest.raises(NotFoundError):
            phase_catalog.get_phase("NOPE")

    def test_get_phases_reports_missing_key(self):
        with pytest.raises(NotFoundError) as exc_info:
            phase_catalog.get_phases(["ONB", "NOPE"])
        assert exc_info.value.resource_id == "NOPE"

    def test_inactive_service_types_hidden_by_default(self):
        sp = phase_catalog.get_service_type("SP")
        sp.is_active = False
        db.session.commit()
        active = {s.code for s in phase_catalog.list_service_types()}
        everything = {s.code for s in phase_catalog.list_service_types(active_only=False)}
        assert "SP" not in active
        assert "SP" in everything
