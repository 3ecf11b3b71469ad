"""
Service-type composer tests.

compose_phases: service order, de-duplication, ONB/WRAP injection,
onboarding/delivery repositioning, unknown and blank codes.
"""

import pytest

from portal.core.exceptions import NotFoundError, ValidationError
from portal.models import db
from portal.models.workflow import ServiceType
from portal.services.service_composer import compose_phases


class TestComposePhases:
    def test_single_service(self):
        assert compose_phases(["SP"]) == ["ONB", "IDEA", "PREP", "PRINT", "LAUNCH"]

    def test_codes_are_case_insensitive(self):
        assert compose_phases(["sp"]) == compose_phases(["SP"])

    def test_empty_input(self):
        assert compose_phases([]) == ["ONB", "WRAP"]
        assert compose_phases(None) == ["ONB", "WRAP"]

    def test_merge_deduplicates_first_occurrence_wins(self):
        # SP: ONB IDEA PREP PRINT LAUNCH; GD: ONB IDEA DSGN REV LAUNCH
        assert compose_phases(["SP", "GD"]) == [
            "ONB", "IDEA", "PREP", "PRINT", "DSGN", "REV", "LAUNCH",
        ]

    def test_service_order_matters_for_middle_phases(self):
        assert compose_phases(["GD", "SP"]) == [
            "ONB", "IDEA", "DSGN", "REV", "PREP", "PRINT", "LAUNCH",
        ]

    def test_delivery_phases_moved_to_tail(self):
        # COL ends with WRAP, SP ends with LAUNCH; both are delivery phases
        composed = compose_phases(["COL", "SP"])
        assert composed[0] == "ONB"
        assert composed[-2:] == ["WRAP", "LAUNCH"]
        assert composed.count("ONB") == 1

    def test_missing_onboarding_and_delivery_injected(self):
        db.session.add(ServiceType(
            code="RUSH", display_name="Rush job", default_phase_keys=["PRINT"],
        ))
        db.session.commit()
        assert compose_phases(["RUSH"]) == ["ONB", "PRINT", "WRAP"]

    def test_unknown_service_code(self):
        with pytest.raises(NotFoundError):
            compose_phases(["SP", "NOPE"])

    def test_blank_code_rejected(self):
        with pytest.raises(ValidationError):
            compose_phases(["SP", "  "])

    def test_duplicate_codes_ignored(self):
        assert compose_phases(["SP", "SP"]) == compose_phases(["SP"])
