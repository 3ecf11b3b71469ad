"""
Requirement registry tests: ordering, satisfaction, status and admin edits.
"""

import pytest

from portal.core.exceptions import ConflictError, NotFoundError, ValidationError
from portal.models import db
from portal.models.workflow import PhaseRequirement
from portal.services import phase_tracker, requirement_registry


class TestRequirementsFor:
    def test_sorted_by_sort_order(self):
        keys = [r.requirement_key for r in requirement_registry.requirements_for("ONB")]
        assert keys == ["intake_form", "service_agreement", "deposit_payment"]

    def test_ties_broken_by_key(self):
        db.session.add(PhaseRequirement(
            phase_key="ONB", requirement_key="aaa_extra", requirement_type="form",
            requirement_text="Extra", is_mandatory=False, sort_order=1,
        ))
        db.session.commit()
        keys = [r.requirement_key for r in requirement_registry.requirements_for("ONB")]
        assert keys[:2] == ["aaa_extra", "intake_form"]

    def test_phase_without_requirements(self):
        assert requirement_registry.requirements_for("PREP") == []

    def test_unknown_phase(self):
        with pytest.raises(NotFoundError):
            requirement_registry.requirements_for("NOPE")


class TestSatisfaction:
    def test_phase_without_mandatory_is_satisfied(self, tracked_sp):
        # PREP ships without requirements
        assert requirement_registry.is_phase_satisfied(tracked_sp, "PREP") is True

    def test_partial_completion_not_satisfied(self, tracked_sp):
        phase_tracker.record_requirement_completion(tracked_sp, "intake_form", "client-1")
        phase_tracker.record_requirement_completion(tracked_sp, "service_agreement", "client-1")
        assert requirement_registry.is_phase_satisfied(tracked_sp, "ONB") is False

    def test_all_mandatory_completed(self, tracked_sp, complete_phase):
        complete_phase(tracked_sp, "ONB")
        assert requirement_registry.is_phase_satisfied(tracked_sp, "ONB") is True

    def test_optional_never_blocks(self, tracked_sp):
        phase_tracker.override_to_phase(tracked_sp, "IDEA", "admin-1", "skip onboarding for test")
        phase_tracker.record_requirement_completion(tracked_sp, "review_brief", "client-1")
        phase_tracker.record_requirement_completion(tracked_sp, "approve_direction", "client-1")
        # initial_feedback is optional and still open
        assert requirement_registry.is_phase_satisfied(tracked_sp, "IDEA") is True

    def test_completions_are_per_project(self, tracked_sp, complete_phase):
        phase_tracker.create_tracking("other", ["SP"], "admin-1")
        complete_phase(tracked_sp, "ONB")
        assert requirement_registry.is_phase_satisfied("other", "ONB") is False

    def test_status_merges_completion(self, tracked_sp):
        phase_tracker.record_requirement_completion(
            tracked_sp, "intake_form", "client-1", metadata={"form_id": "f-9"},
        )
        rows = {r["requirement_key"]: r for r in requirement_registry.requirement_status(tracked_sp, "ONB")}
        assert rows["intake_form"]["completed"] is True
        assert rows["intake_form"]["completed_by"] == "client-1"
        assert rows["intake_form"]["metadata"] == {"form_id": "f-9"}
        assert rows["deposit_payment"]["completed"] is False
        assert rows["deposit_payment"]["metadata"] == {}


class TestFindRequirement:
    def test_prefers_current_phase(self):
        db.session.add(PhaseRequirement(
            phase_key="IDEA", requirement_key="intake_form", requirement_type="form",
            requirement_text="Second intake", is_mandatory=False,
        ))
        db.session.commit()
        found = requirement_registry.find_requirement(["ONB", "IDEA"], "intake_form", preferred_phase="IDEA")
        assert found.phase_key == "IDEA"

    def test_falls_back_to_composition_order(self):
        found = requirement_registry.find_requirement(["ONB", "IDEA"], "review_brief", preferred_phase="ONB")
        assert found.phase_key == "IDEA"

    def test_outside_composition(self):
        assert requirement_registry.find_requirement(["ONB", "IDEA"], "final_payment") is None


class TestAdmin:
    def test_create_requirement(self):
        req = requirement_registry.create_requirement({
            "phase_key": "PREP",
            "requirement_key": "approve_proof",
            "requirement_type": "approval",
            "requirement_text": "Approve print proof",
            "is_mandatory": True,
            "sort_order": 1,
        })
        assert req.id is not None
        assert [r.requirement_key for r in requirement_registry.requirements_for("PREP")] == ["approve_proof"]

    def test_create_duplicate(self):
        with pytest.raises(ConflictError):
            requirement_registry.create_requirement({
                "phase_key": "ONB",
                "requirement_key": "intake_form",
                "requirement_type": "form",
                "requirement_text": "Again",
            })

    def test_create_invalid_type(self):
        with pytest.raises(ValidationError):
            requirement_registry.create_requirement({
                "phase_key": "ONB",
                "requirement_key": "new_thing",
                "requirement_type": "telepathy",
                "requirement_text": "Think hard",
            })

    def test_create_unknown_phase(self):
        with pytest.raises(NotFoundError):
            requirement_registry.create_requirement({
                "phase_key": "NOPE",
                "requirement_key": "x",
                "requirement_type": "form",
                "requirement_text": "x",
            })

    def test_update_mandatory_flag_changes_satisfaction(self, tracked_sp):
        phase_tracker.record_requirement_completion(tracked_sp, "intake_form", "client-1")
        phase_tracker.record_requirement_completion(tracked_sp, "service_agreement", "client-1")
        deposit = next(r for r in requirement_registry.requirements_for("ONB")
                       if r.requirement_key == "deposit_payment")
        requirement_registry.update_requirement(deposit.id, {"is_mandatory": False})
        assert requirement_registry.is_phase_satisfied(tracked_sp, "ONB") is True

    def test_update_rejects_empty_text(self):
        req = requirement_registry.requirements_for("ONB")[0]
        with pytest.raises(ValidationError):
            requirement_registry.update_requirement(req.id, {"requirement_text": "  "})

    def test_update_unknown(self):
        with pytest.raises(NotFoundError):
            requirement_registry.update_requirement(99999, {"is_mandatory": True})

    def test_create_rejects_non_numeric_sort_order(self):
        with pytest.raises(ValidationError):
            requirement_registry.create_requirement({
                "phase_key": "PREP",
                "requirement_key": "approve_proof",
                "requirement_type": "approval",
                "requirement_text": "Approve print proof",
                "sort_order": "first",
            })
        assert requirement_registry.requirements_for("PREP") == []

    def test_update_rejects_non_numeric_sort_order(self):
        req = requirement_registry.requirements_for("ONB")[0]
        original = req.sort_order
        with pytest.raises(ValidationError):
            requirement_registry.update_requirement(req.id, {"sort_order": "later"})
        db.session.rollback()
        assert db.session.get(PhaseRequirement, req.id).sort_order == original
