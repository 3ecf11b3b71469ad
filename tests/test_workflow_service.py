"""
Workflow API facade tests.

Covers:
    - inline automation after requirement completions and payments
    - automation failures never fail the triggering submission
    - retry on ConcurrentModificationError
    - TransitionEvent emission
    - progress / pending / stuck read models
    - concurrent completions on one project (file-backed SQLite, two threads)
"""

import threading
from datetime import timedelta

import pytest

from portal import create_app
from portal.core.exceptions import (
    AlreadyTrackedError,
    ConcurrentModificationError,
    TerminalPhaseError,
    UnknownRequirementError,
    WorkflowError,
)
from portal.models import db
from portal.models.workflow import PhaseTransitionHistory, ProjectRequirementCompletion
from portal.services import automation_engine, phase_tracker, workflow_service
from portal.services.catalog_seed import seed_default_catalog
from portal.services.transition_events import bus
from portal.utils.helpers import utcnow


@pytest.fixture()
def events():
    received = []
    bus.subscribe(received.append)
    return received


@pytest.fixture()
def started():
    workflow_service.start_project("proj-1", ["SP"], "admin-1")
    return "proj-1"


# ═════════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═════════════════════════════════════════════════════════════════════════════


class TestStartProject:
    def test_returns_progress(self):
        progress = workflow_service.start_project("proj-1", ["SP"], "admin-1")
        assert progress["state"]["current_phase_key"] == "ONB"
        assert progress["total_phases"] == 5
        assert progress["completed_phases"] == 0
        assert progress["current_phase"]["satisfied"] is False

    def test_second_start_conflicts(self, started):
        with pytest.raises(AlreadyTrackedError):
            workflow_service.start_project(started, ["SP"], "admin-1")

    def test_no_event_on_start(self, events):
        workflow_service.start_project("proj-1", ["SP"], "admin-1")
        assert events == []

    def test_lock_timeout_retried_once(self, monkeypatch):
        calls = []
        real_create = phase_tracker.create_tracking

        def _flaky(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise ConcurrentModificationError("proj-1", "lock wait timed out")
            return real_create(*args, **kwargs)

        monkeypatch.setattr(phase_tracker, "create_tracking", _flaky)
        progress = workflow_service.start_project("proj-1", ["SP"], "admin-1")
        assert len(calls) == 2
        assert progress["state"]["current_phase_key"] == "ONB"


class TestSubmitRequirement:
    def test_last_mandatory_requirement_triggers_advance(self, started, events):
        workflow_service.submit_requirement(started, "intake_form", "client-1")
        workflow_service.submit_requirement(started, "service_agreement", "client-1")
        result = workflow_service.submit_requirement(
            started, "deposit_payment", "client-1", metadata={"payment_id": "pi_1"},
        )

        assert result["completion"]["requirement_key"] == "deposit_payment"
        assert result["automation"]["status"] == "advanced"
        assert result["state"]["current_phase_key"] == "IDEA"
        assert len(events) == 1
        assert events[0].from_phase_key == "ONB"
        assert events[0].to_phase_key == "IDEA"
        assert events[0].transitioned_by == "system"

    def test_partial_completion_stays(self, started, events):
        result = workflow_service.submit_requirement(started, "intake_form", "client-1")
        assert result["automation"]["status"] == "not_satisfied"
        assert result["state"]["current_phase_key"] == "ONB"
        assert events == []

    def test_unknown_requirement_propagates(self, started):
        with pytest.raises(UnknownRequirementError):
            workflow_service.submit_requirement(started, "nope", "client-1")

    def test_automation_failure_keeps_completion(self, started, monkeypatch):
        workflow_service.submit_requirement(started, "intake_form", "client-1")
        workflow_service.submit_requirement(started, "service_agreement", "client-1")

        def _refuse(*args, **kwargs):
            raise WorkflowError("downstream unavailable")

        monkeypatch.setattr(phase_tracker, "advance_phase", _refuse)
        result = workflow_service.submit_requirement(started, "deposit_payment", "client-1")

        assert result["completion"]["completed"] is True
        assert result["automation"]["status"] == "failed"
        assert result["state"]["current_phase_key"] == "ONB"
        assert ProjectRequirementCompletion.query.filter_by(project_id=started).count() == 3

    def test_evaluation_lock_timeout_is_deferred(self, started, monkeypatch):
        def _busy(project_id):
            raise ConcurrentModificationError(project_id, "lock wait timed out")

        monkeypatch.setattr(automation_engine, "evaluate", _busy)
        result = workflow_service.submit_requirement(started, "intake_form", "client-1")
        assert result["automation"]["status"] == "deferred"
        assert result["completion"]["completed"] is True


class TestRecordPayment:
    def test_payment_advances_pay_phase(self, events):
        workflow_service.start_project("proj-std", ["STD"], "admin-1")
        workflow_service.override("proj-std", "PAY", "admin-1", "invoice issued")
        events.clear()

        result = workflow_service.record_payment("proj-std", "pi_42", amount="1200.50")

        assert result["payment"]["amount"] == 1200.5
        assert result["automation"]["status"] == "advanced"
        assert result["state"]["current_phase_key"] == "SIGN"
        assert [e.to_phase_key for e in events] == ["SIGN"]


class TestManualTransitions:
    def test_advance_emits_event(self, started, events):
        result = workflow_service.advance(started, "admin-1", "kick-off call held")
        assert result["transition"]["to_phase_key"] == "IDEA"
        assert result["state"]["current_phase_index"] == 1
        assert events[0].transition_type == "advance"
        assert events[0].reason == "kick-off call held"

    def test_override_event_is_flagged(self, started, events):
        workflow_service.override(started, "PRINT", "admin-1", "reprint")
        assert events[0].is_override is True
        assert events[0].to_phase_key == "PRINT"

    def test_complete(self, started, events):
        workflow_service.override(started, "LAUNCH", "admin-1", "ship it")
        result = workflow_service.complete(started, "admin-1", notes="delivered")
        assert result["state"]["is_completed"] is True
        assert events[-1].transition_type == "completion"

    def test_failed_transition_emits_nothing(self, started, events):
        workflow_service.override(started, "LAUNCH", "admin-1", "ship it")
        events.clear()
        with pytest.raises(TerminalPhaseError):
            workflow_service.advance(started, "admin-1")
        assert events == []

    def test_listener_error_does_not_fail_transition(self, started):
        def _broken(event):
            raise RuntimeError("mail server down")

        bus.subscribe(_broken)
        result = workflow_service.advance(started, "admin-1")
        assert result["state"]["current_phase_key"] == "IDEA"

    def test_retry_once_on_concurrent_modification(self, started, monkeypatch):
        calls = []
        real_advance = phase_tracker.advance_phase

        def _flaky(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise ConcurrentModificationError(started, "row lock not available")
            return real_advance(*args, **kwargs)

        monkeypatch.setattr(phase_tracker, "advance_phase", _flaky)
        result = workflow_service.advance(started, "admin-1")
        assert len(calls) == 2
        assert result["state"]["current_phase_key"] == "IDEA"

    def test_second_concurrent_failure_propagates(self, started, monkeypatch):
        def _always_busy(*args, **kwargs):
            raise ConcurrentModificationError(started, "row lock not available")

        monkeypatch.setattr(phase_tracker, "advance_phase", _always_busy)
        with pytest.raises(ConcurrentModificationError):
            workflow_service.advance(started, "admin-1")

    def test_manual_evaluate(self, started, complete_phase, events):
        complete_phase(started, "ONB")
        result = workflow_service.evaluate(started)
        assert result["automation"]["status"] == "advanced"
        assert result["state"]["current_phase_key"] == "IDEA"
        assert len(events) == 1


# ═════════════════════════════════════════════════════════════════════════════
# Read models
# ═════════════════════════════════════════════════════════════════════════════


class TestProgress:
    def test_phase_statuses(self, started):
        workflow_service.advance(started, "admin-1")
        progress = workflow_service.get_progress(started)
        statuses = [(p["key"], p["status"]) for p in progress["phases"]]
        assert statuses == [
            ("ONB", "completed"), ("IDEA", "current"), ("PREP", "upcoming"),
            ("PRINT", "upcoming"), ("LAUNCH", "upcoming"),
        ]
        assert progress["completed_phases"] == 1
        assert progress["percent_complete"] == 20
        assert progress["phases"][0]["completed_at"] is not None
        assert progress["current_phase"]["key"] == "IDEA"
        assert [r["requirement_key"] for r in progress["current_phase"]["requirements"]] == [
            "review_brief", "approve_direction", "initial_feedback",
        ]

    def test_completed_project_is_fully_complete(self, started):
        workflow_service.override(started, "LAUNCH", "admin-1", "ship it")
        workflow_service.complete(started, "admin-1")
        progress = workflow_service.get_progress(started)
        assert progress["percent_complete"] == 100
        assert all(p["status"] == "completed" for p in progress["phases"])


class TestPendingActions:
    def test_mandatory_first(self, started):
        workflow_service.advance(started, "admin-1")
        workflow_service.submit_requirement(started, "review_brief", "client-1")
        pending = workflow_service.list_pending_actions(started)
        assert [(p["requirement_key"], p["is_mandatory"]) for p in pending] == [
            ("approve_direction", True), ("initial_feedback", False),
        ]

    def test_completed_project_has_none(self, started):
        workflow_service.override(started, "LAUNCH", "admin-1", "ship it")
        workflow_service.complete(started, "admin-1")
        assert workflow_service.list_pending_actions(started) == []


class TestStuckProjects:
    def test_reports_idle_projects_longest_first(self, started):
        workflow_service.start_project("proj-2", ["SP"], "admin-1")
        workflow_service.start_project("proj-3", ["SP"], "admin-1")
        for project_id, days in (("proj-1", 10), ("proj-2", 20)):
            tracking = phase_tracker.get_tracking(project_id)
            tracking.phase_started_at = utcnow() - timedelta(days=days)
        db.session.commit()

        stuck = workflow_service.find_stuck_projects(7)

        assert [s["project_id"] for s in stuck] == ["proj-2", "proj-1"]
        assert stuck[0]["days_in_phase"] == 20
        assert stuck[0]["pending_mandatory"] == ["intake_form", "service_agreement", "deposit_payment"]

    def test_default_threshold_from_config(self, app, started, monkeypatch):
        monkeypatch.setitem(app.config, "WORKFLOW_STUCK_THRESHOLD_DAYS", 0)
        assert [s["project_id"] for s in workflow_service.find_stuck_projects()] == [started]


# ═════════════════════════════════════════════════════════════════════════════
# Concurrency
# ═════════════════════════════════════════════════════════════════════════════


class TestConcurrentCompletions:
    """Two workers complete the last two onboarding requirements at once."""

    @pytest.fixture()
    def file_app(self, tmp_path):
        application = create_app(
            "testing",
            config_overrides={"SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'concurrent.db'}"},
        )
        with application.app_context():
            seed_default_catalog()
            workflow_service.start_project("proj-c", ["SP"], "admin-1")
            workflow_service.submit_requirement("proj-c", "deposit_payment", "client-1")
        yield application
        with application.app_context():
            db.session.remove()
            db.drop_all()
            db.engine.dispose()

    def test_no_lost_update(self, file_app):
        barrier = threading.Barrier(2)
        results = {}
        errors = []

        def _submit(requirement_key):
            with file_app.app_context():
                try:
                    barrier.wait(5)
                    results[requirement_key] = workflow_service.submit_requirement(
                        "proj-c", requirement_key, f"user-{requirement_key}",
                    )
                except Exception as exc:  # noqa: BLE001 - surfaced through the assertion below
                    errors.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=_submit, args=(key,))
                   for key in ("intake_form", "service_agreement")]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert errors == []
        assert set(results) == {"intake_form", "service_agreement"}
        statuses = sorted(r["automation"]["status"] for r in results.values())
        assert statuses == ["advanced", "not_satisfied"]

        with file_app.app_context():
            assert ProjectRequirementCompletion.query.filter_by(project_id="proj-c").count() == 3
            advances = PhaseTransitionHistory.query.filter_by(
                project_id="proj-c", transition_type="advance",
            ).all()
            assert [(h.from_phase_key, h.to_phase_key) for h in advances] == [("ONB", "IDEA")]
            assert phase_tracker.get_state("proj-c")["current_phase_key"] == "IDEA"
