"""
Shared pytest fixtures for the workflow engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test app context, default catalog, table reset (autouse)
    - client: Flask test client (function-scoped)
    - tracked_sp: project tracked with services ["SP"]
    - complete_phase: helper completing every mandatory requirement of a phase
"""

import pytest

from portal import create_app
from portal.models import db as _db
from portal.services.catalog_seed import seed_default_catalog
from portal.services.transition_events import bus


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context with the default catalog, reset afterwards."""
    with app.app_context():
        seed_default_catalog()
        yield
        bus.clear()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def tracked_sp():
    """Project 'proj-sp' tracked with services ["SP"] → ONB, IDEA, PREP, PRINT, LAUNCH."""
    from portal.services import phase_tracker
    phase_tracker.create_tracking("proj-sp", ["SP"], "admin-1")
    return "proj-sp"


@pytest.fixture()
def complete_phase():
    """Return a helper that records every mandatory requirement of a phase
    straight through the tracker (no automation)."""
    from portal.services import phase_tracker, requirement_registry

    def _complete(project_id, phase_key, actor_id="client-1"):
        for req in requirement_registry.requirements_for(phase_key):
            if req.is_mandatory:
                phase_tracker.record_requirement_completion(project_id, req.requirement_key, actor_id)

    return _complete
