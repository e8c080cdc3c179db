"""
Shared pytest fixtures for the SDD engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - feature: Pre-created Feature at phase 0
    - make_feature / make_learning / walk_to_phase / close_invocation: factories
"""

import pytest

from sdd_engine import create_app
from sdd_engine.models import db as _db
from sdd_engine.models.workflow import EXPECTED_PHASE_AGENTS
from sdd_engine.services import feature_service, learning_service, phase_service, telemetry_service


# ── App & DB fixtures ────────────────────────────────────────────────────


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
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


def _make_feature(feature_id="auth-flow", **overrides):
    params = {
        "name": "Authentication flow",
        "complexity_level": 2,
        "severity": "ROUTINE",
        "created_by": "orchestrator",
    }
    params.update(overrides)
    return feature_service.create_feature(feature_id, **params)


def _walk_to_phase(feature_id, target, actor="orchestrator"):
    """Transition forward one phase at a time until ``target``."""
    current = feature_service.get_feature(feature_id)["current_phase"]
    for phase in range(current + 1, target + 1):
        phase_service.transition(feature_id, phase, actor)


def _close_invocation(feature_id, phase, agent=None, **kwargs):
    """Open and immediately close an invocation; returns the closed invocation."""
    agent = agent or EXPECTED_PHASE_AGENTS[phase]
    invocation_id = telemetry_service.start_invocation(feature_id, phase, agent, **kwargs)
    return telemetry_service.end_invocation(invocation_id)


def _make_learning(**overrides):
    data = {
        "category": "GOTCHA",
        "title": "SQLite ignores foreign keys by default",
        "content": "Enable PRAGMA foreign_keys on every connection.",
    }
    data.update(overrides)
    return learning_service.create_learning(data)


@pytest.fixture()
def make_feature():
    return _make_feature


@pytest.fixture()
def walk_to_phase():
    return _walk_to_phase


@pytest.fixture()
def close_invocation():
    return _close_invocation


@pytest.fixture()
def make_learning():
    return _make_learning


@pytest.fixture()
def feature():
    """A fresh ROUTINE complexity-2 feature at phase 0."""
    return _make_feature()
