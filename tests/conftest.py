"""
Shared pytest fixtures for the Compliance Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - clock / sender / directory: deterministic engine collaborators,
      installed into ``app.extensions["compliance"]`` for every test
    - engine: ComplianceEngine wired to those collaborators
"""

from datetime import datetime

import pytest

from compliance import create_app
from compliance.engine import ComplianceEngine, EngineSettings
from compliance.integrations.channel_gateway import ChannelSender, DeliveryResult
from compliance.integrations.directory import StaticDirectory
from compliance.models import db as _db
from compliance.utils.clock import FixedClock

T0 = datetime(2024, 3, 1, 9, 0)


class RecordingSender(ChannelSender):
    """Channel sender double: records calls, fails the channels it is told to."""

    def __init__(self, failing=(), raising=()):
        self.failing = set(failing)
        self.raising = set(raising)
        self.calls = []

    def send(self, channel, recipient, payload):
        self.calls.append((channel, recipient, payload))
        if channel in self.raising:
            raise ConnectionError(f"{channel} gateway unreachable")
        if channel in self.failing:
            return DeliveryResult.failed(f"{channel} provider rejected the message")
        return DeliveryResult.ok()

    def channels_for(self, reminder_id):
        return [c for c, _r, p in self.calls if p.get("reminder_id") == reminder_id]


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
def session(app, _setup_db, clock, sender, directory):
    """Per-test: open app context, rollback after test, recreate tables."""
    app.extensions["compliance"] = {"clock": clock, "sender": sender, "directory": directory}
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Engine collaborators ─────────────────────────────────────────────────


@pytest.fixture()
def clock():
    return FixedClock(T0)


@pytest.fixture()
def sender():
    return RecordingSender()


@pytest.fixture()
def directory():
    return StaticDirectory(users={7: "maria@branch.example"}, roles={"auditor": "audit@branch.example"})


@pytest.fixture()
def settings():
    return EngineSettings(max_attempts=3, retry_backoff_minutes=15, claim_ttl_seconds=300)


@pytest.fixture()
def engine(clock, sender, directory, settings):
    return ComplianceEngine(clock=clock, sender=sender, directory=directory, settings=settings)
