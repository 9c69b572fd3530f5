"""
Pytest configuration and shared fixtures for the messaging tests.

WHAT: Markers, a throwaway SQLite database, seeded users and an app client
WHY: Every test starts from the same empty schema and fresh in-process state
HOW: Point DATABASE_URL at a temp dir before swaply is imported, then rebuild
     the schema and reset the service/limiter singletons around each test
"""

import os
import tempfile
from datetime import datetime, timedelta
from types import SimpleNamespace

_TEST_DIR = tempfile.mkdtemp(prefix="swaply-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TEST_DIR}/test.db")
os.environ.setdefault("LOG_FILE", f"{_TEST_DIR}/logs/app.log")
os.environ.setdefault("UPLOAD_DIR", f"{_TEST_DIR}/uploads")
os.environ.setdefault("PROPOSAL_SWEEP_MINUTES", "0")

import pytest

from swaply.api.v1 import deps
from swaply.core.database import Base, engine, get_db, init_db
from swaply.core.models import Publication, User
from swaply.services.messaging_service import MessagingService, reset_messaging_service
from swaply.services.notifier import RecordingNotifier
from swaply.services.rate_limiter import InMemoryRateLimiter


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (one component against a real SQLite file)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (HTTP and websocket through the app)"
    )
    config.addinivalue_line(
        "markers", "gateway: Delivery gateway tests (connections, rooms, client state machine)"
    )
    config.addinivalue_line(
        "markers", "negotiation: Exchange proposal lifecycle tests"
    )


class FakeClock:
    """Deterministic clock for stores: call it for 'now', advance() to move time."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def fresh_database():
    """
    Rebuild the schema for each test.

    WHAT: Drop and recreate all tables
    WHY: Tests must not see each other's conversations
    HOW: Base.metadata.drop_all + init_db
    """
    Base.metadata.drop_all(bind=engine)
    init_db()
    yield


@pytest.fixture(autouse=True)
def notifier():
    """Fresh service singleton and rate limiter; the notifier records what it was asked to send."""
    recording = RecordingNotifier()
    reset_messaging_service(MessagingService(notifier=recording))
    deps.set_rate_limiter(InMemoryRateLimiter())
    yield recording
    reset_messaging_service()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def users():
    """
    Seed three users and two publications.

    Returns:
        Namespace with a, b, c (user ids), tokens by user id and pub1/pub2
    """
    with get_db() as db:
        db.add_all([
            User(user_id="user-a", display_name="Ana", auth_token="token-a"),
            User(user_id="user-b", display_name="Bruno", auth_token="token-b"),
            User(user_id="user-c", display_name="Carla", auth_token="token-c"),
        ])
        db.flush()
        db.add_all([
            Publication(publication_id="pub-1", title="Bicicleta de montaña", owner_id="user-b"),
            Publication(publication_id="pub-2", title="Guitarra acústica", owner_id="user-a"),
        ])

    return SimpleNamespace(
        a="user-a",
        b="user-b",
        c="user-c",
        tokens={"user-a": "token-a", "user-b": "token-b", "user-c": "token-c"},
        pub1="pub-1",
        pub2="pub-2",
    )


def auth(token: str) -> dict:
    """Authorization header for a bearer token."""
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers(users):
    """Auth headers keyed by user id."""
    return {user_id: auth(token) for user_id, token in users.tokens.items()}


@pytest.fixture
def client(users):
    """
    App client with lifespan (startup/shutdown) running.

    WHAT: FastAPI TestClient as a context manager
    WHY: The lifespan wires the event loop into the service
    HOW: `with TestClient(app)` per test
    """
    from fastapi.testclient import TestClient

    from swaply.main import app

    with TestClient(app) as test_client:
        yield test_client
