# Pytest configuration for the Lodgely test suite.
# Forces a local SQLite DB, disables Redis, and wires JWT secrets for deterministic runs.
import os
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

# Test-time environment: local SQLite DB, Redis disabled, predictable JWT secret
os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("LODGELY_JWT_SECRET", "test-secret")

import sys
# Ensure the repo root is on sys.path so 'lodgely' resolves when running pytest without installing
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from lodgely.main import app  # noqa: E402
from lodgely.db import Base, engine  # noqa: E402
from lodgely.feed import ChangeFeed  # noqa: E402
from lodgely.notifier import RecordingNotifier  # noqa: E402
from lodgely.services import Services, build_services  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _bootstrap_db() -> Iterator[None]:
    """
    Session-level database bootstrap using a local SQLite file.

    Drops and recreates schema once per test session to ensure a clean slate.
    """
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _clean_db() -> Iterator[None]:
    """
    Function-level isolation: drop and recreate schema before each test.
    """
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def services(notifier: RecordingNotifier) -> Services:
    """
    Core components over the test database with an in-process feed only.

    Each async test runs on its own event loop; fresh locks and queues keep them bound to it.
    Tests release their own subscriptions.
    """
    return build_services(feed=ChangeFeed(mirror_to_redis=False), notifier=notifier)


@pytest.fixture()
def client(notifier: RecordingNotifier) -> Iterator[TestClient]:
    """
    FastAPI TestClient bound to the application for HTTP-level tests.
    """
    app.state.services = build_services(notifier=notifier)
    with TestClient(app) as c:
        yield c
