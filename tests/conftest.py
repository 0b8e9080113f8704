# tests/conftest.py

import os

# Settings are read at import time, so the environment is prepared before
# anything from booking_service is imported.
os.environ.setdefault("ENV", "local")
os.environ.setdefault("DATABASE_URL_LOCAL", "sqlite:///./booking_test.db")
os.environ.setdefault("DATABASE_URL_PROD", "sqlite:///./booking_test.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ENABLE_SCHEDULER", "false")
os.environ.setdefault("ENABLE_EVENT_PUBLISHING", "false")

import pytest
from unittest.mock import MagicMock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from starlette.testclient import TestClient

import booking_service.models  # noqa: F401
from booking_service.api import deps
from booking_service.core.cache import InMemoryTTLBackend, LookupCache, get_lookup_cache
from booking_service.core.kafka_producer import get_event_publisher
from booking_service.db.base_class import Base
from booking_service.main import app
from booking_service.services.payment.refund_requester import get_refund_requester


# --- Test Database Setup ---
# A file database (not :memory:) so that threads in the concurrency tests
# share it through their own connections.
@pytest.fixture(scope="function")
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'booking.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


# --- Mock Dependencies Setup ---
@pytest.fixture
def publisher():
    """Event publisher double; assertions inspect publish/alert calls."""
    return MagicMock()


@pytest.fixture
def refund_requester():
    return MagicMock()


@pytest.fixture
def lookup_cache():
    return LookupCache(InMemoryTTLBackend(), ttl_seconds=300, namespace="test")


# --- Test Client Fixtures ---
@pytest.fixture(scope="function")
def test_client(session_factory, publisher, refund_requester, lookup_cache):
    """
    TestClient on the per-test SQLite database. Kafka, refunds and the lookup
    cache are replaced; auth uses real tokens signed with the test secret.
    """

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[deps.get_db] = override_get_db
    app.dependency_overrides[get_event_publisher] = lambda: publisher
    app.dependency_overrides[get_refund_requester] = lambda: refund_requester
    app.dependency_overrides[get_lookup_cache] = lambda: lookup_cache

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
