"""
Test fixtures for the GIM backend.

Provides database session fixtures, a TestClient wired to the test database
and factories for webhook subscriptions.
"""

import os

# Point the application engine at an in-memory database before gim.db is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("ENVIRONMENT", "test")

import pytest  # noqa: E402
from typing import Generator, List  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session, SQLModel, create_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import gim.models  # noqa: E402,F401
from gim.models.webhook import WebhookSubscription  # noqa: E402

# Use in-memory SQLite for unit tests (fast, isolated)
TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def test_session(test_engine) -> Generator[Session, None, None]:
    """Provide a test database session."""
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def client(test_engine) -> Generator[TestClient, None, None]:
    """TestClient with lifespan running and sessions bound to the test engine."""
    from gim.db import get_session
    from gim.main import app

    def override_get_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_subscription(test_session: Session):
    """Factory for WebhookSubscription rows."""

    def _make(
        url: str = "https://hooks.example.com/gim",
        events: List[str] | None = None,
        client_id: str = "client_1",
        secret: str = "s3cret",
        max_attempts: int = 3,
        timeout_seconds: float = 10.0,
        is_active: bool = True,
    ) -> WebhookSubscription:
        subscription = WebhookSubscription(
            client_id=client_id,
            url=url,
            secret=secret,
            events=events if events is not None else ["payment.overdue"],
            max_attempts=max_attempts,
            timeout_seconds=timeout_seconds,
            is_active=is_active,
        )
        test_session.add(subscription)
        test_session.commit()
        test_session.refresh(subscription)
        return subscription

    return _make
