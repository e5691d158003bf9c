"""
Root test configuration and fixtures.

Each test gets its own in-memory SQLite database, so code under test can
commit and roll back freely.

Shared fixtures:
- db_session: session bound to a fresh database
- make_current_plan / make_legacy_subscription: seed projection rows
- mock_billing_client: deterministic billing provider
"""

from datetime import datetime, timezone, timedelta
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from planguard.db_base import Base
from planguard.models.subscription import OrgSubscription, LegacySubscription
from planguard.tests.helpers.mock_billing_client import MockStripeBillingClient


@pytest.fixture
def db_engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine) -> Generator[Session, None, None]:
    """Database session for one test."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()

    yield session

    session.close()


@pytest.fixture
def now() -> datetime:
    """Fixed reference time for entitlement derivation."""
    return datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_current_plan(db_session):
    """Factory for org_subscriptions rows."""

    def _make(organization_id: str, plan_code=None, status=None, **kwargs) -> OrgSubscription:
        row = OrgSubscription(
            organization_id=organization_id,
            plan_code=plan_code,
            status=status,
            **kwargs,
        )
        db_session.add(row)
        db_session.commit()
        return row

    return _make


@pytest.fixture
def make_legacy_subscription(db_session):
    """Factory for legacy subscriptions rows."""
    counter = {"n": 0}

    def _make(organization_id: str, tier=None, status=None, **kwargs) -> LegacySubscription:
        # Strictly increasing created_at so "newest row" is deterministic
        counter["n"] += 1
        kwargs.setdefault(
            "created_at",
            datetime(2025, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=counter["n"]),
        )
        row = LegacySubscription(
            organization_id=organization_id,
            tier=tier,
            status=status,
            **kwargs,
        )
        db_session.add(row)
        db_session.commit()
        return row

    return _make


@pytest.fixture
def mock_billing_client() -> MockStripeBillingClient:
    """Fresh mock billing provider."""
    return MockStripeBillingClient()
