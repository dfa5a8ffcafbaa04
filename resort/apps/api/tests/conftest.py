"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
# Inject sys.path for reliable pytest imports
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # => .../apps/api

import os

# Settle env before resort_api.db.session builds its engine at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RESORT_JSON_LOGS", "false")

from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from resort_api.auth.session_auth import Caller, get_caller_resolver, get_role_checker
from resort_api.billing.result import Err, ErrorKind, Ok
from resort_api.db.models import (
    Base,
    DiningVendor,
    Event,
    MenuItem,
    Order,
    OrderItem,
    PokerTourney,
)
from resort_api.db.session import get_db
from resort_api.main import app
from resort_api.routers.payments import get_stripe

USER_ID = "user-guest-1"
USER_EMAIL = "guest@example.com"
STAFF_ID = "user-staff-1"
VALID_TOKEN = "valid-session-token"
STAFF_TOKEN = "staff-session-token"


@pytest.fixture(scope="function")
def db_session() -> Session:
    """Fresh in-memory SQLite database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = SessionLocal()

    try:
        yield session
        session.rollback()
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


# ---------------------------------------------------------------------------
# Catalog seed
# ---------------------------------------------------------------------------


@pytest.fixture
def event(db_session: Session) -> Event:
    """$50 + $2 fee, 10 on sale, starts in 1 hour."""
    row = Event(
        id="evt-gala",
        title="New Year Gala",
        price=5000,
        fee=200,
        inventory=10,
        onsale=True,
        starts_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture
def tourney(db_session: Session) -> PokerTourney:
    row = PokerTourney(
        id="trn-main",
        name="Main Event",
        buyin=10000,
        fee=1000,
        seats_total=50,
        seats_left=5,
        active=True,
    )
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture
def cart(db_session: Session) -> Order:
    """Cart with 2 x $10 burger + 1 x $5 fries; stored subtotal matches."""
    db_session.add(DiningVendor(id="vendor-grill", name="Poolside Grill"))
    db_session.add(MenuItem(id="menu-burger", vendor_id="vendor-grill", name="Burger", price=1000))
    db_session.add(MenuItem(id="menu-fries", vendor_id="vendor-grill", name="Fries", price=500))
    order = Order(
        id="order-1",
        user_id=USER_ID,
        vendor_id="vendor-grill",
        subtotal=2500,
        tax=200,
        tip=300,
        fee=100,
        total=3100,
        status="cart",
    )
    db_session.add(order)
    db_session.add(OrderItem(order_id="order-1", menu_item_id="menu-burger", qty=2, name_cache="Burger"))
    db_session.add(OrderItem(order_id="order-1", menu_item_id="menu-fries", qty=1, name_cache="Fries"))
    db_session.commit()
    return order


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


def fake_resolver(token: Optional[str]):
    """Caller resolver stand-in for Supabase auth.get_user."""
    if token == VALID_TOKEN:
        return Ok(Caller(user_id=USER_ID, email=USER_EMAIL))
    if token == STAFF_TOKEN:
        return Ok(Caller(user_id=STAFF_ID, email="staff@example.com"))
    return Err(ErrorKind.UNAUTHENTICATED, "Invalid or expired session token. Please sign in again.")


def fake_role_checker(user_id: str) -> bool:
    return user_id == STAFF_ID


@pytest.fixture
def mock_stripe() -> AsyncMock:
    """Stripe client double returning a fixed customer and intent."""
    stripe = AsyncMock()
    stripe.get_or_create_customer = AsyncMock(return_value="cus_test_123")
    stripe.create_payment_intent = AsyncMock(
        return_value={"id": "pi_test_123", "client_secret": "pi_test_123_secret_abc", "status": "requires_payment_method"}
    )
    stripe.retrieve_payment_intent = AsyncMock()
    return stripe


@pytest.fixture
def client(db_session: Session, mock_stripe: AsyncMock) -> TestClient:
    """TestClient wired to the SQLite session and collaborator doubles."""
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_caller_resolver] = lambda: fake_resolver
    app.dependency_overrides[get_role_checker] = lambda: fake_role_checker
    app.dependency_overrides[get_stripe] = lambda: mock_stripe
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def resolver():
    return fake_resolver


@pytest.fixture
def role_checker():
    return fake_role_checker
