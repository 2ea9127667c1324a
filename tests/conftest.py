"""Pytest configuration and fixtures."""

import hashlib
import hmac
import json
import os
import time
from typing import Any, Dict, List, Optional

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
import stripe
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from database.models import UserRecord
from database.session import Base, build_sessionmaker, get_db
from main import app, get_payment_provider
from utils.payments import PaymentProvider

WEBHOOK_SECRET = "whsec_test_secret"


class FakePaymentProvider(PaymentProvider):
    """In-memory stand-in for the Stripe API; signature checks stay real."""

    def __init__(self, webhook_secret: Optional[str] = WEBHOOK_SECRET) -> None:
        super().__init__(None, webhook_secret=webhook_secret, webhook_tolerance=300)
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.customers: Dict[str, List[Dict[str, Any]]] = {}
        self.subscriptions: Dict[str, List[Dict[str, Any]]] = {}
        self.error: Optional[Exception] = None
        self.retrieve_calls: List[str] = []

    @property
    def configured(self) -> bool:
        return True

    def add_session(
        self,
        session_id: str,
        *,
        payment_status: str = "paid",
        client_reference_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Dict[str, Any]:
        session = {
            "id": session_id,
            "object": "checkout.session",
            "payment_status": payment_status,
            "client_reference_id": client_reference_id,
            "customer_details": {"email": email} if email else None,
        }
        self.sessions[session_id] = session
        return session

    def retrieve_session(self, session_id: str) -> Any:
        self.retrieve_calls.append(session_id)
        if self.error is not None:
            raise self.error
        try:
            return self.sessions[session_id]
        except KeyError:
            raise stripe.InvalidRequestError(
                f"No such checkout.session: '{session_id}'", "id", code="resource_missing"
            ) from None

    def list_customers(self, email: str) -> List[Any]:
        if self.error is not None:
            raise self.error
        return self.customers.get(email, [])

    def list_subscriptions(self, customer_id: str, status: str = "active") -> List[Any]:
        if self.error is not None:
            raise self.error
        return [sub for sub in self.subscriptions.get(customer_id, []) if sub.get("status") == status]

    def create_checkout_session(self, **params: Any) -> Any:
        if self.error is not None:
            raise self.error
        session = {"id": "cs_test_created", "url": "https://checkout.stripe.test/cs_test_created", **params}
        self.sessions[session["id"]] = session
        return session


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a ``Stripe-Signature`` header the way Stripe does."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def checkout_completed_event(
    *,
    email: Optional[str] = "ada@example.com",
    payment_status: str = "paid",
    client_reference_id: Optional[str] = None,
    event_type: str = "checkout.session.completed",
) -> bytes:
    session: Dict[str, Any] = {
        "id": "cs_test_webhook",
        "object": "checkout.session",
        "payment_status": payment_status,
        "client_reference_id": client_reference_id,
        "customer_details": {"email": email} if email else {"email": None},
    }
    event = {"id": "evt_test_1", "object": "event", "type": event_type, "data": {"object": session}}
    return json.dumps(event).encode("utf-8")


@pytest.fixture
def db_session() -> Session:
    """Fresh in-memory SQLite user store for each test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session = build_sessionmaker(engine)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def client(db_session: Session, provider: FakePaymentProvider) -> TestClient:
    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_payment_provider] = lambda: provider
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def count_users(db: Session) -> int:
    return db.query(UserRecord).count()
