import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timezone

os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("APPLE_JWS_KEY", "apple-test-shared-secret")
os.environ.setdefault("APPLE_JWS_ALGORITHMS", '["HS256"]')
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")

import pytest
from fastapi.testclient import TestClient
from jose import jws
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from renewal_engine.core.config import get_settings
from renewal_engine.core.database import get_db
from renewal_engine.core.limiter import limiter
from renewal_engine.main import app
from renewal_engine.middleware.auth import get_current_user
from renewal_engine.models import Base, Subscription
from renewal_engine.models.enums import BillingCycle, SubscriptionStatus, Tier

get_settings.cache_clear()

STRIPE_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]
APPLE_KEY = os.environ["APPLE_JWS_KEY"]
TEST_USER = "user-1"

# Setup in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# pysqlite handles BEGIN itself and breaks SAVEPOINT; let SQLAlchemy emit it.
@event.listens_for(engine, "connect")
def _do_connect(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(engine, "begin")
def _do_begin(conn):
    conn.exec_driver_sql("BEGIN")


TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

limiter.enabled = False


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db_session):
    """Create a test client with overridden dependencies."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    def override_get_current_user():
        return TEST_USER

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user

    with TestClient(app) as c:
        yield c

    app.dependency_overrides = {}


@pytest.fixture
def settings(monkeypatch):
    """Cached settings; tests monkeypatch individual values."""
    return get_settings()


@pytest.fixture
def mock_gateway(monkeypatch):
    """Capture background provider calls instead of hitting the network."""
    calls = []

    def fake_run_provider_call(provider, operation, *args):
        calls.append((provider, operation) + args)

    monkeypatch.setattr(
        "renewal_engine.services.subscription_service.run_provider_call", fake_run_provider_call
    )
    return calls


def make_subscription(db, user_id=TEST_USER, **fields):
    values = dict(
        tier=Tier.free,
        billing_cycle=BillingCycle.none,
        status=SubscriptionStatus.active,
        cancel_at_period_end=False,
    )
    values.update(fields)
    sub = Subscription(user_id=user_id, **values)
    db.add(sub)
    db.commit()
    db.refresh(sub)
    return sub


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def epoch(dt: datetime) -> int:
    return int(dt.timestamp())


# ---------------------------------------------------------------------------
# Stripe helpers
# ---------------------------------------------------------------------------

def stripe_signature(payload: bytes, secret: str = STRIPE_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_id: str, event_type: str, obj: dict) -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }).encode("utf-8")


def post_stripe(client, payload: bytes, signature: str = None):
    return client.post(
        "/webhooks/stripe",
        content=payload,
        headers={
            "Stripe-Signature": signature or stripe_signature(payload),
            "Content-Type": "application/json",
        },
    )


def stripe_invoice(
    subscription_ref="sub_123",
    customer="cus_123",
    user_id=TEST_USER,
    payment_intent="pi_1",
    amount=499,
    period_start=None,
    period_end=None,
    interval="month",
    attempt_count=1,
):
    period_start = period_start or utc(2024, 1, 1)
    period_end = period_end or utc(2024, 2, 1)
    return {
        "id": f"in_{payment_intent}",
        "object": "invoice",
        "customer": customer,
        "subscription": subscription_ref,
        "payment_intent": payment_intent,
        "amount_paid": amount,
        "amount_due": amount,
        "attempt_count": attempt_count,
        "currency": "usd",
        "subscription_details": {"metadata": {"user_id": user_id}},
        "lines": {"data": [{
            "period": {"start": epoch(period_start), "end": epoch(period_end)},
            "price": {"recurring": {"interval": interval}},
        }]},
    }


# ---------------------------------------------------------------------------
# Apple helpers
# ---------------------------------------------------------------------------

def apple_signed(claims: dict, key: str = APPLE_KEY) -> str:
    return jws.sign(claims, key, algorithm="HS256")


def apple_notification(
    notification_uuid: str,
    notification_type: str,
    subtype: str = None,
    transaction: dict = None,
    renewal: dict = None,
    key: str = APPLE_KEY,
) -> bytes:
    data = {"bundleId": "com.example.renewals", "environment": "Sandbox"}
    if transaction is not None:
        data["signedTransactionInfo"] = apple_signed(transaction, key)
    if renewal is not None:
        data["signedRenewalInfo"] = apple_signed(renewal, key)
    claims = {
        "notificationType": notification_type,
        "notificationUUID": notification_uuid,
        "data": data,
        "version": "2.0",
    }
    if subtype:
        claims["subtype"] = subtype
    return json.dumps({"signedPayload": apple_signed(claims, key)}).encode("utf-8")


def apple_transaction(
    original_transaction_id="1000000001",
    transaction_id="2000000001",
    product_id="com.example.premium.monthly",
    purchase=None,
    expires=None,
    user_id=TEST_USER,
    price=4990,
):
    purchase = purchase or utc(2024, 1, 1)
    expires = expires or utc(2024, 2, 1)
    return {
        "originalTransactionId": original_transaction_id,
        "transactionId": transaction_id,
        "productId": product_id,
        "purchaseDate": epoch(purchase) * 1000,
        "expiresDate": epoch(expires) * 1000,
        "appAccountToken": user_id,
        "price": price,
        "currency": "USD",
    }
