from datetime import timedelta
from decimal import Decimal

from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import Session

from renewal_engine.core.config import get_settings
from renewal_engine.main import app
from renewal_engine.middleware.auth import get_current_user
from renewal_engine.models import PaymentTransaction, RefundRequest, Subscription
from renewal_engine.models.enums import (
    BillingCycle,
    Provider,
    RefundStatus,
    SubscriptionStatus as S,
    Tier,
    TransactionStatus,
)
from renewal_engine.models.types import utcnow

from conftest import TEST_USER, make_subscription


def _premium(db, **fields):
    now = utcnow()
    values = dict(
        tier=Tier.premium,
        billing_cycle=BillingCycle.monthly,
        status=S.active,
        provider=Provider.stripe,
        provider_customer_ref="cus_123",
        provider_subscription_ref="sub_123",
        last_provider_subscription_ref="sub_123",
        current_period_start=now - timedelta(days=15),
        current_period_end=now + timedelta(days=15),
    )
    values.update(fields)
    return make_subscription(db, **values)


def _payment(db, sub, ref="pi_1", age=timedelta(days=1), amount="4.99"):
    tx = PaymentTransaction(
        subscription_id=sub.id,
        provider_payment_ref=ref,
        amount=Decimal(amount),
        currency="usd",
        status=TransactionStatus.succeeded,
        metadata_json={},
        created_at=utcnow() - age,
    )
    db.add(tx)
    db.commit()
    return tx


def test_get_subscription_provisions_free_tier(client: TestClient, db_session: Session):
    response = client.get("/subscription")

    assert response.status_code == 200
    data = response.json()
    assert data["user_id"] == TEST_USER
    assert data["tier"] == "free"
    assert data["status"] == "active"
    assert data["billing_cycle"] == "none"
    assert db_session.query(Subscription).count() == 1

    client.get("/subscription")
    assert db_session.query(Subscription).count() == 1


def test_requires_bearer_token(client: TestClient, db_session: Session):
    app.dependency_overrides.pop(get_current_user)

    assert client.get("/subscription").status_code == 401
    assert client.get(
        "/subscription", headers={"Authorization": "Bearer not-a-jwt"}
    ).status_code == 401

    settings = get_settings()
    token = jwt.encode({"sub": "user-7"}, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    response = client.get("/subscription", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json()["user_id"] == "user-7"


def test_pause_and_resume(client: TestClient, db_session: Session, mock_gateway):
    _premium(db_session)

    response = client.post("/subscription/pause", json={"resume_after": "2099-01-01T00:00:00Z"})
    assert response.status_code == 200
    assert response.json()["status"] == "paused"
    assert response.json()["tier"] == "premium"

    response = client.post("/subscription/resume")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "active"
    assert data["pause_resumes_at"] is None

    assert [call[1] for call in mock_gateway] == ["pause", "resume"]
    assert mock_gateway[0][2] == "sub_123"


def test_pause_free_tier_rejected(client: TestClient, db_session: Session, mock_gateway):
    make_subscription(db_session)

    response = client.post("/subscription/pause", json={})

    assert response.status_code == 409
    assert response.json()["code"] == "invalid_transition"
    assert mock_gateway == []


def test_resume_when_not_paused_rejected(client: TestClient, db_session: Session, mock_gateway):
    _premium(db_session)
    response = client.post("/subscription/resume")
    assert response.status_code == 409


def test_switch_billing_cycle_returns_proration(client: TestClient, db_session: Session, mock_gateway):
    _premium(db_session)

    response = client.post("/subscription/switch-billing-cycle", json={"new_cycle": "annual"})

    assert response.status_code == 200
    data = response.json()
    assert data["old_cycle"] == "monthly"
    assert data["new_cycle"] == "annual"
    assert Decimal("2.40") <= Decimal(data["credit"]) <= Decimal("2.60")
    assert Decimal(data["new_cycle_price"]) == Decimal("39.99")
    assert data["subscription"]["billing_cycle"] == "annual"
    assert mock_gateway == [(Provider.stripe, "switch_billing_cycle", "sub_123", BillingCycle.annual)]

    again = client.post("/subscription/switch-billing-cycle", json={"new_cycle": "annual"})
    assert again.status_code == 409


def test_switch_billing_cycle_validates_body(client: TestClient, db_session: Session):
    _premium(db_session)
    response = client.post("/subscription/switch-billing-cycle", json={"new_cycle": "weekly"})
    assert response.status_code == 422


def test_cancel_at_period_end(client: TestClient, db_session: Session, mock_gateway):
    _premium(db_session)

    response = client.post("/subscription/cancel", json={"at_period_end": True, "reason": "too_expensive"})

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "active"
    assert data["cancel_at_period_end"] is True
    assert data["cancel_reason"] == "too_expensive"
    assert mock_gateway == [(Provider.stripe, "cancel", "sub_123", True)]


def test_cancel_immediately(client: TestClient, db_session: Session, mock_gateway):
    _premium(db_session)

    response = client.post("/subscription/cancel", json={"at_period_end": False})

    data = response.json()
    assert data["status"] == "canceled"
    assert data["tier"] == "free"
    assert mock_gateway == [(Provider.stripe, "cancel", "sub_123", False)]


def test_refund_within_window(client: TestClient, db_session: Session, mock_gateway):
    sub = _premium(db_session)
    tx = _payment(db_session, sub)

    response = client.post("/subscription/refund", json={"reason": "changed my mind"})

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "approved"
    assert data["transaction_id"] == tx.id
    assert Decimal(data["amount"]) == Decimal("4.99")

    request = db_session.query(RefundRequest).one()
    assert mock_gateway == [(Provider.stripe, "refund", "pi_1", Decimal("4.99"), request.id)]

    again = client.post("/subscription/refund", json={})
    assert again.status_code == 400
    assert again.json()["code"] == "refund_not_allowed"


def test_refund_outside_window(client: TestClient, db_session: Session, mock_gateway):
    sub = _premium(db_session)
    _payment(db_session, sub, age=timedelta(days=8))

    response = client.post("/subscription/refund", json={})

    assert response.status_code == 400
    assert db_session.query(RefundRequest).count() == 0
    assert mock_gateway == []


def test_refund_without_payment(client: TestClient, db_session: Session, mock_gateway):
    _premium(db_session)
    response = client.post("/subscription/refund", json={})
    assert response.status_code == 400


def test_billing_history(client: TestClient, db_session: Session, mock_gateway):
    sub = _premium(db_session)
    _payment(db_session, sub, ref="pi_old", age=timedelta(days=40))
    _payment(db_session, sub, ref="pi_new", age=timedelta(days=2))
    client.post("/subscription/refund", json={"reason": "duplicate charge"})

    response = client.get("/subscription/billing-history")

    assert response.status_code == 200
    data = response.json()
    assert [t["provider_payment_ref"] for t in data["transactions"]] == ["pi_new", "pi_old"]
    assert len(data["refunds"]) == 1
    assert data["refunds"][0]["status"] == RefundStatus.approved.value
    assert data["refunds"][0]["reason"] == "duplicate charge"


def test_health(client: TestClient):
    assert client.get("/health").json() == {"status": "ok"}
