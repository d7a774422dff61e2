import logging
from datetime import timedelta
from decimal import Decimal

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from renewal_engine.models import PaymentTransaction, RefundRequest, Subscription, WebhookEvent
from renewal_engine.models.enums import (
    BillingCycle,
    ProcessingStatus,
    Provider,
    RefundStatus,
    SubscriptionStatus as S,
    Tier,
    TransactionStatus,
)
from renewal_engine.models.types import utcnow
from renewal_engine.services.ledger_service import PaymentLedger

from conftest import (
    TEST_USER,
    epoch,
    make_subscription,
    post_stripe,
    stripe_event,
    stripe_invoice,
    utc,
)


def _premium(db, **fields):
    values = dict(
        tier=Tier.premium,
        billing_cycle=BillingCycle.monthly,
        status=S.active,
        provider=Provider.stripe,
        provider_customer_ref="cus_123",
        provider_subscription_ref="sub_123",
        last_provider_subscription_ref="sub_123",
        current_period_start=utc(2024, 1, 1),
        current_period_end=utc(2024, 2, 1),
    )
    values.update(fields)
    return make_subscription(db, **values)


def _subscription(db) -> Subscription:
    db.expire_all()
    return db.query(Subscription).filter(Subscription.user_id == TEST_USER).one()


def _event_row(db, event_id) -> WebhookEvent:
    db.expire_all()
    return db.query(WebhookEvent).filter(WebhookEvent.event_id == event_id).one()


def test_invalid_signature_rejected_without_storing(client: TestClient, db_session: Session):
    payload = stripe_event("evt_1", "invoice.payment_succeeded", stripe_invoice())

    response = post_stripe(client, payload, signature="t=1700000000,v1=deadbeef")

    assert response.status_code == 401
    assert response.json()["code"] == "signature_invalid"
    assert db_session.query(WebhookEvent).count() == 0


def test_missing_signature_rejected(client: TestClient, db_session: Session):
    payload = stripe_event("evt_1", "invoice.payment_succeeded", stripe_invoice())
    response = client.post("/webhooks/stripe", content=payload)
    assert response.status_code == 401


def test_malformed_json_rejected(client: TestClient, db_session: Session):
    response = post_stripe(client, b"{not json")

    assert response.status_code == 400
    assert response.json()["code"] == "malformed_payload"
    assert db_session.query(WebhookEvent).count() == 0


def test_payment_succeeded_activates_and_records(client: TestClient, db_session: Session):
    payload = stripe_event("evt_1", "invoice.payment_succeeded", stripe_invoice())

    response = post_stripe(client, payload)

    assert response.status_code == 200
    assert response.json()["status"] == "processed"

    sub = _subscription(db_session)
    assert sub.tier == Tier.premium
    assert sub.status == S.active
    assert sub.billing_cycle == BillingCycle.monthly
    assert sub.provider == Provider.stripe
    assert sub.provider_subscription_ref == "sub_123"
    assert sub.provider_customer_ref == "cus_123"
    assert sub.current_period_end == utc(2024, 2, 1)

    tx = db_session.query(PaymentTransaction).one()
    assert tx.provider_payment_ref == "pi_1"
    assert tx.amount == Decimal("4.99")
    assert tx.status == TransactionStatus.succeeded

    row = _event_row(db_session, "evt_1")
    assert row.processing_status == ProcessingStatus.processed
    assert row.event_type == "invoice.payment_succeeded"
    assert row.processed_at is not None


def test_duplicate_delivery_processed_once(client: TestClient, db_session: Session):
    payload = stripe_event("evt_1", "invoice.payment_succeeded", stripe_invoice())

    first = post_stripe(client, payload)
    version = _subscription(db_session).version
    second = post_stripe(client, payload)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    assert second.json()["code"] == "duplicate_event"
    assert db_session.query(PaymentTransaction).count() == 1
    assert db_session.query(WebhookEvent).count() == 1
    assert _subscription(db_session).version == version


def test_same_payment_under_new_event_id_is_noop(client: TestClient, db_session: Session):
    invoice = stripe_invoice()
    post_stripe(client, stripe_event("evt_1", "invoice.payment_succeeded", invoice))
    version = _subscription(db_session).version

    response = post_stripe(client, stripe_event("evt_2", "invoice.paid", invoice))

    assert response.status_code == 200
    assert response.json()["status"] == "processed"
    assert db_session.query(PaymentTransaction).count() == 1
    assert _subscription(db_session).version == version


def test_renewal_extends_period(client: TestClient, db_session: Session):
    _premium(db_session)
    invoice = stripe_invoice(payment_intent="pi_2", period_start=utc(2024, 2, 1), period_end=utc(2024, 3, 1))

    post_stripe(client, stripe_event("evt_renew", "invoice.payment_succeeded", invoice))

    sub = _subscription(db_session)
    assert sub.current_period_start == utc(2024, 2, 1)
    assert sub.current_period_end == utc(2024, 3, 1)


def test_payment_failed_marks_past_due_and_keeps_entitlement(client: TestClient, db_session: Session):
    _premium(db_session)
    invoice = stripe_invoice(payment_intent="pi_2", attempt_count=1)

    response = post_stripe(client, stripe_event("evt_fail", "invoice.payment_failed", invoice))

    assert response.status_code == 200
    sub = _subscription(db_session)
    assert sub.status == S.past_due
    assert sub.tier == Tier.premium
    assert sub.past_due_since is not None

    tx = db_session.query(PaymentTransaction).one()
    assert tx.provider_payment_ref == "pi_2:failed:1"
    assert tx.status == TransactionStatus.failed


def test_past_due_then_provider_expiry(client: TestClient, db_session: Session):
    _premium(db_session)
    post_stripe(client, stripe_event("evt_fail", "invoice.payment_failed", stripe_invoice(payment_intent="pi_2")))

    deleted = {
        "id": "sub_123", "object": "subscription", "customer": "cus_123", "status": "canceled",
        "metadata": {"user_id": TEST_USER},
    }
    response = post_stripe(client, stripe_event("evt_del", "customer.subscription.deleted", deleted))
    assert response.json()["status"] == "processed"

    sub = _subscription(db_session)
    assert sub.status == S.canceled
    assert sub.tier == Tier.free
    assert sub.billing_cycle == BillingCycle.none
    assert sub.provider_subscription_ref is None
    assert sub.last_provider_subscription_ref == "sub_123"

    # Same fact announced again by customer.subscription.updated
    updated = dict(deleted)
    response = post_stripe(client, stripe_event("evt_upd", "customer.subscription.updated", updated))
    assert response.json()["status"] == "processed"
    assert _subscription(db_session).status == S.canceled


def test_scheduled_cancel_and_reinstate(client: TestClient, db_session: Session):
    _premium(db_session)
    obj = {
        "id": "sub_123", "object": "subscription", "customer": "cus_123", "status": "active",
        "cancel_at_period_end": True,
        "current_period_start": epoch(utc(2024, 1, 1)),
        "current_period_end": epoch(utc(2024, 2, 1)),
        "items": {"data": [{"price": {"recurring": {"interval": "month"}}}]},
    }

    post_stripe(client, stripe_event("evt_c1", "customer.subscription.updated", obj))
    sub = _subscription(db_session)
    assert sub.status == S.active
    assert sub.cancel_at_period_end is True

    obj["cancel_at_period_end"] = False
    post_stripe(client, stripe_event("evt_c2", "customer.subscription.updated", obj))
    assert _subscription(db_session).cancel_at_period_end is False


def test_unknown_event_type_ignored(client: TestClient, db_session: Session):
    response = post_stripe(client, stripe_event("evt_x", "customer.created", {"id": "cus_1"}))

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"
    assert _event_row(db_session, "evt_x").processing_status == ProcessingStatus.ignored


def test_business_failure_acknowledged_and_recorded(client: TestClient, db_session: Session):
    invoice = stripe_invoice(subscription_ref="sub_ghost", customer="cus_ghost", user_id=None)
    payload = stripe_event("evt_ghost", "invoice.payment_failed", invoice)

    response = post_stripe(client, payload)

    assert response.status_code == 200
    assert response.json()["status"] == "failed"
    row = _event_row(db_session, "evt_ghost")
    assert row.processing_status == ProcessingStatus.failed
    assert "sub_ghost" in row.error
    assert db_session.query(PaymentTransaction).count() == 0

    # Once the subscription is known, a redelivery re-claims the failed event.
    _premium(db_session, provider_subscription_ref="sub_ghost", provider_customer_ref="cus_ghost")
    response = post_stripe(client, payload)

    assert response.json()["status"] == "processed"
    row = _event_row(db_session, "evt_ghost")
    assert row.processing_status == ProcessingStatus.processed
    assert row.retry_count == 1
    assert row.error is None


def test_invalid_transition_marks_event_failed(client: TestClient, db_session: Session):
    make_subscription(
        db_session, status=S.paused, tier=Tier.premium,
        provider_subscription_ref="sub_123", provider_customer_ref="cus_123",
    )

    response = post_stripe(client, stripe_event("evt_f", "invoice.payment_failed", stripe_invoice()))

    assert response.status_code == 200
    assert _event_row(db_session, "evt_f").processing_status == ProcessingStatus.failed
    assert _subscription(db_session).status == S.paused
    assert db_session.query(PaymentTransaction).count() == 0


def test_store_failure_returns_503_and_keeps_event_pending(client: TestClient, db_session: Session, monkeypatch):
    payload = stripe_event("evt_1", "invoice.payment_succeeded", stripe_invoice())

    def broken_record(*args, **kwargs):
        raise OperationalError("INSERT INTO payment_transactions", {}, Exception("database is locked"))

    monkeypatch.setattr(PaymentLedger, "record", staticmethod(broken_record))
    response = post_stripe(client, payload)

    assert response.status_code == 503
    row = _event_row(db_session, "evt_1")
    assert row.processing_status == ProcessingStatus.pending
    assert row.claimed_at is None
    assert db_session.query(Subscription).count() == 0

    monkeypatch.undo()
    response = post_stripe(client, payload)

    assert response.status_code == 200
    assert response.json()["status"] == "processed"
    assert _event_row(db_session, "evt_1").retry_count == 1
    assert db_session.query(PaymentTransaction).count() == 1


def test_partial_refund_downgrades(client: TestClient, db_session: Session):
    _premium(db_session)
    charge = {
        "id": "ch_1", "object": "charge", "customer": "cus_123",
        "amount": 499, "amount_refunded": 200, "refunded": False, "currency": "usd",
        "refunds": {"data": [{"id": "re_1"}]},
    }

    response = post_stripe(client, stripe_event("evt_r", "charge.refunded", charge))

    assert response.json()["status"] == "processed"
    sub = _subscription(db_session)
    assert sub.status == S.active
    assert sub.tier == Tier.free
    tx = db_session.query(PaymentTransaction).one()
    assert tx.provider_payment_ref == "re_1"
    assert tx.amount == Decimal("2.00")
    assert tx.status == TransactionStatus.refunded


def test_full_refund_expires_and_completes_request(client: TestClient, db_session: Session):
    sub = _premium(db_session)
    tx_id = PaymentLedger.record(db_session, sub.id, "pi_1", Decimal("4.99"), "usd", TransactionStatus.succeeded)
    request = RefundRequest(
        subscription_id=sub.id, transaction_id=tx_id, amount=Decimal("4.99"), status=RefundStatus.approved,
    )
    db_session.add(request)
    db_session.commit()

    charge = {
        "id": "ch_1", "object": "charge", "customer": "cus_123",
        "amount": 499, "amount_refunded": 499, "refunded": True, "currency": "usd", "payment_intent": "pi_1",
        "refunds": {"data": [{"id": "re_1"}]},
    }
    post_stripe(client, stripe_event("evt_r", "charge.refunded", charge))

    sub = _subscription(db_session)
    assert sub.status == S.canceled
    assert sub.tier == Tier.free
    assert sub.cancel_reason == "refunded"

    request = db_session.query(RefundRequest).one()
    assert request.status == RefundStatus.completed
    assert request.provider_refund_ref == "re_1"
    assert request.processed_at is not None


def test_late_activation_after_deletion_stays_canceled(client: TestClient, db_session: Session):
    post_stripe(client, stripe_event("evt_paid", "invoice.paid", stripe_invoice()))
    deleted = {
        "id": "sub_123", "object": "subscription", "customer": "cus_123", "status": "canceled",
        "metadata": {"user_id": TEST_USER},
    }
    post_stripe(client, stripe_event("evt_del", "customer.subscription.deleted", deleted))

    created = {
        "id": "sub_123", "object": "subscription", "customer": "cus_123", "status": "active",
        "metadata": {"user_id": TEST_USER},
        "current_period_start": epoch(utc(2024, 1, 1)),
        "current_period_end": epoch(utc(2024, 2, 1)),
        "items": {"data": [{"price": {"recurring": {"interval": "month"}}}]},
    }
    response = post_stripe(client, stripe_event("evt_created", "customer.subscription.created", created))

    assert response.json()["status"] == "processed"
    sub = _subscription(db_session)
    assert sub.status == S.canceled
    assert sub.tier == Tier.free
    assert sub.provider_subscription_ref is None


def _pending_row(db, event_id, claimed_at):
    db.add(WebhookEvent(
        event_id=event_id, provider=Provider.stripe, event_type="invoice.payment_succeeded",
        processing_status=ProcessingStatus.pending, payload="{}", retry_count=0, claimed_at=claimed_at,
    ))
    db.commit()


def test_in_flight_delivery_acknowledged_as_duplicate(client: TestClient, db_session: Session):
    _pending_row(db_session, "evt_1", claimed_at=utcnow())

    response = post_stripe(client, stripe_event("evt_1", "invoice.payment_succeeded", stripe_invoice()))

    assert response.status_code == 200
    assert response.json()["duplicate"] is True
    row = _event_row(db_session, "evt_1")
    assert row.processing_status == ProcessingStatus.pending
    assert row.retry_count == 0
    assert db_session.query(PaymentTransaction).count() == 0


def test_pending_event_with_expired_claim_is_reprocessed(client: TestClient, db_session: Session, settings):
    lapsed = utcnow() - timedelta(seconds=settings.WEBHOOK_CLAIM_TIMEOUT_SECONDS + 60)
    _pending_row(db_session, "evt_1", claimed_at=lapsed)

    response = post_stripe(client, stripe_event("evt_1", "invoice.payment_succeeded", stripe_invoice()))

    assert response.json()["status"] == "processed"
    row = _event_row(db_session, "evt_1")
    assert row.retry_count == 1
    assert row.claimed_at is None
    assert db_session.query(PaymentTransaction).count() == 1


def test_concurrent_insert_of_same_event_is_duplicate(client: TestClient, db_session: Session, monkeypatch):
    original_add = db_session.add

    def add_after_competing_commit(obj, *args, **kwargs):
        # the other delivery commits its row between our lookup and our insert
        if isinstance(obj, WebhookEvent):
            db_session.execute(WebhookEvent.__table__.insert().values(
                event_id=obj.event_id, provider=Provider.stripe, event_type=obj.event_type,
                processing_status=ProcessingStatus.pending, retry_count=0,
                received_at=utcnow(), claimed_at=utcnow(),
            ))
            db_session.commit()
        return original_add(obj, *args, **kwargs)

    monkeypatch.setattr(db_session, "add", add_after_competing_commit)
    response = post_stripe(client, stripe_event("evt_1", "invoice.payment_succeeded", stripe_invoice()))

    assert response.status_code == 200
    assert response.json()["duplicate"] is True
    assert response.json()["code"] == "duplicate_event"
    monkeypatch.undo()
    assert db_session.query(PaymentTransaction).count() == 0
    assert db_session.query(WebhookEvent).count() == 1


def test_refund_completes_only_the_matching_request(client: TestClient, db_session: Session):
    sub = _premium(db_session)
    first_tx = PaymentLedger.record(db_session, sub.id, "pi_1", Decimal("4.99"), "usd", TransactionStatus.succeeded)
    second_tx = PaymentLedger.record(db_session, sub.id, "pi_2", Decimal("4.99"), "usd", TransactionStatus.succeeded)
    first = RefundRequest(subscription_id=sub.id, transaction_id=first_tx, amount=Decimal("4.99"),
                          status=RefundStatus.approved)
    second = RefundRequest(subscription_id=sub.id, transaction_id=second_tx, amount=Decimal("4.99"),
                           status=RefundStatus.approved)
    db_session.add_all([first, second])
    db_session.commit()

    charge = {
        "id": "ch_2", "object": "charge", "customer": "cus_123", "payment_intent": "pi_2",
        "amount": 499, "amount_refunded": 200, "refunded": False, "currency": "usd",
        "refunds": {"data": [{"id": "re_2"}]},
    }
    post_stripe(client, stripe_event("evt_r2", "charge.refunded", charge))

    db_session.expire_all()
    assert db_session.get(RefundRequest, second.id).status == RefundStatus.completed
    assert db_session.get(RefundRequest, first.id).status == RefundStatus.approved


def test_refund_matched_by_request_metadata(client: TestClient, db_session: Session):
    sub = _premium(db_session)
    tx_id = PaymentLedger.record(db_session, sub.id, "pi_1", Decimal("4.99"), "usd", TransactionStatus.succeeded)
    request = RefundRequest(subscription_id=sub.id, transaction_id=tx_id, amount=Decimal("4.99"),
                            status=RefundStatus.approved)
    db_session.add(request)
    db_session.commit()

    charge = {
        "id": "ch_1", "object": "charge", "customer": "cus_123",
        "amount": 499, "amount_refunded": 499, "refunded": True, "currency": "usd",
        "refunds": {"data": [{"id": "re_1", "metadata": {"refund_request_id": str(request.id)}}]},
    }
    post_stripe(client, stripe_event("evt_r", "charge.refunded", charge))

    db_session.expire_all()
    completed = db_session.get(RefundRequest, request.id)
    assert completed.status == RefundStatus.completed
    assert completed.provider_refund_ref == "re_1"


def test_event_mapping_is_logged(client: TestClient, db_session: Session, caplog):
    caplog.set_level(logging.DEBUG, logger="renewal_engine.services.providers.stripe_adapter")

    post_stripe(client, stripe_event("evt_1", "invoice.payment_succeeded", stripe_invoice()))
    post_stripe(client, stripe_event("evt_2", "customer.created", {"id": "cus_123", "object": "customer"}))

    assert "Stripe invoice.payment_succeeded mapped to payment_succeeded" in caplog.text
    assert "Stripe event type customer.created has no mapping" in caplog.text
