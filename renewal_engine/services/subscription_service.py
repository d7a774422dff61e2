"""
SubscriptionService — client-initiated billing operations.

Each call applies one state-machine transition, commits, and then queues the
matching provider call as a background task so the HTTP response never waits
on the provider.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import BackgroundTasks
from sqlalchemy.orm import Session

from renewal_engine.core.config import get_settings
from renewal_engine.core.errors import RefundNotAllowed
from renewal_engine.models import RefundRequest, Subscription
from renewal_engine.models.enums import RefundStatus
from renewal_engine.models.types import utcnow
from renewal_engine.services.ledger_service import PaymentLedger
from renewal_engine.services.payment_gateway import run_provider_call
from renewal_engine.services.subscription_state_machine import SubscriptionStateMachine

logger = logging.getLogger(__name__)

_OPEN_REFUND_STATUSES = (RefundStatus.pending, RefundStatus.approved, RefundStatus.completed)


def _schedule(background_tasks: Optional[BackgroundTasks], provider, provider_ref, operation, *args):
    if background_tasks is None or provider is None or not provider_ref:
        return
    background_tasks.add_task(run_provider_call, provider, operation, provider_ref, *args)


class SubscriptionService:

    @staticmethod
    def get_or_provision(db: Session, user_id: str) -> Subscription:
        sm = SubscriptionStateMachine(db)
        sub = sm.get_for_user(user_id)
        if sub is None:
            sub = sm.provision(user_id)
            db.commit()
        return sub

    @staticmethod
    def pause(db: Session, user_id: str, resume_after: Optional[datetime] = None,
              background_tasks: Optional[BackgroundTasks] = None) -> Subscription:
        sub = SubscriptionService.get_or_provision(db, user_id)
        sub = SubscriptionStateMachine(db).pause(sub.id, resume_after=resume_after)
        db.commit()
        _schedule(background_tasks, sub.provider, sub.provider_subscription_ref, "pause", resume_after)
        return sub

    @staticmethod
    def resume(db: Session, user_id: str,
               background_tasks: Optional[BackgroundTasks] = None) -> Subscription:
        sub = SubscriptionService.get_or_provision(db, user_id)
        sub = SubscriptionStateMachine(db).resume(sub.id)
        db.commit()
        _schedule(background_tasks, sub.provider, sub.provider_subscription_ref, "resume")
        return sub

    @staticmethod
    def switch_billing_cycle(db: Session, user_id: str, new_cycle,
                             background_tasks: Optional[BackgroundTasks] = None):
        sub = SubscriptionService.get_or_provision(db, user_id)
        sub, adjustment = SubscriptionStateMachine(db).switch_billing_cycle(sub.id, new_cycle)
        db.commit()
        _schedule(background_tasks, sub.provider, sub.provider_subscription_ref,
                  "switch_billing_cycle", adjustment.new_cycle)
        return sub, adjustment

    @staticmethod
    def cancel(db: Session, user_id: str, at_period_end: bool, reason: Optional[str] = None,
               background_tasks: Optional[BackgroundTasks] = None) -> Subscription:
        sub = SubscriptionService.get_or_provision(db, user_id)
        # An immediate cancel clears the entitlement ref, so capture it first.
        provider, provider_ref = sub.provider, sub.provider_subscription_ref
        sub = SubscriptionStateMachine(db).cancel(sub.id, at_period_end=at_period_end, reason=reason)
        db.commit()
        _schedule(background_tasks, provider, provider_ref, "cancel", at_period_end)
        return sub

    @staticmethod
    def request_refund(db: Session, user_id: str, reason: Optional[str] = None,
                       background_tasks: Optional[BackgroundTasks] = None,
                       now: Optional[datetime] = None) -> RefundRequest:
        """
        Refund the latest successful payment when it falls inside the refund
        window. The request is approved locally; the provider's refund
        webhook completes it and downgrades the subscription.
        """
        settings = get_settings()
        now = now or utcnow()
        sub = SubscriptionService.get_or_provision(db, user_id)

        payment = PaymentLedger.latest_succeeded(db, sub.id)
        if payment is None:
            raise RefundNotAllowed("No payment found to refund")
        window_end = payment.created_at + timedelta(days=settings.REFUND_WINDOW_DAYS)
        if now > window_end:
            raise RefundNotAllowed(
                f"Refunds are only available within {settings.REFUND_WINDOW_DAYS} days of payment"
            )

        existing = db.query(RefundRequest).filter(
            RefundRequest.transaction_id == payment.id,
            RefundRequest.status.in_(_OPEN_REFUND_STATUSES),
        ).first()
        if existing is not None:
            raise RefundNotAllowed(f"A refund for this payment is already {existing.status.value}")

        request = RefundRequest(
            subscription_id=sub.id,
            transaction_id=payment.id,
            amount=payment.amount,
            reason=reason,
            status=RefundStatus.approved,
        )
        db.add(request)
        db.commit()
        db.refresh(request)
        logger.info("Refund request %s approved for user %s (payment %s)",
                    request.id, user_id, payment.provider_payment_ref)

        _schedule(background_tasks, sub.provider, payment.provider_payment_ref,
                  "refund", payment.amount, request.id)
        return request

    @staticmethod
    def billing_history(db: Session, user_id: str, limit: int = 50) -> dict:
        sub = SubscriptionService.get_or_provision(db, user_id)
        refunds = db.query(RefundRequest).filter(
            RefundRequest.subscription_id == sub.id
        ).order_by(RefundRequest.created_at.desc(), RefundRequest.id.desc()).limit(limit).all()
        return {
            "transactions": PaymentLedger.history(db, sub.id, limit=limit),
            "refunds": refunds,
        }
