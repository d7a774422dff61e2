"""
Outbound calls to the payment providers.

These run as FastAPI background tasks after the local state change has been
committed, so provider latency never holds a database transaction open.
Failures are logged; the provider's own webhook is what eventually confirms
the change.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

import stripe

from renewal_engine.core.config import get_settings
from renewal_engine.models.enums import BillingCycle, Provider

logger = logging.getLogger(__name__)


def _get_stripe():
    """Return the configured stripe module, or None when Stripe is not configured."""
    settings = get_settings()
    if not settings.STRIPE_SECRET_KEY:
        logger.warning("STRIPE_SECRET_KEY not set, skipping outbound Stripe call")
        return None
    stripe.api_key = settings.STRIPE_SECRET_KEY
    return stripe


class StripeGateway:

    def cancel(self, subscription_ref: str, at_period_end: bool) -> None:
        client = _get_stripe()
        if client is None:
            return
        if at_period_end:
            client.Subscription.modify(subscription_ref, cancel_at_period_end=True)
        else:
            client.Subscription.cancel(subscription_ref)

    def pause(self, subscription_ref: str, resume_after: Optional[datetime]) -> None:
        client = _get_stripe()
        if client is None:
            return
        pause_collection = {"behavior": "void"}
        if resume_after is not None:
            pause_collection["resumes_at"] = int(resume_after.timestamp())
        client.Subscription.modify(subscription_ref, pause_collection=pause_collection)

    def resume(self, subscription_ref: str) -> None:
        client = _get_stripe()
        if client is None:
            return
        client.Subscription.modify(subscription_ref, pause_collection="")

    def switch_billing_cycle(self, subscription_ref: str, new_cycle: BillingCycle) -> None:
        client = _get_stripe()
        if client is None:
            return
        settings = get_settings()
        price_id = (
            settings.STRIPE_PRICE_ANNUAL if new_cycle == BillingCycle.annual else settings.STRIPE_PRICE_MONTHLY
        )
        if not price_id:
            logger.warning("No Stripe price configured for %s billing", new_cycle.value)
            return
        remote = client.Subscription.retrieve(subscription_ref)
        item_id = remote["items"]["data"][0]["id"]
        client.Subscription.modify(
            subscription_ref,
            items=[{"id": item_id, "price": price_id}],
            proration_behavior="create_prorations",
        )

    def refund(self, payment_ref: str, amount: Decimal, refund_request_id: int) -> None:
        client = _get_stripe()
        if client is None:
            return
        client.Refund.create(
            payment_intent=payment_ref,
            amount=int((Decimal(amount) * 100).to_integral_value()),
            metadata={"refund_request_id": str(refund_request_id)},
        )


class AppleGateway:
    """
    The App Store exposes no server-side subscription management: users cancel
    and request refunds through Apple, which then notifies us by webhook.
    """

    def cancel(self, subscription_ref: str, at_period_end: bool) -> None:
        logger.info("Apple subscription %s: cancellation is managed by the App Store", subscription_ref)

    def pause(self, subscription_ref: str, resume_after: Optional[datetime]) -> None:
        logger.info("Apple subscription %s: pause is tracked locally only", subscription_ref)

    def resume(self, subscription_ref: str) -> None:
        logger.info("Apple subscription %s: resume is tracked locally only", subscription_ref)

    def switch_billing_cycle(self, subscription_ref: str, new_cycle: BillingCycle) -> None:
        logger.info("Apple subscription %s: cycle change to %s happens in the App Store",
                    subscription_ref, new_cycle.value)

    def refund(self, payment_ref: str, amount: Decimal, refund_request_id: int) -> None:
        logger.info("Apple transaction %s: refund request %s must be filed with Apple",
                    payment_ref, refund_request_id)


_GATEWAYS = {
    Provider.stripe: StripeGateway,
    Provider.apple: AppleGateway,
}


def get_gateway(provider):
    return _GATEWAYS[Provider(provider)]()


def run_provider_call(provider, operation: str, *args) -> None:
    """Background-task entry point: invoke ``operation`` and log any failure."""
    try:
        getattr(get_gateway(provider), operation)(*args)
        logger.info("%s %s call sent", Provider(provider).value, operation)
    except stripe.StripeError as e:
        logger.error("%s %s call failed: %s", Provider(provider).value, operation, e)
