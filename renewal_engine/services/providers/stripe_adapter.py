"""
Stripe webhook adapter.

Verifies the ``Stripe-Signature`` header with the stripe library and maps the
subscription, invoice and charge events the engine cares about onto
BillingEvent. Everything else normalises to ``unhandled`` and is stored as
ignored.
"""
import logging
from typing import Optional

import stripe

from renewal_engine.core.errors import SignatureInvalid
from renewal_engine.models.enums import BillingCycle, Provider
from renewal_engine.schemas.events import BillingEvent, BillingEventType as T
from renewal_engine.services.providers.base import ProviderAdapter, from_epoch, load_json, minor_units

logger = logging.getLogger(__name__)

_INTERVAL_TO_CYCLE = {
    "month": BillingCycle.monthly,
    "year": BillingCycle.annual,
}

_EXPIRED_STATUSES = {"canceled", "unpaid", "incomplete_expired"}


def _first_item(obj: dict) -> dict:
    items = (obj.get("items") or obj.get("lines") or {}).get("data") or []
    return items[0] if items else {}


def _cycle_from(line: dict) -> Optional[BillingCycle]:
    price = line.get("price") or line.get("plan") or {}
    interval = (price.get("recurring") or {}).get("interval") or price.get("interval")
    return _INTERVAL_TO_CYCLE.get(interval)


def _user_id_from(obj: dict) -> Optional[str]:
    metadata = obj.get("metadata") or {}
    return metadata.get("user_id") or metadata.get("supabase_user_id")


def _invoice_subscription_ref(invoice: dict) -> Optional[str]:
    if invoice.get("subscription"):
        return invoice["subscription"]
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


class StripeAdapter(ProviderAdapter):
    provider = Provider.stripe

    def verify(self, raw_payload: bytes, signature: Optional[str]) -> None:
        secret = self.settings.STRIPE_WEBHOOK_SECRET
        if not secret:
            raise SignatureInvalid("Stripe webhook secret is not configured")
        if not signature:
            raise SignatureInvalid("Missing Stripe-Signature header")
        try:
            stripe.WebhookSignature.verify_header(
                raw_payload.decode("utf-8"),
                signature,
                secret,
                tolerance=self.settings.STRIPE_WEBHOOK_TOLERANCE,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            raise SignatureInvalid(f"Stripe signature verification failed: {e}") from e

    def parse(self, raw_payload: bytes, signature: Optional[str]) -> BillingEvent:
        self.verify(raw_payload, signature)
        event = load_json(raw_payload)
        event_type = event.get("type") or ""
        obj = ((event.get("data") or {}).get("object")) or {}

        handler = {
            "customer.subscription.created": self._subscription_created,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
            "invoice.payment_succeeded": self._invoice_paid,
            "invoice.paid": self._invoice_paid,
            "invoice.payment_failed": self._invoice_failed,
            "charge.refunded": self._charge_refunded,
        }.get(event_type)

        if handler is None:
            logger.debug("Stripe event type %s has no mapping", event_type)
            fields = {"type": T.unhandled}
        else:
            fields = handler(obj)
            logger.debug("Stripe %s mapped to %s", event_type, fields["type"].value)
        return self.build_event(event_id=event.get("id") or "", raw_type=event_type, **fields)

    # ------------------------------------------------------------------

    @staticmethod
    def _subscription_fields(obj: dict) -> dict:
        item = _first_item(obj)
        return {
            "subscription_ref": obj.get("id"),
            "customer_ref": obj.get("customer"),
            "user_id": _user_id_from(obj),
            "period_start": from_epoch(obj.get("current_period_start") or item.get("current_period_start")),
            "period_end": from_epoch(obj.get("current_period_end") or item.get("current_period_end")),
            "billing_cycle": _cycle_from(item),
        }

    def _subscription_created(self, obj: dict) -> dict:
        status = obj.get("status")
        if status == "trialing":
            return {"type": T.trial_started, **self._subscription_fields(obj)}
        if status == "active":
            return {"type": T.subscription_activated, **self._subscription_fields(obj)}
        # incomplete subscriptions become active through the first invoice
        return {"type": T.unhandled, **self._subscription_fields(obj)}

    def _subscription_updated(self, obj: dict) -> dict:
        status = obj.get("status")
        fields = self._subscription_fields(obj)
        if status == "past_due":
            return {"type": T.payment_failed, **fields}
        if status in _EXPIRED_STATUSES:
            return {"type": T.subscription_expired, "reason": status, **fields}
        if status in ("active", "trialing"):
            return {
                "type": T.renewal_status_changed,
                "auto_renew": not obj.get("cancel_at_period_end", False),
                **fields,
            }
        return {"type": T.unhandled, **fields}

    def _subscription_deleted(self, obj: dict) -> dict:
        return {"type": T.subscription_expired, "reason": "deleted", **self._subscription_fields(obj)}

    @staticmethod
    def _invoice_fields(invoice: dict) -> dict:
        line = _first_item(invoice)
        period = line.get("period") or {}
        details = invoice.get("subscription_details") or (
            (invoice.get("parent") or {}).get("subscription_details") or {}
        )
        return {
            "subscription_ref": _invoice_subscription_ref(invoice),
            "customer_ref": invoice.get("customer"),
            "user_id": _user_id_from(invoice) or _user_id_from(details),
            "currency": invoice.get("currency"),
            "period_start": from_epoch(period.get("start")),
            "period_end": from_epoch(period.get("end")),
            "billing_cycle": _cycle_from(line),
        }

    def _invoice_paid(self, invoice: dict) -> dict:
        fields = self._invoice_fields(invoice)
        if not fields["subscription_ref"]:
            return {"type": T.unhandled}
        return {
            "type": T.payment_succeeded,
            "payment_ref": invoice.get("payment_intent") or invoice.get("id"),
            "amount": minor_units(invoice.get("amount_paid")),
            **fields,
        }

    def _invoice_failed(self, invoice: dict) -> dict:
        fields = self._invoice_fields(invoice)
        if not fields["subscription_ref"]:
            return {"type": T.unhandled}
        # Retries of the same invoice reuse the payment intent; keep each attempt distinct.
        base_ref = invoice.get("payment_intent") or invoice.get("id")
        return {
            "type": T.payment_failed,
            "payment_ref": f"{base_ref}:failed:{invoice.get('attempt_count') or 1}" if base_ref else None,
            "amount": minor_units(invoice.get("amount_due")),
            **fields,
        }

    def _charge_refunded(self, charge: dict) -> dict:
        refunds = (charge.get("refunds") or {}).get("data") or []
        refund_ref = refunds[0].get("id") if refunds else f"refund:{charge.get('id')}"
        refund_metadata = (refunds[0].get("metadata") or {}) if refunds else {}
        metadata = charge.get("metadata") or {}
        return {
            "refunded_payment_ref": charge.get("payment_intent") or charge.get("id"),
            "refund_request_id": refund_metadata.get("refund_request_id"),
            "type": T.refund_issued,
            "subscription_ref": metadata.get("subscription_id"),
            "customer_ref": charge.get("customer"),
            "user_id": _user_id_from(charge),
            "payment_ref": refund_ref,
            "amount": minor_units(charge.get("amount_refunded")),
            "currency": charge.get("currency"),
            "full_refund": bool(charge.get("refunded")),
        }
