"""
App Store Server Notifications V2 adapter.

The request body is ``{"signedPayload": "<JWS>"}``; the decoded payload holds
``data.signedTransactionInfo`` and ``data.signedRenewalInfo``, each a JWS of
its own. All three are verified with python-jose against ``APPLE_JWS_KEY``.
"""
import logging
from decimal import Decimal
from typing import Optional

from jose import jws
from jose.exceptions import JWSError

from renewal_engine.core.errors import MalformedPayload, SignatureInvalid
from renewal_engine.models.enums import BillingCycle, Provider
from renewal_engine.schemas.events import BillingEvent, BillingEventType as T
from renewal_engine.services.providers.base import ProviderAdapter, from_epoch, load_json

logger = logging.getLogger(__name__)

_FULL_REFUND_TYPES = {"REFUND", "REVOKED"}


class AppleAdapter(ProviderAdapter):
    provider = Provider.apple

    def _verify_jws(self, token: str) -> dict:
        key = self.settings.APPLE_JWS_KEY
        if not key:
            raise SignatureInvalid("Apple JWS key is not configured")
        try:
            payload = jws.verify(token, key, algorithms=self.settings.APPLE_JWS_ALGORITHMS)
        except JWSError as e:
            raise SignatureInvalid(f"Apple JWS verification failed: {e}") from e
        return load_json(payload)

    def parse(self, raw_payload: bytes, signature: Optional[str] = None) -> BillingEvent:
        body = load_json(raw_payload)
        signed_payload = body.get("signedPayload")
        if not isinstance(signed_payload, str) or not signed_payload:
            raise MalformedPayload("Missing signedPayload")

        notification = self._verify_jws(signed_payload)
        data = notification.get("data") or {}
        transaction = self._verify_jws(data["signedTransactionInfo"]) if data.get("signedTransactionInfo") else {}
        renewal = self._verify_jws(data["signedRenewalInfo"]) if data.get("signedRenewalInfo") else {}

        notification_type = notification.get("notificationType") or ""
        subtype = notification.get("subtype")
        raw_type = f"{notification_type}:{subtype}" if subtype else notification_type

        fields = self._transaction_fields(transaction)
        fields.update(self._classify(notification_type, subtype, transaction, renewal))
        logger.debug("App Store %s mapped to %s", raw_type, fields["type"].value)
        return self.build_event(
            event_id=notification.get("notificationUUID") or "",
            raw_type=raw_type,
            **fields,
        )

    def _transaction_fields(self, transaction: dict) -> dict:
        product_id = transaction.get("productId") or ""
        cycle = None
        if product_id:
            marker = self.settings.APPLE_YEARLY_PRODUCT_MARKER.lower()
            cycle = BillingCycle.annual if marker in product_id.lower() else BillingCycle.monthly
        return {
            "subscription_ref": transaction.get("originalTransactionId"),
            "user_id": transaction.get("appAccountToken"),
            "period_start": from_epoch(transaction.get("purchaseDate"), millis=True),
            "period_end": from_epoch(transaction.get("expiresDate"), millis=True),
            "billing_cycle": cycle,
            "currency": (transaction.get("currency") or self.settings.DEFAULT_CURRENCY).lower(),
            "amount": self._price(transaction, cycle),
        }

    def _price(self, transaction: dict, cycle: Optional[BillingCycle]) -> Optional[Decimal]:
        # App Store prices are reported in milliunits of the storefront currency.
        if transaction.get("price") is not None:
            return (Decimal(int(transaction["price"])) / Decimal(1000)).quantize(Decimal("0.01"))
        if cycle == BillingCycle.annual:
            return self.settings.PREMIUM_ANNUAL_PRICE
        if cycle == BillingCycle.monthly:
            return self.settings.PREMIUM_MONTHLY_PRICE
        return None

    @staticmethod
    def _classify(notification_type: str, subtype: Optional[str], transaction: dict, renewal: dict) -> dict:
        transaction_id = transaction.get("transactionId")

        if notification_type in ("SUBSCRIBED", "DID_RENEW"):
            if transaction.get("offerDiscountType") == "FREE_TRIAL":
                return {"type": T.trial_started}
            return {"type": T.payment_succeeded, "payment_ref": transaction_id}

        if notification_type == "DID_FAIL_TO_RENEW":
            return {"type": T.payment_failed, "amount": None}

        if notification_type == "DID_CHANGE_RENEWAL_STATUS":
            if subtype == "AUTO_RENEW_DISABLED":
                auto_renew = False
            elif subtype == "AUTO_RENEW_ENABLED":
                auto_renew = True
            else:
                auto_renew = renewal.get("autoRenewStatus") == 1
            return {"type": T.renewal_status_changed, "auto_renew": auto_renew}

        if notification_type in ("EXPIRED", "GRACE_PERIOD_EXPIRED"):
            return {"type": T.subscription_expired, "reason": (subtype or notification_type).lower()}

        if notification_type in _FULL_REFUND_TYPES:
            return {
                "type": T.refund_issued,
                "payment_ref": f"{transaction_id}:refund" if transaction_id else None,
                "refunded_payment_ref": transaction_id,
                "full_refund": True,
                "reason": notification_type.lower(),
            }

        return {"type": T.unhandled}
