"""
Webhook ingestion — signature check, idempotency guard and dispatch.

Flow for one delivery:
    1. the provider adapter verifies the signature and normalises the payload
    2. the WebhookEvent row for the event id is claimed (inserted as pending,
       or re-claimed from failed or from pending once its claim lapsed);
       processed, ignored and in-flight events are acknowledged as duplicates
    3. the normalised event is dispatched to the ledger and state machine in
       one transaction
    4. the row is finalised as processed, ignored or failed

The HTTP status returned tells the provider whether to redeliver: only a
transient store failure (503) asks for a retry.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from renewal_engine.core.config import get_settings
from renewal_engine.core.errors import (
    WEBHOOK_BUSINESS_ERRORS,
    DuplicateEvent,
    MalformedPayload,
    SignatureInvalid,
    TransientStoreError,
)
from renewal_engine.models import RefundRequest, WebhookEvent
from renewal_engine.models.enums import ProcessingStatus, RefundStatus, Tier, TransactionStatus
from renewal_engine.models.types import utcnow
from renewal_engine.schemas.events import BillingEvent, BillingEventType as T
from renewal_engine.services.ledger_service import PaymentLedger
from renewal_engine.services.providers import get_adapter
from renewal_engine.services.subscription_state_machine import SubscriptionStateMachine

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 2000


@dataclass
class IngestResult:
    status_code: int
    body: Dict = field(default_factory=dict)


class WebhookIngestionService:

    def __init__(self, db: Session, settings=None, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.state_machine = SubscriptionStateMachine(db, self.settings, clock)
        self._handlers = {
            T.subscription_activated: self._on_activated,
            T.subscription_renewed: self._on_activated,
            T.trial_started: self._on_trial_started,
            T.payment_succeeded: self._on_payment_succeeded,
            T.payment_failed: self._on_payment_failed,
            T.renewal_status_changed: self._on_renewal_status_changed,
            T.subscription_expired: self._on_expired,
            T.refund_issued: self._on_refund_issued,
        }

    def ingest(self, provider, raw_payload: bytes, signature: Optional[str] = None) -> IngestResult:
        adapter = get_adapter(provider, self.settings)
        try:
            event = adapter.parse(raw_payload, signature)
        except SignatureInvalid as e:
            logger.warning("Rejected %s webhook: %s", provider, e.message)
            return IngestResult(e.status_code, {"received": False, "code": e.code, "detail": e.message})
        except MalformedPayload as e:
            logger.warning("Malformed %s webhook: %s", provider, e.message)
            return IngestResult(e.status_code, {"received": False, "code": e.code, "detail": e.message})

        logger.info("%s webhook received: %s (%s)", event.provider.value, event.raw_type, event.event_id)

        try:
            row = self._claim(event, raw_payload)
        except DuplicateEvent as e:
            logger.info("Duplicate %s event %s acknowledged: %s", event.provider.value, event.event_id, e.message)
            return IngestResult(e.status_code, {
                "received": True, "duplicate": True, "event_id": event.event_id, "code": e.code,
            })
        except SQLAlchemyError as e:
            self.db.rollback()
            return self._transient(event, e)

        try:
            outcome = self._dispatch(event)
            row.processing_status = outcome
            row.error = None
            row.processed_at = self.clock()
            row.claimed_at = None
            self.db.commit()
        except WEBHOOK_BUSINESS_ERRORS as e:
            self.db.rollback()
            logger.warning(
                "%s event %s (%s) failed: %s",
                event.provider.value, event.event_id, event.raw_type, e.message,
            )
            try:
                self._mark_failed(event.event_id, e.message)
            except SQLAlchemyError as store_error:
                self.db.rollback()
                self._release(event.event_id)
                return self._transient(event, store_error)
            return IngestResult(200, {
                "received": True, "event_id": event.event_id,
                "status": ProcessingStatus.failed.value, "error": e.message,
            })
        except SQLAlchemyError as e:
            self.db.rollback()
            self._release(event.event_id)
            return self._transient(event, e)
        except Exception:
            self.db.rollback()
            self._release(event.event_id)
            logger.exception("Unexpected error processing %s event %s", event.provider.value, event.event_id)
            raise

        logger.info("%s event %s %s", event.provider.value, event.event_id, outcome.value)
        return IngestResult(200, {"received": True, "event_id": event.event_id, "status": outcome.value})

    # ------------------------------------------------------------------
    # Idempotency guard
    # ------------------------------------------------------------------

    def _claim(self, event: BillingEvent, raw_payload: bytes) -> WebhookEvent:
        """Return the row this delivery now owns; raise DuplicateEvent otherwise."""
        existing = self.db.query(WebhookEvent).filter(WebhookEvent.event_id == event.event_id).first()

        if existing is None:
            row = WebhookEvent(
                event_id=event.event_id,
                provider=event.provider,
                event_type=event.raw_type[:100],
                processing_status=ProcessingStatus.pending,
                payload=raw_payload.decode("utf-8", errors="replace"),
                retry_count=0,
                claimed_at=self.clock(),
            )
            self.db.add(row)
            try:
                self.db.commit()
            except IntegrityError:
                # A concurrent delivery inserted the same event id first.
                self.db.rollback()
                raise DuplicateEvent("claimed by a concurrent delivery")
            return row

        if existing.processing_status in (ProcessingStatus.processed, ProcessingStatus.ignored):
            raise DuplicateEvent(f"already {existing.processing_status.value}")

        now = self.clock()
        if existing.processing_status == ProcessingStatus.pending and self._claim_is_live(existing, now):
            raise DuplicateEvent("still being processed by another delivery")

        # failed, or pending with a released or expired claim: re-claim once per delivery
        claimed = self.db.query(WebhookEvent).filter(
            WebhookEvent.id == existing.id,
            WebhookEvent.retry_count == existing.retry_count,
        ).update(
            {
                WebhookEvent.retry_count: existing.retry_count + 1,
                WebhookEvent.processing_status: ProcessingStatus.pending,
                WebhookEvent.claimed_at: now,
            },
            synchronize_session=False,
        )
        self.db.commit()
        if not claimed:
            raise DuplicateEvent("claimed by a concurrent delivery")
        self.db.refresh(existing)
        logger.info(
            "Re-processing %s event %s (attempt %s)",
            event.provider.value, event.event_id, existing.retry_count + 1,
        )
        return existing

    def _claim_is_live(self, row: WebhookEvent, now: datetime) -> bool:
        if row.claimed_at is None:
            return False
        return (now - row.claimed_at).total_seconds() < self.settings.WEBHOOK_CLAIM_TIMEOUT_SECONDS

    def _release(self, event_id: str) -> None:
        """Drop the claim after a store failure so the provider's redelivery can retry at once."""
        try:
            self.db.query(WebhookEvent).filter(
                WebhookEvent.event_id == event_id,
                WebhookEvent.processing_status == ProcessingStatus.pending,
            ).update({WebhookEvent.claimed_at: None}, synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("Could not release claim on event %s, retry waits for the lease: %s", event_id, e)

    def _mark_failed(self, event_id: str, message: str) -> None:
        row = self.db.query(WebhookEvent).filter(WebhookEvent.event_id == event_id).one()
        row.processing_status = ProcessingStatus.failed
        row.error = (message or "")[:_MAX_ERROR_LENGTH]
        row.processed_at = self.clock()
        row.claimed_at = None
        self.db.commit()

    @staticmethod
    def _transient(event: BillingEvent, error: Exception) -> IngestResult:
        logger.error("Store failure while processing %s event %s: %s",
                     event.provider.value, event.event_id, error)
        e = TransientStoreError("Temporary storage failure, please retry")
        return IngestResult(e.status_code, {"received": False, "code": e.code, "detail": e.message})

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, event: BillingEvent) -> ProcessingStatus:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.debug("Unhandled %s event type %s", event.provider.value, event.raw_type)
            return ProcessingStatus.ignored
        handler(event)
        return ProcessingStatus.processed

    def _resolve(self, event: BillingEvent, provision: bool = False):
        return self.state_machine.resolve(
            event.subscription_ref,
            user_id=event.user_id,
            customer_ref=event.customer_ref,
            provision=provision,
        )

    def _record(self, subscription_id: int, event: BillingEvent, status: TransactionStatus) -> None:
        if not event.payment_ref:
            return
        PaymentLedger.record(
            self.db,
            subscription_id,
            event.payment_ref,
            event.amount if event.amount is not None else 0,
            event.currency or self.settings.DEFAULT_CURRENCY,
            status,
            metadata={
                "event_id": event.event_id,
                "event_type": event.raw_type,
                "subscription_ref": event.subscription_ref,
            },
        )

    def _activate(self, subscription_id: int, event: BillingEvent) -> None:
        self.state_machine.activate_or_renew(
            subscription_id,
            event.period_start,
            event.period_end,
            tier=Tier.premium,
            billing_cycle=event.billing_cycle,
            provider=event.provider,
            subscription_ref=event.subscription_ref,
            customer_ref=event.customer_ref,
        )

    def _on_activated(self, event: BillingEvent) -> None:
        sub = self._resolve(event, provision=True)
        self._activate(sub.id, event)

    def _on_trial_started(self, event: BillingEvent) -> None:
        sub = self._resolve(event, provision=True)
        self.state_machine.start_trial(
            sub.id,
            event.period_start,
            event.period_end,
            billing_cycle=event.billing_cycle,
            provider=event.provider,
            subscription_ref=event.subscription_ref,
            customer_ref=event.customer_ref,
        )

    def _on_payment_succeeded(self, event: BillingEvent) -> None:
        sub = self._resolve(event, provision=True)
        self._record(sub.id, event, TransactionStatus.succeeded)
        self._activate(sub.id, event)

    def _on_payment_failed(self, event: BillingEvent) -> None:
        sub = self._resolve(event)
        self._record(sub.id, event, TransactionStatus.failed)
        self.state_machine.mark_past_due(sub.id)

    def _on_renewal_status_changed(self, event: BillingEvent) -> None:
        sub = self._resolve(event)
        if event.auto_renew:
            self.state_machine.clear_scheduled_cancel(sub.id)
        else:
            self.state_machine.cancel(sub.id, at_period_end=True, reason="auto_renew_disabled")

    def _on_expired(self, event: BillingEvent) -> None:
        sub = self._resolve(event)
        self.state_machine.expire(sub.id, provider_confirmed=True, reason=event.reason or "expired")

    def _on_refund_issued(self, event: BillingEvent) -> None:
        sub = self._resolve(event)
        self._record(sub.id, event, TransactionStatus.refunded)
        if event.full_refund:
            self.state_machine.expire(sub.id, provider_confirmed=True, reason="refunded")
        else:
            self.state_machine.downgrade(sub.id, reason="partial_refund")

        for request in self._matching_refund_requests(sub.id, event):
            request.status = RefundStatus.completed
            request.provider_refund_ref = event.payment_ref
            request.processed_at = self.clock()
            logger.info("Refund request %s completed by %s", request.id, event.payment_ref)

    def _matching_refund_requests(self, subscription_id: int, event: BillingEvent):
        """Approved requests this refund settles: the one named in its metadata, else those for the refunded payment."""
        q = self.db.query(RefundRequest).filter(
            RefundRequest.subscription_id == subscription_id,
            RefundRequest.status == RefundStatus.approved,
        )
        if event.refund_request_id is not None:
            return q.filter(RefundRequest.id == event.refund_request_id).all()
        if not event.refunded_payment_ref:
            return []
        payment = PaymentLedger.find_by_payment_ref(self.db, event.refunded_payment_ref)
        if payment is None or payment.subscription_id != subscription_id:
            logger.info("Refund %s matches no recorded payment", event.payment_ref)
            return []
        return q.filter(RefundRequest.transaction_id == payment.id).all()
