"""
PaymentLedger — append-only record of provider-reported payments.

Usage:
    tx_id = PaymentLedger.record(
        db, subscription.id, "pi_123", Decimal("4.99"), "usd", TransactionStatus.succeeded
    )

A second ``record`` with the same ``provider_payment_ref`` returns the id of the
row already stored, so webhook redelivery never produces a second row. The
ledger does not touch Subscription state.
"""
import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from renewal_engine.models import PaymentTransaction
from renewal_engine.models.enums import TransactionStatus

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


class PaymentLedger:

    @staticmethod
    def record(
        db: Session,
        subscription_id: int,
        provider_payment_ref: str,
        amount: Decimal,
        currency: str,
        status: TransactionStatus,
        metadata: Optional[dict] = None,
    ) -> int:
        """Append a transaction, or return the existing id for a known ref."""
        existing = PaymentLedger.find_by_payment_ref(db, provider_payment_ref)
        if existing is not None:
            logger.info(
                "Ledger entry %s already recorded (id=%s), skipping",
                provider_payment_ref, existing.id,
            )
            return existing.id

        tx = PaymentTransaction(
            subscription_id=subscription_id,
            provider_payment_ref=provider_payment_ref,
            amount=Decimal(str(amount)).quantize(_CENT),
            currency=currency.lower(),
            status=TransactionStatus(status),
            metadata_json=metadata or {},
        )
        try:
            with db.begin_nested():
                db.add(tx)
        except IntegrityError:
            # Lost an insert race against a concurrent delivery of the same payment.
            existing = PaymentLedger.find_by_payment_ref(db, provider_payment_ref)
            if existing is None:
                raise
            logger.info("Ledger entry %s inserted concurrently, reusing id=%s",
                        provider_payment_ref, existing.id)
            return existing.id

        logger.info(
            "Ledger entry recorded: ref=%s subscription=%s status=%s amount=%s %s",
            provider_payment_ref, subscription_id, tx.status.value, tx.amount, tx.currency,
        )
        return tx.id

    @staticmethod
    def find_by_payment_ref(db: Session, provider_payment_ref: str) -> Optional[PaymentTransaction]:
        return db.query(PaymentTransaction).filter(
            PaymentTransaction.provider_payment_ref == provider_payment_ref
        ).first()

    @staticmethod
    def latest_succeeded(db: Session, subscription_id: int) -> Optional[PaymentTransaction]:
        return db.query(PaymentTransaction).filter(
            PaymentTransaction.subscription_id == subscription_id,
            PaymentTransaction.status == TransactionStatus.succeeded,
        ).order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc()).first()

    @staticmethod
    def history(db: Session, subscription_id: int, limit: int = 50) -> List[PaymentTransaction]:
        return db.query(PaymentTransaction).filter(
            PaymentTransaction.subscription_id == subscription_id
        ).order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc()).limit(limit).all()
