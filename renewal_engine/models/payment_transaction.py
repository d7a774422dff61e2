from sqlalchemy import JSON, Column, ForeignKey, Index, Integer, Numeric, String, event
from sqlalchemy.orm import relationship

from .enums import TransactionStatus
from .subscription import Base
from .types import UTCDateTime, enum_column_type, utcnow


class PaymentTransaction(Base):
    """
    Payment transactions: append-only ledger of provider-reported money movements.

    Rows are never updated. A refund or correction is a new row pointing at the
    same subscription.
    """
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(
        Integer, ForeignKey("subscriptions.id"), nullable=False, index=True
    )

    # Ledger idempotency key (payment intent, App Store transaction id, refund id)
    provider_payment_ref = Column(String(255), nullable=False, unique=True)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(enum_column_type(TransactionStatus), nullable=False)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(UTCDateTime(), default=utcnow, nullable=False)

    subscription = relationship("Subscription")

    __table_args__ = (
        Index("idx_payment_tx_subscription_created", "subscription_id", "created_at"),
    )


@event.listens_for(PaymentTransaction, "before_update")
def _reject_ledger_update(mapper, connection, target):
    raise ValueError(
        f"payment_transactions is append-only (ref={target.provider_payment_ref})"
    )
