from sqlalchemy import Column, ForeignKey, Integer, Numeric, String, Text

from .enums import RefundStatus
from .subscription import Base
from .types import UTCDateTime, enum_column_type, utcnow


class RefundRequest(Base):
    """
    Refund requests: user-initiated refunds awaiting the provider's refund event.
    """
    __tablename__ = "refund_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(
        Integer, ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    transaction_id = Column(
        Integer, ForeignKey("payment_transactions.id"), nullable=False, index=True
    )
    amount = Column(Numeric(10, 2), nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(enum_column_type(RefundStatus), nullable=False, default=RefundStatus.pending)
    provider_refund_ref = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime(), default=utcnow, nullable=False)
    processed_at = Column(UTCDateTime(), nullable=True)
