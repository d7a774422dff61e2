from sqlalchemy import Column, Date, ForeignKey, Integer, Numeric, String, Text

from .enums import PaymentHistoryStatus
from .subscription import Base
from .types import UTCDateTime, enum_column_type, utcnow


class PaymentHistoryRecord(Base):
    """
    Payment history: one immutable row per past-due confirmation.
    """
    __tablename__ = "payment_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    recurring_item_id = Column(
        Integer, ForeignKey("recurring_items.id"), nullable=False, index=True
    )
    user_id = Column(String(64), nullable=False, index=True)
    due_date = Column(Date, nullable=False)
    payment_date = Column(Date, nullable=True)
    status = Column(enum_column_type(PaymentHistoryStatus), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(UTCDateTime(), default=utcnow, nullable=False)
