from sqlalchemy import Column, Date, Index, Integer, Numeric, String

from .enums import ItemStatus, RepeatInterval
from .subscription import Base
from .types import UTCDateTime, enum_column_type, utcnow


class RecurringItem(Base):
    """
    Recurring items: billing obligations a user tracks (streaming, rent, ...).

    Independent from the user's own paid-tier Subscription. ``renewal_date`` is
    a calendar date in the user's local time.
    """
    __tablename__ = "recurring_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    category = Column(String(100), nullable=True)
    cost = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    repeat_interval = Column(
        enum_column_type(RepeatInterval),
        nullable=False,
        default=RepeatInterval.monthly,
    )
    renewal_date = Column(Date, nullable=True)
    status = Column(enum_column_type(ItemStatus), nullable=False, default=ItemStatus.active)

    version = Column(Integer, nullable=False)
    created_at = Column(UTCDateTime(), default=utcnow)
    updated_at = Column(UTCDateTime(), default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_recurring_items_user_status_renewal", "user_id", "status", "renewal_date"),
    )
