from sqlalchemy import Column, Index, Integer, String, Text

from .enums import ProcessingStatus, Provider
from .subscription import Base
from .types import UTCDateTime, enum_column_type, utcnow


class WebhookEvent(Base):
    """
    Webhook events: audit and idempotency record, one row per provider event.

    The unique ``event_id`` is the only deduplication guarantee: an event is
    fully processed at most once however many times it is delivered.
    """
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), nullable=False, unique=True)
    provider = Column(enum_column_type(Provider), nullable=False)
    event_type = Column(String(100), nullable=False)
    processing_status = Column(
        enum_column_type(ProcessingStatus),
        nullable=False,
        default=ProcessingStatus.pending,
    )
    payload = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    received_at = Column(UTCDateTime(), default=utcnow, nullable=False)
    # Set while a delivery owns the row; a pending row with a fresh claim is in flight.
    claimed_at = Column(UTCDateTime(), nullable=True)
    processed_at = Column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("idx_webhook_events_status_received", "processing_status", "received_at"),
    )
