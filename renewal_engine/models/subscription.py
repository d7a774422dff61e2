"""
SQLAlchemy models base and Subscription model.

This module defines the declarative base for all models and the Subscription
model: the single authoritative paid-tier record per user.

Attributes:
    id: Unique identifier (auto-increment primary key)
    user_id: Owning user; unique, so each user has exactly one row
    tier: free | premium
    billing_cycle: monthly | annual | none
    status: active | trialing | past_due | canceled | incomplete | paused
    provider: stripe | apple (payment platform currently billing this row)
    provider_customer_ref: External customer id (unique when present)
    provider_subscription_ref: External subscription id granting entitlement
        (unique when present, cleared on expiry)
    last_provider_subscription_ref: Audit copy of the last external
        subscription id, retained after expiry
    current_period_start / current_period_end: Paid-through window
    cancel_at_period_end: Cancellation scheduled for the period boundary
    canceled_at / cancel_reason: Set when the lifecycle ends
    past_due_since: Start of the grace window after a failed payment
    pause_resumes_at: Requested automatic resume time while paused
    version: Optimistic concurrency counter; every UPDATE is conditional on it
"""
from sqlalchemy import Boolean, Column, Integer, String, Text
from sqlalchemy.orm import declarative_base

from .enums import BillingCycle, Provider, SubscriptionStatus, Tier
from .types import UTCDateTime, enum_column_type, utcnow

Base = declarative_base()


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, unique=True, index=True)

    tier = Column(enum_column_type(Tier), nullable=False, default=Tier.free)
    billing_cycle = Column(
        enum_column_type(BillingCycle), nullable=False, default=BillingCycle.none
    )
    status = Column(
        enum_column_type(SubscriptionStatus),
        nullable=False,
        default=SubscriptionStatus.active,
    )

    provider = Column(enum_column_type(Provider), nullable=True)
    provider_customer_ref = Column(String(255), nullable=True, unique=True, index=True)
    provider_subscription_ref = Column(String(255), nullable=True, unique=True, index=True)
    last_provider_subscription_ref = Column(String(255), nullable=True, index=True)

    current_period_start = Column(UTCDateTime(), nullable=True)
    current_period_end = Column(UTCDateTime(), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(UTCDateTime(), nullable=True)
    cancel_reason = Column(Text, nullable=True)
    past_due_since = Column(UTCDateTime(), nullable=True)
    pause_resumes_at = Column(UTCDateTime(), nullable=True)

    version = Column(Integer, nullable=False)

    created_at = Column(UTCDateTime(), default=utcnow)
    updated_at = Column(UTCDateTime(), default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return (
            f"<Subscription user={self.user_id} tier={self.tier.value} "
            f"status={self.status.value}>"
        )
