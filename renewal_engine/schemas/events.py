"""
Provider-neutral billing events produced by the webhook adapters.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from renewal_engine.models.enums import BillingCycle, Provider


class BillingEventType(str, Enum):
    subscription_activated = "subscription_activated"
    subscription_renewed = "subscription_renewed"
    trial_started = "trial_started"
    payment_succeeded = "payment_succeeded"
    payment_failed = "payment_failed"
    renewal_status_changed = "renewal_status_changed"
    subscription_expired = "subscription_expired"
    refund_issued = "refund_issued"
    unhandled = "unhandled"


class BillingEvent(BaseModel):
    """A provider notification reduced to the fields the engine acts on."""
    provider: Provider
    event_id: str = Field(..., min_length=1, description="Provider-assigned event id")
    raw_type: str = Field(..., description="Provider event type, stored for audit")
    type: BillingEventType

    subscription_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    user_id: Optional[str] = Field(None, description="Account id carried in provider metadata")

    payment_ref: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None

    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    billing_cycle: Optional[BillingCycle] = None

    auto_renew: Optional[bool] = None
    full_refund: bool = True
    refunded_payment_ref: Optional[str] = Field(None, description="Ledger ref of the payment a refund applies to")
    refund_request_id: Optional[int] = Field(None, description="Local refund request echoed back in refund metadata")
    reason: Optional[str] = None
