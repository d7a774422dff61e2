"""
Schemas for the client subscription endpoints.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from renewal_engine.models.enums import (
    BillingCycle,
    Provider,
    RefundStatus,
    SubscriptionStatus,
    Tier,
    TransactionStatus,
)


class SubscriptionResponse(BaseModel):
    user_id: str
    tier: Tier
    billing_cycle: BillingCycle
    status: SubscriptionStatus
    provider: Optional[Provider] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool
    canceled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    past_due_since: Optional[datetime] = None
    pause_resumes_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PauseRequest(BaseModel):
    """Body for POST /subscription/pause"""
    resume_after: Optional[datetime] = Field(
        None, description="Automatic resume time (null = paused until resumed)"
    )


class SwitchBillingCycleRequest(BaseModel):
    """Body for POST /subscription/switch-billing-cycle"""
    new_cycle: Literal["monthly", "annual"]


class ProrationResponse(BaseModel):
    old_cycle: BillingCycle
    new_cycle: BillingCycle
    unused_days: Decimal
    total_days: Decimal
    old_period_price: Decimal
    credit: Decimal
    new_cycle_price: Decimal
    net_charge: Decimal
    effective_at: datetime
    subscription: SubscriptionResponse


class CancelRequest(BaseModel):
    """Body for POST /subscription/cancel"""
    at_period_end: bool = True
    reason: Optional[str] = Field(None, max_length=500)

    class Config:
        json_schema_extra = {
            "example": {"at_period_end": True, "reason": "too_expensive"}
        }


class RefundCreate(BaseModel):
    """Body for POST /subscription/refund"""
    reason: Optional[str] = Field(None, max_length=1000)


class RefundResponse(BaseModel):
    id: int
    transaction_id: int
    amount: Decimal
    reason: Optional[str] = None
    status: RefundStatus
    provider_refund_ref: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TransactionResponse(BaseModel):
    id: int
    provider_payment_ref: str
    amount: Decimal
    currency: str
    status: TransactionStatus
    created_at: datetime

    class Config:
        from_attributes = True


class BillingHistoryResponse(BaseModel):
    transactions: List[TransactionResponse]
    refunds: List[RefundResponse]
