"""
Schemas for recurring items and past-due confirmation endpoints.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field

from renewal_engine.models.enums import ItemStatus, PaymentHistoryStatus, RepeatInterval


class RecurringItemCreate(BaseModel):
    """Body for POST /recurring-items"""
    name: str = Field(..., min_length=1, max_length=255)
    cost: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    currency: str = Field("usd", min_length=3, max_length=3)
    repeat_interval: RepeatInterval = RepeatInterval.monthly
    renewal_date: Optional[date] = None
    category: Optional[str] = Field(None, max_length=100)

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Netflix",
                "cost": "15.49",
                "currency": "usd",
                "repeat_interval": "monthly",
                "renewal_date": "2024-03-15",
                "category": "streaming",
            }
        }


class RecurringItemUpdate(BaseModel):
    """Body for PATCH /recurring-items/{item_id}; omitted fields are left unchanged."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    cost: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    repeat_interval: Optional[RepeatInterval] = None
    renewal_date: Optional[date] = None
    category: Optional[str] = Field(None, max_length=100)
    status: Optional[ItemStatus] = None


class RecurringItemResponse(BaseModel):
    id: int
    name: str
    cost: Decimal
    currency: str
    repeat_interval: RepeatInterval
    renewal_date: Optional[date] = None
    category: Optional[str] = None
    status: ItemStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RecurringSummary(BaseModel):
    active_count: int
    monthly_total: Decimal
    yearly_total: Decimal
    currency: str


class CanAddItemResponse(BaseModel):
    allowed: bool
    current_count: int
    limit: Optional[int] = Field(None, description="null = unlimited")
    tier: str


class PastDueItem(BaseModel):
    id: int
    name: str
    cost: Decimal
    currency: str
    repeat_interval: RepeatInterval
    renewal_date: date
    days_past_due: int
    category: Optional[str] = None


class ConfirmPaymentRequest(BaseModel):
    """Body for POST /recurring-items/{item_id}/confirm-payment"""
    outcome: Literal["paid", "skipped"]
    payment_date: Optional[date] = None
    notes: Optional[str] = Field(None, max_length=1000)
    expected_due_date: Optional[date] = Field(
        None, description="Due date the client saw; a mismatch means it was already confirmed"
    )


class PaymentHistoryEntry(BaseModel):
    id: int
    recurring_item_id: int
    due_date: date
    payment_date: Optional[date] = None
    status: PaymentHistoryStatus
    amount: Decimal
    notes: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ConfirmPaymentResponse(BaseModel):
    record: PaymentHistoryEntry
    item: RecurringItemResponse
    dismissed: bool


class PaymentStatsResponse(BaseModel):
    total_records: int
    paid_count: int
    skipped_count: int
    total_paid: Decimal
    payment_rate: float
