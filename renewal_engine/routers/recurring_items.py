"""
Client endpoints for tracked recurring items and past-due confirmation.

Dates are calendar dates in the caller's local time: pass ``today`` directly
or an IANA ``tz`` name and the server derives it.
"""
import logging
from datetime import date, datetime
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from renewal_engine.core.database import get_db
from renewal_engine.core.limiter import limiter
from renewal_engine.middleware.auth import get_current_user
from renewal_engine.schemas.recurring import (
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    PastDueItem,
    PaymentHistoryEntry,
    PaymentStatsResponse,
    RecurringItemCreate,
    RecurringItemResponse,
    RecurringItemUpdate,
    RecurringSummary,
)
from renewal_engine.services.past_due_service import PastDueService
from renewal_engine.services.recurring_item_service import RecurringItemService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/recurring-items",
    tags=["Recurring Items"],
)


def local_today(
    today: Optional[date] = Query(None, description="Caller's local date (YYYY-MM-DD)"),
    tz: Optional[str] = Query(None, description="IANA time zone, e.g. America/New_York"),
) -> date:
    if today is not None:
        return today
    if tz:
        try:
            return datetime.now(ZoneInfo(tz)).date()
        except (ZoneInfoNotFoundError, ValueError):
            raise HTTPException(status_code=400, detail=f"Unknown time zone: {tz}")
    return date.today()


@router.get("", response_model=List[RecurringItemResponse])
@limiter.limit("60/minute")
def list_items(
    request: Request,
    include_canceled: bool = False,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    return RecurringItemService.list_items(db, user_id, include_canceled=include_canceled)


@router.post("", response_model=RecurringItemResponse, status_code=201)
@limiter.limit("30/minute")
def create_item(
    request: Request,
    body: RecurringItemCreate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    return RecurringItemService.create_item(db, user_id, body.model_dump())


@router.get("/summary", response_model=RecurringSummary)
@limiter.limit("60/minute")
def items_summary(
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    return RecurringItemService.summary(db, user_id)


@router.get("/past-due", response_model=List[PastDueItem])
@limiter.limit("60/minute")
def past_due_items(
    request: Request,
    today: date = Depends(local_today),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    return PastDueService.find_past_due(db, user_id, today)


@router.get("/payment-stats", response_model=PaymentStatsResponse)
@limiter.limit("30/minute")
def payment_stats(
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    return PastDueService.payment_stats(db, user_id)


@router.patch("/{item_id}", response_model=RecurringItemResponse)
@limiter.limit("30/minute")
def update_item(
    request: Request,
    item_id: int,
    body: RecurringItemUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    return RecurringItemService.update_item(db, user_id, item_id, body.model_dump(exclude_unset=True))


@router.post("/{item_id}/confirm-payment", response_model=ConfirmPaymentResponse)
@limiter.limit("30/minute")
def confirm_payment(
    request: Request,
    item_id: int,
    body: ConfirmPaymentRequest,
    today: date = Depends(local_today),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    """
    Record how a past-due renewal was settled (paid or skipped) and move the
    item to its next renewal date. One-time items are dismissed instead.
    """
    return PastDueService.confirm_payment(
        db,
        user_id,
        item_id,
        body.outcome,
        today=today,
        payment_date=body.payment_date,
        notes=body.notes,
        expected_due_date=body.expected_due_date,
    )


@router.get("/{item_id}/payment-history", response_model=List[PaymentHistoryEntry])
@limiter.limit("30/minute")
def payment_history(
    request: Request,
    item_id: int,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    return PastDueService.payment_history(db, user_id, item_id, limit=limit)
