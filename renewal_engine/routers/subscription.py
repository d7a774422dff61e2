"""
Client endpoints for the caller's own paid-tier subscription.
"""
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.orm import Session

from renewal_engine.core.database import get_db
from renewal_engine.core.limiter import limiter
from renewal_engine.middleware.auth import get_current_user
from renewal_engine.schemas.billing import (
    BillingHistoryResponse,
    CancelRequest,
    PauseRequest,
    ProrationResponse,
    RefundCreate,
    RefundResponse,
    SubscriptionResponse,
    SwitchBillingCycleRequest,
)
from renewal_engine.schemas.recurring import CanAddItemResponse
from renewal_engine.services.recurring_item_service import RecurringItemService
from renewal_engine.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/subscription",
    tags=["Subscription"],
)


@router.get("", response_model=SubscriptionResponse)
@limiter.limit("60/minute")
def get_subscription(
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    """Current subscription; a free/active record is provisioned on first read."""
    return SubscriptionService.get_or_provision(db, user_id)


@router.get("/can-add-item", response_model=CanAddItemResponse)
@limiter.limit("60/minute")
def can_add_item(
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    return RecurringItemService.can_add_item(db, user_id)


@router.post("/pause", response_model=SubscriptionResponse)
@limiter.limit("10/minute")
def pause_subscription(
    request: Request,
    body: PauseRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    return SubscriptionService.pause(db, user_id, body.resume_after, background_tasks)


@router.post("/resume", response_model=SubscriptionResponse)
@limiter.limit("10/minute")
def resume_subscription(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    return SubscriptionService.resume(db, user_id, background_tasks)


@router.post("/switch-billing-cycle", response_model=ProrationResponse)
@limiter.limit("10/minute")
def switch_billing_cycle(
    request: Request,
    body: SwitchBillingCycleRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    """
    Switch between monthly and annual billing.

    The unused part of the current period is credited linearly by time and a
    new period starts immediately.
    """
    sub, adjustment = SubscriptionService.switch_billing_cycle(
        db, user_id, body.new_cycle, background_tasks
    )
    return ProrationResponse(
        old_cycle=adjustment.old_cycle,
        new_cycle=adjustment.new_cycle,
        unused_days=adjustment.unused_days,
        total_days=adjustment.total_days,
        old_period_price=adjustment.old_period_price,
        credit=adjustment.credit,
        new_cycle_price=adjustment.new_cycle_price,
        net_charge=adjustment.net_charge,
        effective_at=adjustment.effective_at,
        subscription=SubscriptionResponse.model_validate(sub),
    )


@router.post("/cancel", response_model=SubscriptionResponse)
@limiter.limit("10/minute")
def cancel_subscription(
    request: Request,
    body: CancelRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    return SubscriptionService.cancel(db, user_id, body.at_period_end, body.reason, background_tasks)


@router.post("/refund", response_model=RefundResponse, status_code=201)
@limiter.limit("5/minute")
def request_refund(
    request: Request,
    body: RefundCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    return SubscriptionService.request_refund(db, user_id, body.reason, background_tasks)


@router.get("/billing-history", response_model=BillingHistoryResponse)
@limiter.limit("30/minute")
def billing_history(
    request: Request,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    return SubscriptionService.billing_history(db, user_id, limit=limit)
