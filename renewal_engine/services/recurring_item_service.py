"""
RecurringItemService — CRUD for tracked recurring items and the free-tier cap.
"""
import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from renewal_engine.core.config import get_settings
from renewal_engine.core.errors import Conflict, LimitExceeded, NotFound
from renewal_engine.models import RecurringItem, Subscription
from renewal_engine.models.enums import ItemStatus, Tier
from renewal_engine.services.interval_calculator import monthly_cost, yearly_cost

logger = logging.getLogger(__name__)


class RecurringItemService:

    @staticmethod
    def _tier_for(db: Session, user_id: str) -> Tier:
        tier = db.query(Subscription.tier).filter(Subscription.user_id == user_id).scalar()
        return tier or Tier.free

    @staticmethod
    def can_add_item(db: Session, user_id: str) -> dict:
        """Free tier is capped at FREE_TIER_ITEM_LIMIT non-canceled items; premium is unlimited."""
        settings = get_settings()
        tier = RecurringItemService._tier_for(db, user_id)
        current = db.query(RecurringItem).filter(
            RecurringItem.user_id == user_id,
            RecurringItem.status != ItemStatus.canceled,
        ).count()
        limit = None if tier == Tier.premium else settings.FREE_TIER_ITEM_LIMIT
        return {
            "allowed": limit is None or current < limit,
            "current_count": current,
            "limit": limit,
            "tier": tier.value,
        }

    @staticmethod
    def list_items(db: Session, user_id: str, include_canceled: bool = False) -> List[RecurringItem]:
        q = db.query(RecurringItem).filter(RecurringItem.user_id == user_id)
        if not include_canceled:
            q = q.filter(RecurringItem.status != ItemStatus.canceled)
        return q.order_by(RecurringItem.renewal_date.asc(), RecurringItem.id.asc()).all()

    @staticmethod
    def get_item(db: Session, user_id: str, item_id: int) -> RecurringItem:
        item = db.query(RecurringItem).filter(
            RecurringItem.id == item_id,
            RecurringItem.user_id == user_id,
        ).first()
        if item is None:
            raise NotFound(f"Recurring item {item_id} not found")
        return item

    @staticmethod
    def create_item(db: Session, user_id: str, data: dict) -> RecurringItem:
        check = RecurringItemService.can_add_item(db, user_id)
        if not check["allowed"]:
            raise LimitExceeded(
                f"Free tier allows {check['limit']} recurring items; upgrade to add more"
            )
        item = RecurringItem(
            user_id=user_id,
            name=data["name"],
            cost=data["cost"],
            currency=(data.get("currency") or "usd").lower(),
            repeat_interval=data["repeat_interval"],
            renewal_date=data.get("renewal_date"),
            category=data.get("category"),
            status=ItemStatus.active,
        )
        db.add(item)
        db.commit()
        db.refresh(item)
        logger.info("Recurring item %s created for user %s", item.id, user_id)
        return item

    @staticmethod
    def update_item(db: Session, user_id: str, item_id: int, changes: dict) -> RecurringItem:
        item = RecurringItemService.get_item(db, user_id, item_id)
        reactivating = (
            changes.get("status") not in (None, ItemStatus.canceled)
            and item.status == ItemStatus.canceled
        )
        if reactivating and not RecurringItemService.can_add_item(db, user_id)["allowed"]:
            raise LimitExceeded("Free tier item limit reached; cannot reactivate this item")

        for key, value in changes.items():
            if key == "currency" and value:
                value = value.lower()
            setattr(item, key, value)
        try:
            db.commit()
        except StaleDataError as e:
            db.rollback()
            raise Conflict(f"Recurring item {item_id} was modified concurrently") from e
        db.refresh(item)
        return item

    @staticmethod
    def summary(db: Session, user_id: str, currency: Optional[str] = None) -> dict:
        settings = get_settings()
        items = db.query(RecurringItem).filter(
            RecurringItem.user_id == user_id,
            RecurringItem.status == ItemStatus.active,
        ).all()
        monthly = sum((monthly_cost(i.cost, i.repeat_interval) for i in items), Decimal("0.00"))
        yearly = sum((yearly_cost(i.cost, i.repeat_interval) for i in items), Decimal("0.00"))
        return {
            "active_count": len(items),
            "monthly_total": monthly,
            "yearly_total": yearly,
            "currency": currency or settings.DEFAULT_CURRENCY,
        }
