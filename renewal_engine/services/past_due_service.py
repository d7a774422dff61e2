"""
PastDueService — detect overdue recurring items and record how they were settled.

Usage:
    items = PastDueService.find_past_due(db, user_id, today=date(2024, 3, 20))
    result = PastDueService.confirm_payment(db, user_id, item_id, "paid", today=date(2024, 3, 20))

Every confirmation writes exactly one PaymentHistoryRecord and moves the item
forward exactly once, in the same transaction. "Today" is always the caller's
local calendar date.
"""
import logging
from datetime import date
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from renewal_engine.core.errors import Conflict, InvalidTransition, NotFound
from renewal_engine.models import PaymentHistoryRecord, RecurringItem
from renewal_engine.models.enums import ItemStatus, PaymentHistoryStatus, RepeatInterval
from renewal_engine.schemas.recurring import PastDueItem
from renewal_engine.services.interval_calculator import next_renewal

logger = logging.getLogger(__name__)

_CONFIRM_OUTCOMES = {PaymentHistoryStatus.paid, PaymentHistoryStatus.skipped}


class PastDueService:

    @staticmethod
    def find_past_due(db: Session, user_id: str, today: date) -> List[PastDueItem]:
        """Active items whose renewal date is before ``today``, oldest first."""
        rows = db.query(RecurringItem).filter(
            RecurringItem.user_id == user_id,
            RecurringItem.status == ItemStatus.active,
            RecurringItem.renewal_date.isnot(None),
            RecurringItem.renewal_date < today,
        ).order_by(RecurringItem.renewal_date.asc(), RecurringItem.id.asc()).all()

        return [
            PastDueItem(
                id=item.id,
                name=item.name,
                cost=item.cost,
                currency=item.currency,
                repeat_interval=item.repeat_interval,
                renewal_date=item.renewal_date,
                days_past_due=(today - item.renewal_date).days,
                category=item.category,
            )
            for item in rows
        ]

    @staticmethod
    def confirm_payment(
        db: Session,
        user_id: str,
        item_id: int,
        outcome,
        today: date,
        payment_date: Optional[date] = None,
        notes: Optional[str] = None,
        expected_due_date: Optional[date] = None,
    ) -> dict:
        outcome = PaymentHistoryStatus(outcome)
        if outcome not in _CONFIRM_OUTCOMES:
            raise InvalidTransition(f"Outcome must be paid or skipped, got '{outcome.value}'")

        item = db.query(RecurringItem).filter(
            RecurringItem.id == item_id,
            RecurringItem.user_id == user_id,
        ).populate_existing().first()
        if item is None:
            raise NotFound(f"Recurring item {item_id} not found")

        if expected_due_date is not None and item.renewal_date != expected_due_date:
            raise Conflict(
                f"Item {item_id} is no longer due on {expected_due_date.isoformat()}; "
                "it was already confirmed"
            )
        if item.status != ItemStatus.active:
            if expected_due_date is not None and item.status == ItemStatus.canceled:
                raise Conflict(f"Item {item_id} was already dismissed")
            raise InvalidTransition(f"Item {item_id} is {item.status.value}, not active")
        if item.renewal_date is None or item.renewal_date >= today:
            raise InvalidTransition(f"Item {item_id} is not past due")

        due_date = item.renewal_date
        record = PaymentHistoryRecord(
            recurring_item_id=item.id,
            user_id=user_id,
            due_date=due_date,
            payment_date=(payment_date or today) if outcome == PaymentHistoryStatus.paid else payment_date,
            status=outcome,
            amount=item.cost,
            notes=notes,
        )

        dismissed = item.repeat_interval == RepeatInterval.never
        try:
            with db.begin_nested():
                db.add(record)
                if dismissed:
                    # One-time charge: dismissed for good, the date stays as its terminal date.
                    item.status = ItemStatus.canceled
                else:
                    item.renewal_date = next_renewal(due_date, item.repeat_interval)
        except StaleDataError as e:
            raise Conflict(f"Item {item_id} was confirmed concurrently") from e
        db.commit()
        db.refresh(item)
        db.refresh(record)

        logger.info(
            "Item %s %s for %s; %s",
            item.id, outcome.value, due_date.isoformat(),
            "dismissed" if dismissed else f"next renewal {item.renewal_date.isoformat()}",
        )
        return {"record": record, "item": item, "dismissed": dismissed}

    @staticmethod
    def payment_history(db: Session, user_id: str, item_id: int, limit: int = 50) -> List[PaymentHistoryRecord]:
        exists = db.query(RecurringItem.id).filter(
            RecurringItem.id == item_id,
            RecurringItem.user_id == user_id,
        ).first()
        if exists is None:
            raise NotFound(f"Recurring item {item_id} not found")
        return db.query(PaymentHistoryRecord).filter(
            PaymentHistoryRecord.recurring_item_id == item_id,
        ).order_by(PaymentHistoryRecord.due_date.desc(), PaymentHistoryRecord.id.desc()).limit(limit).all()

    @staticmethod
    def payment_stats(db: Session, user_id: str) -> dict:
        rows = db.query(
            PaymentHistoryRecord.status,
            func.count(PaymentHistoryRecord.id),
            func.coalesce(func.sum(PaymentHistoryRecord.amount), 0),
        ).filter(
            PaymentHistoryRecord.user_id == user_id,
        ).group_by(PaymentHistoryRecord.status).all()

        counts = {status: (count, total) for status, count, total in rows}
        paid_count, total_paid = counts.get(PaymentHistoryStatus.paid, (0, 0))
        skipped_count, _ = counts.get(PaymentHistoryStatus.skipped, (0, 0))
        decided = paid_count + skipped_count

        return {
            "total_records": sum(count for count, _ in counts.values()),
            "paid_count": paid_count,
            "skipped_count": skipped_count,
            "total_paid": Decimal(str(total_paid)).quantize(Decimal("0.01")),
            "payment_rate": round(paid_count / decided * 100, 1) if decided else 0.0,
        }
