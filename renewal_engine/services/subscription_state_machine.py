"""
SubscriptionStateMachine — the only writer of Subscription rows.

Every operation is looked up in ``TRANSITIONS`` (operation -> allowed source
statuses -> target status) before the row is touched. Mutations are flushed
inside a SAVEPOINT and the UPDATE is conditional on the row's ``version``
column, so a concurrent writer makes the flush fail with StaleDataError; the
row is then re-read and the transition re-checked, up to
``STATE_MACHINE_MAX_RETRIES`` times.

Usage:
    sm = SubscriptionStateMachine(db)
    sub = sm.resolve("sub_123")
    sm.mark_past_due(sub.id)
    db.commit()

The state machine never commits: callers own the transaction.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, FrozenSet, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from renewal_engine.core.config import get_settings
from renewal_engine.core.errors import Conflict, InvalidTransition, NotFound
from renewal_engine.models import Subscription
from renewal_engine.models.enums import (
    ENTITLED_STATUSES,
    BillingCycle,
    Provider,
    SubscriptionStatus as S,
    Tier,
)
from renewal_engine.models.types import utcnow
from renewal_engine.services.interval_calculator import billing_period_end

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")
_SECONDS_PER_DAY = Decimal(86400)


@dataclass(frozen=True)
class Transition:
    sources: FrozenSet[S]
    target: Optional[S]  # None keeps the current status


TRANSITIONS: Dict[str, Transition] = {
    "activate_or_renew": Transition(
        frozenset({S.incomplete, S.trialing, S.active, S.past_due, S.canceled}), S.active
    ),
    "start_trial": Transition(frozenset({S.incomplete, S.canceled, S.active}), S.trialing),
    "mark_past_due": Transition(frozenset({S.active}), S.past_due),
    "expire": Transition(frozenset({S.past_due, S.active, S.trialing, S.paused}), S.canceled),
    "cancel": Transition(frozenset({S.active, S.past_due, S.trialing}), S.canceled),
    "schedule_cancel": Transition(frozenset({S.active, S.trialing}), None),
    "clear_scheduled_cancel": Transition(frozenset({S.active, S.trialing}), None),
    "pause": Transition(frozenset({S.active}), S.paused),
    "resume": Transition(frozenset({S.paused}), S.active),
    "switch_billing_cycle": Transition(frozenset({S.active}), S.active),
    "downgrade": Transition(frozenset({S.active, S.past_due, S.trialing, S.paused}), S.active),
}


@dataclass(frozen=True)
class ProrationAdjustment:
    """Result of a billing-cycle switch. ``credit`` is positive toward the new cycle."""
    old_cycle: BillingCycle
    new_cycle: BillingCycle
    unused_days: Decimal
    total_days: Decimal
    old_period_price: Decimal
    credit: Decimal
    new_cycle_price: Decimal
    net_charge: Decimal
    effective_at: datetime


def compute_proration(
    period_start: datetime,
    period_end: datetime,
    now: datetime,
    old_period_price: Decimal,
) -> Tuple[Decimal, Decimal, Decimal]:
    """
    Linear time-based credit for the unused part of a period.

    Returns (credit, unused_days, total_days). The credit is 0 at or after the
    period boundary and approaches ``old_period_price`` as ``now`` approaches
    ``period_start``.
    """
    total = period_end - period_start
    if total <= timedelta(0):
        return Decimal("0.00"), Decimal("0.00"), Decimal("0.00")
    unused = min(max(period_end - now, timedelta(0)), total)

    total_seconds = Decimal(str(total.total_seconds()))
    unused_seconds = Decimal(str(unused.total_seconds()))
    credit = (unused_seconds / total_seconds * Decimal(old_period_price)).quantize(
        _CENT, rounding=ROUND_HALF_UP
    )
    return (
        credit,
        (unused_seconds / _SECONDS_PER_DAY).quantize(_CENT, rounding=ROUND_HALF_UP),
        (total_seconds / _SECONDS_PER_DAY).quantize(_CENT, rounding=ROUND_HALF_UP),
    )


class SubscriptionStateMachine:

    def __init__(self, db: Session, settings=None, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Lookup / provisioning
    # ------------------------------------------------------------------

    def _load(self, subscription_id: int) -> Subscription:
        sub = self.db.query(Subscription).filter(
            Subscription.id == subscription_id
        ).populate_existing().first()
        if sub is None:
            raise NotFound(f"Subscription {subscription_id} not found")
        return sub

    def get_for_user(self, user_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(Subscription.user_id == user_id).first()

    def provision(self, user_id: str) -> Subscription:
        """Create the user's free/active row, or return the existing one."""
        existing = self.get_for_user(user_id)
        if existing is not None:
            return existing

        sub = Subscription(
            user_id=user_id,
            tier=Tier.free,
            billing_cycle=BillingCycle.none,
            status=S.active,
            cancel_at_period_end=False,
        )
        try:
            with self.db.begin_nested():
                self.db.add(sub)
        except IntegrityError:
            logger.info("Subscription for user %s provisioned concurrently", user_id)
            return self.db.query(Subscription).filter(Subscription.user_id == user_id).one()
        logger.info("Provisioned free subscription for user %s", user_id)
        return sub

    def resolve(
        self,
        subscription_ref: Optional[str],
        user_id: Optional[str] = None,
        customer_ref: Optional[str] = None,
        provision: bool = False,
    ) -> Subscription:
        """
        Map a provider reference to the owning row.

        Entitlement refs win over audit refs, then the customer ref, then the
        user id carried by the event.
        """
        query = self.db.query(Subscription)
        sub = None
        if subscription_ref:
            sub = query.filter(Subscription.provider_subscription_ref == subscription_ref).first()
            if sub is None:
                sub = query.filter(
                    Subscription.last_provider_subscription_ref == subscription_ref
                ).order_by(Subscription.updated_at.desc()).first()
        if sub is None and customer_ref:
            sub = query.filter(Subscription.provider_customer_ref == customer_ref).first()
        if sub is None and user_id:
            sub = self.provision(user_id) if provision else self.get_for_user(user_id)
        if sub is None:
            raise NotFound(
                f"No subscription matches ref={subscription_ref} customer={customer_ref} user={user_id}"
            )
        return sub

    # ------------------------------------------------------------------
    # Transition core
    # ------------------------------------------------------------------

    def _check(self, operation: str, sub: Subscription) -> Transition:
        rule = TRANSITIONS[operation]
        if sub.status not in rule.sources:
            raise InvalidTransition(
                f"Cannot {operation.replace('_', ' ')} a subscription in status '{sub.status.value}'"
            )
        return rule

    @staticmethod
    def _assert_invariants(sub: Subscription) -> None:
        if sub.tier == Tier.premium and sub.status not in ENTITLED_STATUSES:
            raise InvalidTransition(
                f"Premium tier cannot be held in status '{sub.status.value}'"
            )

    def _apply(
        self,
        operation: str,
        subscription_id: int,
        mutate: Callable[[Subscription], object],
        guard: Optional[Callable[[Subscription], None]] = None,
        already_applied: Optional[Callable[[Subscription], bool]] = None,
    ):
        """
        Check and apply one transition atomically.

        Returns (subscription, result of ``mutate``). When ``already_applied``
        says the row is already in the requested state the call is a no-op and
        the result is None.
        """
        max_attempts = max(1, self.settings.STATE_MACHINE_MAX_RETRIES)
        for attempt in range(1, max_attempts + 1):
            sub = self._load(subscription_id)
            if already_applied is not None and already_applied(sub):
                logger.info("%s already applied to subscription %s, no-op", operation, sub.id)
                return sub, None
            try:
                rule = self._check(operation, sub)
                if guard is not None:
                    guard(sub)
            except InvalidTransition as exc:
                if attempt > 1:
                    raise Conflict(
                        f"Subscription {sub.id} changed concurrently: {exc.message}"
                    ) from exc
                raise

            source = sub.status
            try:
                with self.db.begin_nested():
                    result = mutate(sub)
                    if rule.target is not None:
                        sub.status = rule.target
                    self._assert_invariants(sub)
            except StaleDataError:
                logger.warning(
                    "Concurrent update on subscription %s during %s (attempt %s/%s)",
                    subscription_id, operation, attempt, max_attempts,
                )
                continue
            except IntegrityError as exc:
                raise Conflict(
                    f"{operation} on subscription {subscription_id} violates a uniqueness constraint"
                ) from exc

            logger.info(
                "Subscription %s: %s %s -> %s (tier=%s)",
                sub.id, operation, source.value, sub.status.value, sub.tier.value,
            )
            return sub, result

        raise Conflict(
            f"Subscription {subscription_id} kept changing during {operation}; giving up"
        )

    def _now(self, now: Optional[datetime]) -> datetime:
        return now or self.clock()

    @staticmethod
    def _require_premium(sub: Subscription) -> None:
        if sub.tier != Tier.premium:
            raise InvalidTransition("No paid subscription to change")

    @staticmethod
    def _link_provider(sub: Subscription, provider, subscription_ref, customer_ref) -> None:
        if provider is not None:
            sub.provider = Provider(provider)
        if subscription_ref:
            sub.provider_subscription_ref = subscription_ref
            sub.last_provider_subscription_ref = subscription_ref
        if customer_ref:
            sub.provider_customer_ref = customer_ref

    @staticmethod
    def _end_lifecycle(sub: Subscription, now: datetime, reason: Optional[str]) -> None:
        sub.tier = Tier.free
        sub.billing_cycle = BillingCycle.none
        sub.cancel_at_period_end = False
        sub.canceled_at = sub.canceled_at or now
        sub.cancel_reason = sub.cancel_reason or reason
        sub.provider_subscription_ref = None
        sub.past_due_since = None
        sub.pause_resumes_at = None

    # ------------------------------------------------------------------
    # Provider-driven operations
    # ------------------------------------------------------------------

    def activate_or_renew(
        self,
        subscription_id: int,
        period_start: Optional[datetime],
        period_end: Optional[datetime],
        tier: Tier = Tier.premium,
        billing_cycle: Optional[BillingCycle] = None,
        provider: Optional[Provider] = None,
        subscription_ref: Optional[str] = None,
        customer_ref: Optional[str] = None,
    ) -> Subscription:
        tier = Tier(tier)
        now = self._now(None)

        def already_applied(sub):
            if sub.status == S.canceled:
                # Only a period that is still running and newer than the ended
                # lifecycle reopens a canceled row.
                return period_end is not None and (
                    period_end <= now
                    or (sub.current_period_end is not None and period_end <= sub.current_period_end)
                )
            # A stale renewal delivered out of order never moves the period backwards.
            return (
                sub.status == S.active
                and sub.tier == tier
                and (
                    period_end is None
                    or (sub.current_period_end is not None and period_end <= sub.current_period_end)
                )
                and (subscription_ref is None or sub.provider_subscription_ref == subscription_ref)
            )

        def mutate(sub):
            if sub.status == S.canceled:
                # Re-subscription: a new lifecycle on the same row.
                sub.cancel_at_period_end = False
                sub.canceled_at = None
                sub.cancel_reason = None
            sub.tier = tier
            if billing_cycle is not None:
                sub.billing_cycle = BillingCycle(billing_cycle)
            if period_start is not None:
                sub.current_period_start = period_start
            if period_end is not None:
                sub.current_period_end = period_end
            sub.past_due_since = None
            sub.pause_resumes_at = None
            self._link_provider(sub, provider, subscription_ref, customer_ref)

        sub, _ = self._apply("activate_or_renew", subscription_id, mutate,
                             already_applied=already_applied)
        return sub

    def start_trial(
        self,
        subscription_id: int,
        period_start: Optional[datetime],
        period_end: Optional[datetime],
        billing_cycle: Optional[BillingCycle] = None,
        provider: Optional[Provider] = None,
        subscription_ref: Optional[str] = None,
        customer_ref: Optional[str] = None,
    ) -> Subscription:
        def guard(sub):
            if sub.status == S.active and sub.tier != Tier.free:
                raise InvalidTransition("A paid subscription cannot start a trial")

        def already_applied(sub):
            return sub.status == S.trialing and (
                period_end is None or sub.current_period_end == period_end
            )

        def mutate(sub):
            sub.tier = Tier.premium
            sub.cancel_at_period_end = False
            sub.canceled_at = None
            sub.cancel_reason = None
            if billing_cycle is not None:
                sub.billing_cycle = BillingCycle(billing_cycle)
            sub.current_period_start = period_start
            sub.current_period_end = period_end
            self._link_provider(sub, provider, subscription_ref, customer_ref)

        sub, _ = self._apply("start_trial", subscription_id, mutate, guard=guard,
                             already_applied=already_applied)
        return sub

    def mark_past_due(self, subscription_id: int, now: Optional[datetime] = None) -> Subscription:
        now = self._now(now)

        def mutate(sub):
            # Entitlement stays until an explicit expiration.
            sub.past_due_since = now

        sub, _ = self._apply(
            "mark_past_due", subscription_id, mutate,
            already_applied=lambda sub: sub.status == S.past_due,
        )
        return sub

    def expire(
        self,
        subscription_id: int,
        now: Optional[datetime] = None,
        provider_confirmed: bool = False,
        reason: str = "expired",
    ) -> Subscription:
        now = self._now(now)
        grace = timedelta(days=self.settings.GRACE_PERIOD_DAYS)

        def guard(sub):
            if provider_confirmed:
                return
            if sub.status == S.past_due:
                started = sub.past_due_since or now
                if now < started + grace:
                    raise InvalidTransition(
                        f"Grace period runs until {(started + grace).isoformat()}"
                    )
            elif sub.status in (S.active, S.trialing):
                if not sub.cancel_at_period_end or sub.current_period_end is None \
                        or now < sub.current_period_end:
                    raise InvalidTransition("Subscription period has not ended")
            else:
                raise InvalidTransition(
                    f"Only the provider can expire a subscription in status '{sub.status.value}'"
                )

        sub, _ = self._apply(
            "expire", subscription_id,
            lambda sub: self._end_lifecycle(sub, now, reason),
            guard=guard,
            already_applied=lambda sub: sub.status == S.canceled and sub.tier == Tier.free,
        )
        return sub

    def clear_scheduled_cancel(self, subscription_id: int) -> Subscription:
        def mutate(sub):
            sub.cancel_at_period_end = False
            sub.cancel_reason = None

        sub, _ = self._apply(
            "clear_scheduled_cancel", subscription_id, mutate,
            already_applied=lambda sub: sub.status in (S.active, S.trialing)
            and not sub.cancel_at_period_end,
        )
        return sub

    def downgrade(
        self,
        subscription_id: int,
        now: Optional[datetime] = None,
        reason: str = "partial_refund",
    ) -> Subscription:
        """Drop to the free tier while keeping the account active."""
        now = self._now(now)

        def mutate(sub):
            sub.tier = Tier.free
            sub.billing_cycle = BillingCycle.none
            sub.cancel_at_period_end = False
            sub.cancel_reason = reason
            sub.provider_subscription_ref = None
            sub.past_due_since = None
            sub.pause_resumes_at = None

        sub, _ = self._apply(
            "downgrade", subscription_id, mutate,
            already_applied=lambda sub: sub.status == S.active and sub.tier == Tier.free,
        )
        return sub

    # ------------------------------------------------------------------
    # Client-driven operations
    # ------------------------------------------------------------------

    def cancel(
        self,
        subscription_id: int,
        at_period_end: bool,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        now = self._now(now)

        if at_period_end:
            def schedule(sub):
                sub.cancel_at_period_end = True
                sub.cancel_reason = reason

            sub, _ = self._apply(
                "schedule_cancel", subscription_id, schedule,
                guard=self._require_premium,
                already_applied=lambda sub: sub.status in (S.active, S.trialing)
                and sub.cancel_at_period_end,
            )
            return sub

        def cancel_now(sub):
            sub.cancel_reason = reason
            sub.canceled_at = now
            self._end_lifecycle(sub, now, reason)

        sub, _ = self._apply("cancel", subscription_id, cancel_now, guard=self._require_premium)
        return sub

    def pause(
        self,
        subscription_id: int,
        resume_after: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        now = self._now(now)

        def guard(sub):
            self._require_premium(sub)
            if resume_after is not None and resume_after <= now:
                raise InvalidTransition("Resume date must be in the future")

        def mutate(sub):
            sub.pause_resumes_at = resume_after

        sub, _ = self._apply("pause", subscription_id, mutate, guard=guard)
        return sub

    def resume(self, subscription_id: int, now: Optional[datetime] = None) -> Subscription:
        now = self._now(now)

        def mutate(sub):
            sub.pause_resumes_at = None
            sub.current_period_start = now
            if sub.billing_cycle in (BillingCycle.monthly, BillingCycle.annual):
                sub.current_period_end = billing_period_end(now, sub.billing_cycle)

        sub, _ = self._apply("resume", subscription_id, mutate)
        return sub

    def price_for(self, cycle: BillingCycle) -> Decimal:
        if cycle == BillingCycle.monthly:
            return self.settings.PREMIUM_MONTHLY_PRICE
        if cycle == BillingCycle.annual:
            return self.settings.PREMIUM_ANNUAL_PRICE
        return Decimal("0.00")

    def switch_billing_cycle(
        self,
        subscription_id: int,
        new_cycle: BillingCycle,
        now: Optional[datetime] = None,
    ) -> Tuple[Subscription, ProrationAdjustment]:
        now = self._now(now)
        new_cycle = BillingCycle(new_cycle)

        def guard(sub):
            self._require_premium(sub)
            if new_cycle == BillingCycle.none:
                raise InvalidTransition("Billing cycle must be monthly or annual")
            if sub.billing_cycle == new_cycle:
                raise InvalidTransition(f"Already on {new_cycle.value} billing cycle")
            if sub.current_period_start is None or sub.current_period_end is None:
                raise InvalidTransition("Subscription has no current billing period")

        def mutate(sub):
            old_cycle = sub.billing_cycle
            old_price = self.price_for(old_cycle)
            credit, unused_days, total_days = compute_proration(
                sub.current_period_start, sub.current_period_end, now, old_price
            )
            new_price = self.price_for(new_cycle)
            adjustment = ProrationAdjustment(
                old_cycle=old_cycle,
                new_cycle=new_cycle,
                unused_days=unused_days,
                total_days=total_days,
                old_period_price=old_price,
                credit=credit,
                new_cycle_price=new_price,
                net_charge=new_price - credit,
                effective_at=now,
            )
            sub.billing_cycle = new_cycle
            sub.current_period_start = now
            sub.current_period_end = billing_period_end(now, new_cycle)
            return adjustment

        return self._apply("switch_billing_cycle", subscription_id, mutate, guard=guard)

    # ------------------------------------------------------------------
    # Periodic maintenance
    # ------------------------------------------------------------------

    def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Apply time-driven transitions: expire elapsed grace windows and
        scheduled cancellations, resume pauses whose resume date has passed.
        """
        now = self._now(now)
        grace_cutoff = now - timedelta(days=self.settings.GRACE_PERIOD_DAYS)
        counts = {"expired": 0, "resumed": 0, "skipped": 0}

        q = self.db.query(Subscription.id)
        lapsed_grace = q.filter(
            Subscription.status == S.past_due,
            Subscription.past_due_since <= grace_cutoff,
        ).all()
        ended_periods = q.filter(
            Subscription.status.in_([S.active, S.trialing]),
            Subscription.cancel_at_period_end.is_(True),
            Subscription.current_period_end <= now,
        ).all()
        due_resumes = q.filter(
            Subscription.status == S.paused,
            Subscription.pause_resumes_at <= now,
        ).all()

        for (sub_id,) in lapsed_grace + ended_periods:
            try:
                self.expire(sub_id, now=now)
                counts["expired"] += 1
            except (InvalidTransition, Conflict) as exc:
                logger.warning("Sweep could not expire subscription %s: %s", sub_id, exc)
                counts["skipped"] += 1
        for (sub_id,) in due_resumes:
            try:
                self.resume(sub_id, now=now)
                counts["resumed"] += 1
            except (InvalidTransition, Conflict) as exc:
                logger.warning("Sweep could not resume subscription %s: %s", sub_id, exc)
                counts["skipped"] += 1
        return counts
