"""
Enumerations shared by the ORM models, schemas and services.
"""
from enum import Enum


class Tier(str, Enum):
    free = "free"
    premium = "premium"


class BillingCycle(str, Enum):
    monthly = "monthly"
    annual = "annual"
    none = "none"


class SubscriptionStatus(str, Enum):
    active = "active"
    trialing = "trialing"
    past_due = "past_due"
    canceled = "canceled"
    incomplete = "incomplete"
    paused = "paused"


class Provider(str, Enum):
    stripe = "stripe"
    apple = "apple"


class TransactionStatus(str, Enum):
    pending = "pending"
    succeeded = "succeeded"
    failed = "failed"
    canceled = "canceled"
    refunded = "refunded"


class ProcessingStatus(str, Enum):
    pending = "pending"
    processed = "processed"
    failed = "failed"
    ignored = "ignored"


class RepeatInterval(str, Enum):
    weekly = "weekly"
    biweekly = "biweekly"
    semimonthly = "semimonthly"
    monthly = "monthly"
    bimonthly = "bimonthly"
    quarterly = "quarterly"
    semiannually = "semiannually"
    yearly = "yearly"
    never = "never"


class ItemStatus(str, Enum):
    active = "active"
    paused = "paused"
    canceled = "canceled"


class PaymentHistoryStatus(str, Enum):
    paid = "paid"
    skipped = "skipped"
    pending = "pending"
    cancelled = "cancelled"


class RefundStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    completed = "completed"


# Statuses in which a premium tier may be held.
ENTITLED_STATUSES = frozenset({
    SubscriptionStatus.active,
    SubscriptionStatus.trialing,
    SubscriptionStatus.past_due,
    SubscriptionStatus.paused,
})
