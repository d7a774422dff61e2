from .events import BillingEvent, BillingEventType
from .billing import (
    SubscriptionResponse, PauseRequest, SwitchBillingCycleRequest, ProrationResponse,
    CancelRequest, RefundCreate, RefundResponse, TransactionResponse, BillingHistoryResponse,
)
from .recurring import (
    RecurringItemCreate, RecurringItemUpdate, RecurringItemResponse, RecurringSummary,
    CanAddItemResponse, PastDueItem, ConfirmPaymentRequest, ConfirmPaymentResponse,
    PaymentHistoryEntry, PaymentStatsResponse,
)
