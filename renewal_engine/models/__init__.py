from .subscription import Subscription, Base
from .payment_transaction import PaymentTransaction
from .webhook_event import WebhookEvent
from .recurring_item import RecurringItem
from .payment_history import PaymentHistoryRecord
from .refund_request import RefundRequest
