"""
Billing error taxonomy.

Services raise these; routers never build HTTP errors for domain failures
themselves. ``main.py`` registers one handler that maps ``status_code`` and
``code`` onto the JSON response.
"""


class BillingError(Exception):
    """Base exception for billing engine errors."""
    status_code = 400
    code = "billing_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or (self.__class__.__doc__ or "").strip()


class SignatureInvalid(BillingError):
    """Webhook signature could not be verified."""
    status_code = 401
    code = "signature_invalid"


class MalformedPayload(BillingError):
    """Webhook payload is not a valid provider notification."""
    status_code = 400
    code = "malformed_payload"


class DuplicateEvent(BillingError):
    """Event was already handled."""
    status_code = 200
    code = "duplicate_event"


class InvalidTransition(BillingError):
    """Operation is not valid from the current subscription state."""
    status_code = 409
    code = "invalid_transition"


class NotFound(BillingError):
    """No matching record."""
    status_code = 404
    code = "not_found"


class Conflict(BillingError):
    """Record changed concurrently and the operation no longer applies."""
    status_code = 409
    code = "conflict"


class LimitExceeded(BillingError):
    """Tier limit reached."""
    status_code = 403
    code = "limit_exceeded"


class RefundNotAllowed(BillingError):
    """Refund is not available for this subscription."""
    status_code = 400
    code = "refund_not_allowed"


class TransientStoreError(BillingError):
    """Data store unavailable, retry later."""
    status_code = 503
    code = "transient_store_error"


# Failures that are permanent for a given webhook event: redelivery cannot fix them.
WEBHOOK_BUSINESS_ERRORS = (NotFound, InvalidTransition, Conflict)
