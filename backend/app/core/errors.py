"""
Billing error taxonomy.

Each error carries the HTTP status the route layer answers with. Only
DuplicateEntryError is expected to be swallowed (by the event reconciler);
every other error surfaces to the caller.
"""
from typing import Any, Optional


class BillingError(Exception):
    """Base class for subscription and payment errors."""

    http_status = 400
    code = "billing_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConflictError(BillingError):
    """An open subscription already exists for the (subscriber, creator) pair."""

    http_status = 409
    code = "conflict"


class InvalidStateError(BillingError):
    """The requested transition is not legal from the record's current status."""

    http_status = 409
    code = "invalid_state"


class StaleStateError(BillingError):
    """A concurrent writer changed the record and the precondition no longer holds."""

    http_status = 409
    code = "stale_state"


class DuplicateEntryError(BillingError):
    """A ledger entry with the same provider payment reference already exists."""

    http_status = 409
    code = "duplicate_entry"

    def __init__(self, provider_payment_ref: str, existing: Optional[Any] = None, rolled_back: bool = False):
        super().__init__(f"Ledger entry already exists: {provider_payment_ref}")
        self.provider_payment_ref = provider_payment_ref
        self.existing = existing
        self.rolled_back = rolled_back


class OverRefundError(BillingError):
    """Refunding would push the refunded total past the original amount."""

    http_status = 400
    code = "over_refund"


class ProviderUnavailableError(BillingError):
    """
    An outbound billing provider call failed or timed out.

    ``ambiguous`` is True when the request may have reached the provider
    (timeouts, dropped connections); the outcome is then only known once the
    provider's webhook arrives.
    """

    http_status = 503
    code = "provider_unavailable"

    def __init__(self, message: str, ambiguous: bool = False, cause: Optional[Exception] = None):
        super().__init__(message)
        self.ambiguous = ambiguous
        self.cause = cause


class SubscriptionNotFoundError(BillingError):
    http_status = 404
    code = "subscription_not_found"


class PaymentNotFoundError(BillingError):
    http_status = 404
    code = "payment_not_found"


class InvalidEventError(BillingError, ValueError):
    """The webhook envelope could not be decoded."""

    http_status = 400
    code = "invalid_event"


class EventNotReadyError(BillingError):
    """
    The event refers to a record that has not been written yet.

    The event is left unclaimed and answered with 503 so the provider
    redelivers it once the earlier event has been processed.
    """

    http_status = 503
    code = "event_not_ready"
