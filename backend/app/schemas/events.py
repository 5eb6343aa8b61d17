"""
Provider (Stripe) webhook event schemas.

Raw webhook payloads are decoded here, at the boundary, into a closed set of
event kinds with typed payload objects. Event types this service does not
handle decode to ``EventKind.UNKNOWN`` rather than failing, because the
provider adds new event types over time.
"""
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.core.errors import InvalidEventError
from app.core.timeutils import from_epoch
from app.models.subscription import SubscriptionStatus
from app.schemas.subscription import ProviderPeriod

import logging

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Stripe event types the reconciler understands."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_PAUSED = "customer.subscription.paused"
    SUBSCRIPTION_RESUMED = "customer.subscription.resumed"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    PAYMENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_FAILED = "payment_intent.payment_failed"
    CHARGE_REFUNDED = "charge.refunded"
    UNKNOWN = "unknown"

    @classmethod
    def from_type(cls, event_type: str) -> "EventKind":
        try:
            return cls(event_type)
        except ValueError:
            return cls.UNKNOWN


SUBSCRIPTION_SNAPSHOT_KINDS = {
    EventKind.SUBSCRIPTION_CREATED,
    EventKind.SUBSCRIPTION_UPDATED,
    EventKind.SUBSCRIPTION_PAUSED,
    EventKind.SUBSCRIPTION_RESUMED,
}

INVOICE_SUCCESS_KINDS = {EventKind.INVOICE_PAID, EventKind.INVOICE_PAYMENT_SUCCEEDED}


# Stripe subscription statuses folded into the closed local set
PROVIDER_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "incomplete": SubscriptionStatus.UNPAID,
    "paused": SubscriptionStatus.PAUSED,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def map_provider_status(status: Optional[str]) -> Optional[SubscriptionStatus]:
    """Map a Stripe status string to a local status, or None if unrecognized."""
    if not status:
        return None
    return PROVIDER_STATUS_MAP.get(status.lower())


def _ref(value: Union[str, Dict[str, Any], None]) -> Optional[str]:
    """Stripe fields may be an id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return str(value)


class StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SubscriptionObject(StripeObject):
    status: str
    customer: Union[str, Dict[str, Any], None] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    ended_at: Optional[int] = None
    items: Optional[Dict[str, Any]] = None

    def _first_item(self) -> Dict[str, Any]:
        data = (self.items or {}).get("data") or []
        return data[0] if data else {}

    @property
    def customer_ref(self) -> Optional[str]:
        return _ref(self.customer)

    @property
    def price_ref(self) -> Optional[str]:
        return _ref(self._first_item().get("price"))

    @property
    def item_ref(self) -> Optional[str]:
        return self._first_item().get("id")

    def period(self) -> Optional[ProviderPeriod]:
        """Current period; newer API versions only report it per item."""
        start = self.current_period_start
        end = self.current_period_end
        if start is None or end is None:
            item = self._first_item()
            start = item.get("current_period_start", start)
            end = item.get("current_period_end", end)
        if start is None or end is None:
            return None
        return ProviderPeriod(start=from_epoch(start), end=from_epoch(end))


class InvoiceObject(StripeObject):
    customer: Union[str, Dict[str, Any], None] = None
    subscription: Union[str, Dict[str, Any], None] = None
    payment_intent: Union[str, Dict[str, Any], None] = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str = "usd"
    parent: Optional[Dict[str, Any]] = None
    subscription_details: Optional[Dict[str, Any]] = None

    def _details(self) -> Dict[str, Any]:
        if self.subscription_details:
            return self.subscription_details
        return (self.parent or {}).get("subscription_details") or {}

    @property
    def subscription_ref(self) -> Optional[str]:
        return _ref(self.subscription) or _ref(self._details().get("subscription"))

    @property
    def payment_ref(self) -> str:
        """Ledger idempotency key: the payment intent, else the invoice itself."""
        return _ref(self.payment_intent) or self.id

    @property
    def subscription_metadata(self) -> Dict[str, Any]:
        return {**(self._details().get("metadata") or {}), **self.metadata}


class PaymentIntentObject(StripeObject):
    amount: int
    amount_received: int = 0
    currency: str = "usd"
    status: Optional[str] = None
    invoice: Union[str, Dict[str, Any], None] = None
    description: Optional[str] = None
    last_payment_error: Optional[Dict[str, Any]] = None

    @property
    def invoice_ref(self) -> Optional[str]:
        return _ref(self.invoice)

    @property
    def failure_message(self) -> Optional[str]:
        return (self.last_payment_error or {}).get("message")


class ChargeObject(StripeObject):
    payment_intent: Union[str, Dict[str, Any], None] = None
    amount: int = 0
    amount_refunded: int = 0
    currency: str = "usd"
    refunded: bool = False

    @property
    def payment_ref(self) -> str:
        return _ref(self.payment_intent) or self.id


class CheckoutSessionObject(StripeObject):
    mode: Optional[str] = None
    customer: Union[str, Dict[str, Any], None] = None
    subscription: Union[str, Dict[str, Any], None] = None
    payment_status: Optional[str] = None

    @property
    def customer_ref(self) -> Optional[str]:
        return _ref(self.customer)

    @property
    def subscription_ref(self) -> Optional[str]:
        return _ref(self.subscription)


PayloadObject = Union[
    SubscriptionObject,
    InvoiceObject,
    PaymentIntentObject,
    ChargeObject,
    CheckoutSessionObject,
]

_PAYLOAD_TYPES = {
    EventKind.CHECKOUT_COMPLETED: CheckoutSessionObject,
    EventKind.SUBSCRIPTION_CREATED: SubscriptionObject,
    EventKind.SUBSCRIPTION_UPDATED: SubscriptionObject,
    EventKind.SUBSCRIPTION_PAUSED: SubscriptionObject,
    EventKind.SUBSCRIPTION_RESUMED: SubscriptionObject,
    EventKind.SUBSCRIPTION_DELETED: SubscriptionObject,
    EventKind.INVOICE_PAID: InvoiceObject,
    EventKind.INVOICE_PAYMENT_SUCCEEDED: InvoiceObject,
    EventKind.INVOICE_PAYMENT_FAILED: InvoiceObject,
    EventKind.PAYMENT_SUCCEEDED: PaymentIntentObject,
    EventKind.PAYMENT_FAILED: PaymentIntentObject,
    EventKind.CHARGE_REFUNDED: ChargeObject,
}


class ProviderEvent(BaseModel):
    """A decoded provider event. ``payload`` is None for unknown or malformed events."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    kind: EventKind
    created: Optional[datetime] = None
    payload: Optional[PayloadObject] = None
    decode_error: Optional[str] = None


class AckOutcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    ORPHANED = "orphaned"


class EventAck(BaseModel):
    """Result of ingesting one provider event."""

    event_id: str
    event_type: str
    outcome: AckOutcome
    detail: Optional[str] = None
    replayed: bool = False


def decode_event(raw: Union[bytes, str, Dict[str, Any]]) -> ProviderEvent:
    """
    Decode a signature-verified webhook payload.

    Raises:
        InvalidEventError: If the envelope is not JSON or lacks an id/type
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidEventError("Webhook payload is not valid UTF-8") from e
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InvalidEventError(f"Webhook payload is not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise InvalidEventError("Webhook payload is not an object")
    elif not isinstance(raw, dict):
        # stripe.Event and other mapping-like objects
        try:
            raw = dict(raw)
        except (TypeError, ValueError) as e:
            raise InvalidEventError("Webhook payload is not an object") from e

    event_id = raw.get("id")
    event_type = raw.get("type")
    if not event_id or not event_type:
        raise InvalidEventError("Webhook payload is missing id or type")
    if not isinstance(event_id, str) or not isinstance(event_type, str):
        raise InvalidEventError("Webhook id and type must be strings")

    kind = EventKind.from_type(event_type)
    created_at = raw.get("created")
    if created_at is not None and (isinstance(created_at, bool) or not isinstance(created_at, int)):
        raise InvalidEventError(f"Webhook created timestamp is not an integer: {created_at!r}")
    created = from_epoch(created_at)

    if kind == EventKind.UNKNOWN:
        return ProviderEvent(id=event_id, type=event_type, kind=kind, created=created)

    data = raw.get("data")
    if data is None:
        data = {}
    elif not isinstance(data, dict):
        raise InvalidEventError("Webhook data field is not an object")
    data_object = data.get("object")
    payload_type = _PAYLOAD_TYPES[kind]
    try:
        payload = payload_type.model_validate(data_object)
    except ValidationError as e:
        logger.error(f"Malformed {event_type} payload in event {event_id}: {e}")
        return ProviderEvent(
            id=event_id,
            type=event_type,
            kind=kind,
            created=created,
            decode_error=str(e),
        )

    return ProviderEvent(id=event_id, type=event_type, kind=kind, created=created, payload=payload)
