"""
Stripe billing provider client.

Thin outbound wrapper around the Stripe SDK. Every call runs with the
configured HTTP timeout and is translated into ProviderUnavailableError on
failure. Network failures and timeouts are flagged ``ambiguous`` because the
request may still have been applied provider-side; callers must then leave
the local outcome to the webhook.

Callers must not hold a database transaction open across these calls.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import stripe

from app.core.config import settings
from app.core.errors import ProviderUnavailableError
from app.core.timeutils import from_epoch
from app.models import SubscriptionStatus
from app.schemas.events import SubscriptionObject, map_provider_status
from app.schemas.subscription import ProviderPeriod
import logging

logger = logging.getLogger(__name__)

# Configure Stripe from settings
stripe.api_key = settings.stripe_api_key or None
stripe.max_network_retries = settings.stripe_max_network_retries
stripe.default_http_client = stripe.RequestsClient(timeout=settings.stripe_timeout_seconds)


def _as_dict(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


@dataclass(frozen=True)
class RemoteSubscription:
    """Provider-side view of a subscription."""

    id: str
    status: Optional[SubscriptionStatus]
    raw_status: str
    customer_id: Optional[str]
    price_id: Optional[str]
    period: Optional[ProviderPeriod]
    cancel_at_period_end: bool
    canceled_at: Optional[datetime]
    client_secret: Optional[str] = None
    item_id: Optional[str] = None

    @classmethod
    def from_stripe(cls, obj: Any) -> "RemoteSubscription":
        data = _as_dict(obj)
        parsed = SubscriptionObject.model_validate(data)

        client_secret = None
        latest_invoice = data.get("latest_invoice")
        if isinstance(latest_invoice, dict):
            payment_intent = latest_invoice.get("payment_intent")
            if isinstance(payment_intent, dict):
                client_secret = payment_intent.get("client_secret")

        return cls(
            id=parsed.id,
            status=map_provider_status(parsed.status),
            raw_status=parsed.status,
            customer_id=parsed.customer_ref,
            price_id=parsed.price_ref,
            period=parsed.period(),
            cancel_at_period_end=parsed.cancel_at_period_end,
            canceled_at=from_epoch(parsed.canceled_at),
            client_secret=client_secret,
            item_id=parsed.item_ref,
        )


@dataclass(frozen=True)
class PaymentIntentResult:
    id: str
    client_secret: Optional[str]
    status: Optional[str]
    amount: int
    currency: str


@dataclass(frozen=True)
class RefundResult:
    id: str
    status: Optional[str]
    amount: int


class StripeBillingClient:
    """Outbound calls to Stripe."""

    @property
    def configured(self) -> bool:
        return bool(stripe.api_key)

    def _call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        if not self.configured:
            raise ProviderUnavailableError("Stripe API key not configured")

        try:
            return fn(*args, **kwargs)
        except stripe.APIConnectionError as e:
            logger.error(f"Stripe {operation} did not complete (network/timeout): {e}")
            raise ProviderUnavailableError(
                f"Billing provider did not respond to {operation}; the result is pending",
                ambiguous=True,
                cause=e,
            ) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe {operation} failed: {e}")
            raise ProviderUnavailableError(
                f"Billing provider rejected {operation}: {getattr(e, 'user_message', None) or e}",
                ambiguous=False,
                cause=e,
            ) from e

    def ensure_customer(
        self,
        email: str,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        customer_id: Optional[str] = None,
    ) -> str:
        """Return an existing customer id or create a new Stripe customer."""
        if customer_id:
            return customer_id

        customer = self._call(
            "customer create",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata=metadata or {},
        )
        logger.info(f"Created Stripe customer {customer['id']} for {email}")
        return customer["id"]

    def create_remote_subscription(
        self,
        customer_id: str,
        price_id: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> RemoteSubscription:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id, "quantity": 1}],
            "payment_behavior": "default_incomplete",
            "expand": ["latest_invoice.payment_intent"],
            "metadata": metadata,
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        subscription = self._call("subscription create", stripe.Subscription.create, **params)
        remote = RemoteSubscription.from_stripe(subscription)
        logger.info(f"Created Stripe subscription {remote.id} for customer {customer_id} ({remote.raw_status})")
        return remote

    def cancel_remote_subscription(self, external_ref: str, immediate: bool) -> RemoteSubscription:
        if immediate:
            subscription = self._call("subscription cancel", stripe.Subscription.cancel, external_ref)
        else:
            subscription = self._call(
                "subscription cancel at period end",
                stripe.Subscription.modify,
                external_ref,
                cancel_at_period_end=True,
            )
        remote = RemoteSubscription.from_stripe(subscription)
        logger.info(
            f"Stripe subscription {external_ref} cancel requested "
            f"(immediate={immediate}, status={remote.raw_status})"
        )
        return remote

    def change_remote_price(
        self,
        external_ref: str,
        price_id: str,
        metadata: Dict[str, str],
    ) -> RemoteSubscription:
        """Swap the subscription's price; Stripe prorates the difference."""
        current = self.retrieve_remote_subscription(external_ref)
        item: Dict[str, Any] = {"price": price_id}
        if current.item_id:
            item["id"] = current.item_id

        subscription = self._call(
            "subscription price change",
            stripe.Subscription.modify,
            external_ref,
            items=[item],
            proration_behavior="create_prorations",
            metadata=metadata,
        )
        remote = RemoteSubscription.from_stripe(subscription)
        logger.info(f"Stripe subscription {external_ref} moved to price {price_id} ({remote.raw_status})")
        return remote

    def resume_remote_subscription(self, external_ref: str) -> RemoteSubscription:
        subscription = self._call("subscription resume", stripe.Subscription.resume, external_ref)
        return RemoteSubscription.from_stripe(subscription)

    def retrieve_remote_subscription(self, external_ref: str) -> RemoteSubscription:
        subscription = self._call("subscription retrieve", stripe.Subscription.retrieve, external_ref)
        return RemoteSubscription.from_stripe(subscription)

    def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntentResult:
        params: Dict[str, Any] = {
            "amount": int(amount),
            "currency": currency,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        intent = self._call("payment intent create", stripe.PaymentIntent.create, **params)
        return PaymentIntentResult(
            id=intent["id"],
            client_secret=intent.get("client_secret"),
            status=intent.get("status"),
            amount=intent.get("amount", amount),
            currency=intent.get("currency", currency),
        )

    def create_refund(
        self,
        payment_intent_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        params: Dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount is not None:
            params["amount"] = int(amount)
        if reason:
            params["reason"] = "requested_by_customer"

        refund = self._call("refund create", stripe.Refund.create, **params)
        return RefundResult(
            id=refund["id"],
            status=refund.get("status"),
            amount=refund.get("amount", amount or 0),
        )


# Global client instance
billing_client = StripeBillingClient()
