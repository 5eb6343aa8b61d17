"""
Database models package.

All SQLAlchemy models are exported from this module for easy imports.
"""
from app.models.subscription import (
    Subscription,
    SubscriptionStatus,
    BillingCycle,
    OPEN_STATUSES,
    PLATFORM_SCOPE,
    creator_scope_for,
)
from app.models.payment import Payment, PaymentKind, PaymentOutcome
from app.models.processed_event import ProcessedEvent

__all__ = [
    "Subscription",
    "SubscriptionStatus",
    "BillingCycle",
    "OPEN_STATUSES",
    "PLATFORM_SCOPE",
    "creator_scope_for",
    "Payment",
    "PaymentKind",
    "PaymentOutcome",
    "ProcessedEvent",
]
