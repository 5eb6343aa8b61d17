"""
Pydantic schemas for API request/response validation.
"""
from app.schemas.subscription import (
    SubscriptionSnapshot,
    ProviderPeriod,
    SubscriptionCreateRequest,
    SubscribeRequest,
    SubscribeResponse,
    CancelRequest,
    SubscriptionList,
    AccessCheckResponse,
    TierInfo,
    SubscriptionUpdateRequest,
    SubscriberPage,
    SubscriptionAnalytics,
)
from app.schemas.payment import (
    LedgerEntryCreate,
    PaymentDetail,
    Pagination,
    PaymentHistory,
    RevenueSummary,
    TipRequest,
    PaymentIntentResponse,
    RefundRequest,
)
from app.schemas.events import (
    EventKind,
    ProviderEvent,
    AckOutcome,
    EventAck,
    decode_event,
)

__all__ = [
    # Subscription
    "SubscriptionSnapshot",
    "ProviderPeriod",
    "SubscriptionCreateRequest",
    "SubscribeRequest",
    "SubscribeResponse",
    "CancelRequest",
    "SubscriptionList",
    "AccessCheckResponse",
    "TierInfo",
    "SubscriptionUpdateRequest",
    "SubscriberPage",
    "SubscriptionAnalytics",
    # Payment
    "LedgerEntryCreate",
    "PaymentDetail",
    "Pagination",
    "PaymentHistory",
    "RevenueSummary",
    "TipRequest",
    "PaymentIntentResponse",
    "RefundRequest",
    # Events
    "EventKind",
    "ProviderEvent",
    "AckOutcome",
    "EventAck",
    "decode_event",
]
