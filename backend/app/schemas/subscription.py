"""
Pydantic schemas for subscription operations.
"""
import uuid
from datetime import datetime
from typing import Dict, Optional, List
from pydantic import BaseModel, ConfigDict, Field

from app.core.tiers import Tier
from app.models.subscription import SubscriptionStatus, BillingCycle
from app.schemas.payment import Pagination


class SubscriptionSnapshot(BaseModel):
    """
    Immutable view of a subscription record.

    Returned by every lifecycle transition and consumed by the access
    evaluator, so read paths never hold a live ORM object.
    """

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: uuid.UUID
    subscriber_id: uuid.UUID
    creator_id: Optional[uuid.UUID] = None
    tier: Tier
    status: SubscriptionStatus
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    pending_reconciliation: bool = False
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProviderPeriod(BaseModel):
    """Billing period bounds reported by the provider (half-open interval)."""

    start: datetime
    end: datetime


class SubscriptionCreateRequest(BaseModel):
    """Request to record a confirmed checkout as a subscription."""

    creator_id: Optional[uuid.UUID] = Field(None, description="Creator to subscribe to; omit for platform tiers")
    tier: Tier
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None


class SubscribeRequest(BaseModel):
    """Request to start a new remote subscription and record it locally."""

    creator_id: Optional[uuid.UUID] = None
    tier: Tier
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    stripe_price_id: str = Field(..., min_length=1, description="Stripe recurring price for the creator tier")
    email: str
    display_name: Optional[str] = None
    stripe_customer_id: Optional[str] = None


class CancelRequest(BaseModel):
    immediate: bool = False


class SubscriptionList(BaseModel):
    subscriptions: List[SubscriptionSnapshot]
    total: int


class AccessCheckResponse(BaseModel):
    tier: Tier
    creator_id: Optional[uuid.UUID] = None
    has_access: bool
    subscription_id: Optional[uuid.UUID] = None


class TierInfo(BaseModel):
    tier: Tier
    level: int
    name: str
    description: str
    unlocks: List[Tier]


class SubscribeResponse(BaseModel):
    subscription: SubscriptionSnapshot
    client_secret: Optional[str] = Field(None, description="Confirms the first invoice payment client-side")


class SubscriptionUpdateRequest(BaseModel):
    """Request to move an active subscription to another tier."""

    tier: Tier
    stripe_price_id: Optional[str] = Field(
        None, min_length=1, description="Stripe price of the new tier; required for Stripe subscriptions"
    )


class SubscriberPage(BaseModel):
    subscriptions: List[SubscriptionSnapshot]
    pagination: Pagination


class SubscriptionAnalytics(BaseModel):
    """Subscription counts for a creator over the subscriptions created in a window."""

    creator_id: uuid.UUID
    total_subscriptions: int = 0
    active_subscriptions: int = 0
    canceled_subscriptions: int = 0
    churn_rate: float = Field(0.0, description="Canceled share of all subscriptions, in percent")
    active_by_tier: Dict[Tier, int] = Field(default_factory=dict)
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
