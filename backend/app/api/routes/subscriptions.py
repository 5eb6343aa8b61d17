"""
API endpoints for subscription management.

Endpoints:
- GET /subscriptions/tiers - List content tiers
- POST /subscriptions - Record a confirmed checkout
- POST /subscriptions/subscribe - Start a Stripe subscription
- GET /subscriptions/current - Current open subscription for a creator
- GET /subscriptions/history - All subscriptions of the user
- GET /subscriptions/my-creators - Creators the user actively subscribes to
- GET /subscriptions/creator/{creator_id}/subscribers - Active subscribers of the user as a creator
- GET /subscriptions/analytics/{creator_id} - Subscription counts and churn for the user as a creator
- GET /subscriptions/access - Check access to a creator's tier
- PUT /subscriptions/{id} - Change the tier of an active subscription
- POST /subscriptions/{id}/cancel - Cancel now or at period end
- POST /subscriptions/{id}/reactivate - Reactivate a canceled/past-due subscription
- POST /subscriptions/{id}/resume - Resume a paused subscription
"""
import uuid
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from app.core.auth import get_current_user_id
from app.core.rate_limit import limiter
from app.db.base import get_db
from app.schemas import (
    AccessCheckResponse,
    CancelRequest,
    SubscribeRequest,
    SubscribeResponse,
    SubscriptionCreateRequest,
    SubscriberPage,
    SubscriptionAnalytics,
    SubscriptionList,
    SubscriptionSnapshot,
    SubscriptionUpdateRequest,
    TierInfo,
)
from app.services.subscription import subscription_service
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/tiers", response_model=List[TierInfo])
@limiter.limit("100/hour")
async def list_tiers(request: Request):
    """
    Get all content tiers in hierarchy order.

    Public endpoint - does not require authentication.
    """
    return subscription_service.list_tiers()


@router.post("", response_model=SubscriptionSnapshot, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def create_subscription(
    request: Request,
    body: SubscriptionCreateRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Record a subscription whose checkout has been confirmed."""
    return subscription_service.create_subscription(user_id, body, db)


@router.post("/subscribe", response_model=SubscribeResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
def subscribe(
    request: Request,
    body: SubscribeRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """
    Start a Stripe subscription for a creator tier.

    The returned client secret confirms the first payment client-side;
    access is granted once Stripe reports the subscription active.
    """
    return subscription_service.subscribe(user_id, body, db)


@router.get("/current", response_model=SubscriptionSnapshot)
@limiter.limit("30/minute")
def get_current_subscription(
    request: Request,
    creator_id: Optional[uuid.UUID] = Query(None, description="Omit for the platform-wide subscription"),
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Get the open subscription to a creator."""
    subscription = subscription_service.get_current_subscription(user_id, creator_id, db)
    if subscription is None:
        raise HTTPException(status_code=404, detail="No active subscription found")
    return subscription


@router.get("/history", response_model=SubscriptionList)
@limiter.limit("30/minute")
def get_subscription_history(
    request: Request,
    creator_id: Optional[uuid.UUID] = Query(None),
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Get every subscription of the user, newest first."""
    return subscription_service.get_subscription_history(user_id, db, creator_id=creator_id)


@router.get("/my-creators", response_model=SubscriptionList)
@limiter.limit("30/minute")
def get_my_creators(
    request: Request,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Active creator subscriptions of the user, newest first."""
    return subscription_service.get_my_creators(user_id, db)


def _require_creator(user_id: uuid.UUID, creator_id: uuid.UUID) -> None:
    if user_id != creator_id:
        raise HTTPException(status_code=403, detail="Not authorized to view this creator's subscribers")


@router.get("/creator/{creator_id}/subscribers", response_model=SubscriberPage)
@limiter.limit("30/minute")
def get_creator_subscribers(
    request: Request,
    creator_id: uuid.UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Active subscribers of a creator; only the creator may list them."""
    _require_creator(user_id, creator_id)
    return subscription_service.get_creator_subscribers(creator_id, db, page=page, limit=limit)


@router.get("/analytics/{creator_id}", response_model=SubscriptionAnalytics)
@limiter.limit("30/minute")
def get_subscription_analytics(
    request: Request,
    creator_id: uuid.UUID,
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Subscription counts and churn rate over subscriptions created in the window."""
    _require_creator(user_id, creator_id)
    try:
        return subscription_service.get_subscription_analytics(creator_id, db, start=start, end=end)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/access", response_model=AccessCheckResponse)
@limiter.limit("300/minute")
def check_access(
    request: Request,
    tier: str = Query(..., description="Requested content tier"),
    creator_id: Optional[uuid.UUID] = Query(None),
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Check whether the user may view a creator's content at a tier."""
    try:
        return subscription_service.check_access(user_id, creator_id, tier, db)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.put("/{subscription_id}", response_model=SubscriptionSnapshot)
@limiter.limit("10/minute")
def update_subscription(
    request: Request,
    subscription_id: uuid.UUID,
    body: SubscriptionUpdateRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """
    Change the tier of an active subscription.

    Stripe subscriptions need the new tier's ``stripe_price_id``; Stripe
    prorates the difference on the next invoice.
    """
    try:
        return subscription_service.update_subscription(user_id, subscription_id, body, db)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{subscription_id}/cancel", response_model=SubscriptionSnapshot)
@limiter.limit("10/minute")
def cancel_subscription(
    request: Request,
    subscription_id: uuid.UUID,
    body: Optional[CancelRequest] = None,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """
    Cancel a subscription.

    By default access continues until the end of the paid period; pass
    ``immediate: true`` to revoke it now.
    """
    immediate = body.immediate if body else False
    snapshot = subscription_service.cancel_subscription(user_id, subscription_id, immediate, db)
    logger.info(f"User {user_id} canceled subscription {subscription_id} (immediate={immediate})")
    return snapshot


@router.post("/{subscription_id}/reactivate", response_model=SubscriptionSnapshot)
@limiter.limit("10/minute")
def reactivate_subscription(
    request: Request,
    subscription_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return subscription_service.reactivate_subscription(user_id, subscription_id, db)


@router.post("/{subscription_id}/resume", response_model=SubscriptionSnapshot)
@limiter.limit("10/minute")
def resume_subscription(
    request: Request,
    subscription_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Ask Stripe to resume a paused subscription; the webhook reactivates it."""
    return subscription_service.resume_subscription(user_id, subscription_id, db)
