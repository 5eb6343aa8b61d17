"""
Subscription service: the operations the route layer calls.

Handles:
- Recording confirmed subscriptions and starting new ones with Stripe
- Tier changes, cancellation, reactivation and resume
- Current/historical subscription lookups and access checks
- Creator-side subscriber lists and subscription analytics

Outbound Stripe calls are always made with no database transaction open.
A call that times out leaves the local record untouched apart from the
pending-reconciliation marker; the webhook settles the outcome.
"""
import math
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from app.core.errors import (
    ConflictError,
    InvalidStateError,
    ProviderUnavailableError,
    StaleStateError,
    SubscriptionNotFoundError,
)
from app.core.tiers import TIER_DISPLAY, TIER_HIERARCHY, tiers_unlocked_by
from app.models import Subscription, SubscriptionStatus, creator_scope_for
from app.schemas import (
    AccessCheckResponse,
    Pagination,
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
from app.services.access import access_evaluator
from app.services.billing_provider import billing_client
from app.services.lifecycle import (
    ensure_cancellable,
    ensure_tier_changeable,
    lifecycle_controller,
    to_snapshot,
)
import logging

logger = logging.getLogger(__name__)


def _end_read_transaction(db: Session) -> None:
    """Close the implicit read transaction before calling out to Stripe."""
    db.commit()


def _subscribe_idempotency_key(
    subscriber_id: uuid.UUID,
    creator_id: Optional[uuid.UUID],
    price_id: str,
    db: Session,
) -> str:
    """
    Key for the remote create, stable across retries of one subscribe.

    The count of earlier records for the pair keeps a later resubscription
    from replaying the first one's create.
    """
    scope = creator_scope_for(creator_id)
    previous = (
        db.query(Subscription)
        .filter(Subscription.subscriber_id == subscriber_id, Subscription.creator_scope == scope)
        .count()
    )
    return f"subscribe:{subscriber_id}:{scope}:{price_id}:{previous}"


class SubscriptionService:
    """Service for managing creator subscriptions."""

    def _get_owned(self, subscriber_id: uuid.UUID, subscription_id: uuid.UUID, db: Session) -> Subscription:
        subscription = lifecycle_controller.get(db, subscription_id)
        if subscription.subscriber_id != subscriber_id:
            # Same answer as a missing id so ids cannot be enumerated
            raise SubscriptionNotFoundError(f"Subscription not found: {subscription_id}")
        return subscription

    def create_subscription(
        self,
        subscriber_id: uuid.UUID,
        request: SubscriptionCreateRequest,
        db: Session,
    ) -> SubscriptionSnapshot:
        """
        Record a subscription whose checkout was confirmed.

        Raises:
            ConflictError: If the subscriber already has an open subscription
                to this creator
        """
        return lifecycle_controller.create(
            db,
            subscriber_id,
            request.creator_id,
            request.tier,
            request.stripe_subscription_id,
            billing_cycle=request.billing_cycle,
            customer_ref=request.stripe_customer_id,
            metadata={"source": "checkout"},
        )

    def subscribe(
        self,
        subscriber_id: uuid.UUID,
        request: SubscribeRequest,
        db: Session,
    ) -> SubscribeResponse:
        """
        Start a Stripe subscription, then record it locally.

        The local record takes the provider's status, so an incomplete first
        payment does not grant access until the provider reports it paid.

        Raises:
            ConflictError: If an open subscription already exists for the pair
            ProviderUnavailableError: If Stripe could not be reached. When the
                outcome is ambiguous the ``customer.subscription.created``
                webhook records the subscription from its metadata.
        """
        if lifecycle_controller.find_open(db, subscriber_id, request.creator_id) is not None:
            raise ConflictError(
                f"An open subscription already exists for subscriber {subscriber_id} "
                f"and creator {request.creator_id or 'platform'}"
            )
        idempotency_key = _subscribe_idempotency_key(
            subscriber_id, request.creator_id, request.stripe_price_id, db
        )
        _end_read_transaction(db)

        metadata = {
            "subscriber_id": str(subscriber_id),
            "creator_id": str(request.creator_id) if request.creator_id else "",
            "tier": request.tier.value,
            "billing_cycle": request.billing_cycle.value,
        }
        customer_id = billing_client.ensure_customer(
            email=request.email,
            name=request.display_name,
            metadata={"subscriber_id": str(subscriber_id)},
            customer_id=request.stripe_customer_id,
        )
        remote = billing_client.create_remote_subscription(
            customer_id, request.stripe_price_id, metadata, idempotency_key=idempotency_key
        )

        status = remote.status or SubscriptionStatus.UNPAID
        try:
            snapshot = lifecycle_controller.create(
                db,
                subscriber_id,
                request.creator_id,
                request.tier,
                remote.id,
                billing_cycle=request.billing_cycle,
                period=remote.period,
                customer_ref=customer_id,
                price_ref=remote.price_id or request.stripe_price_id,
                metadata={"source": "subscribe"},
                commit=False,
            )
            if status != SubscriptionStatus.ACTIVE:
                snapshot = lifecycle_controller.apply_provider_status(
                    db, snapshot.id, status, remote.period, commit=False
                )
            db.commit()
        except ConflictError:
            db.rollback()
            # The webhook may have recorded it first
            existing = lifecycle_controller.find_by_external_ref(db, remote.id)
            if existing is None:
                self._compensate_remote_create(db, remote.id)
                raise
            snapshot = to_snapshot(existing)

        logger.info(
            f"Subscriber {subscriber_id} subscribed to {request.creator_id or 'platform'} "
            f"at {request.tier.value} ({remote.id}, {snapshot.status.value})"
        )
        return SubscribeResponse(subscription=snapshot, client_secret=remote.client_secret)

    def _compensate_remote_create(self, db: Session, external_ref: str) -> None:
        """Cancel a remote subscription whose local record lost the race to another one."""
        _end_read_transaction(db)
        logger.warning(
            f"Local record for Stripe subscription {external_ref} conflicts with another "
            f"open subscription; canceling it remotely"
        )
        try:
            billing_client.cancel_remote_subscription(external_ref, immediate=True)
        except ProviderUnavailableError as e:
            # Left unlinked; its webhooks are ignored as conflicts
            logger.error(f"Could not cancel orphaned Stripe subscription {external_ref}: {e.message}")

    def update_subscription(
        self,
        subscriber_id: uuid.UUID,
        subscription_id: uuid.UUID,
        request: SubscriptionUpdateRequest,
        db: Session,
    ) -> SubscriptionSnapshot:
        """
        Change the tier of an active subscription.

        A Stripe subscription is moved to the new price first; the local
        record follows once Stripe accepted the change.

        Raises:
            InvalidStateError: If the subscription is not active
            ValueError: If a Stripe subscription is changed without a price
            ProviderUnavailableError: If Stripe failed; local state is
                unchanged (ambiguous failures set the pending marker)
        """
        subscription = self._get_owned(subscriber_id, subscription_id, db)
        ensure_tier_changeable(subscription)
        if subscription.tier == request.tier and request.stripe_price_id in (None, subscription.stripe_price_id):
            return to_snapshot(subscription)

        external_ref = subscription.stripe_subscription_id
        if external_ref and not request.stripe_price_id:
            raise ValueError("stripe_price_id is required to change the tier of a Stripe subscription")
        _end_read_transaction(db)

        price_ref = request.stripe_price_id
        if external_ref:
            try:
                remote = billing_client.change_remote_price(
                    external_ref, request.stripe_price_id, {"tier": request.tier.value}
                )
            except ProviderUnavailableError as e:
                if e.ambiguous:
                    lifecycle_controller.mark_pending_reconciliation(db, subscription_id)
                    logger.warning(
                        f"Tier change of subscription {subscription_id} is pending reconciliation with Stripe"
                    )
                raise
            price_ref = remote.price_id or price_ref

        snapshot = lifecycle_controller.change_tier(db, subscription_id, request.tier, price_ref=price_ref)
        logger.info(f"Subscriber {subscriber_id} moved subscription {subscription_id} to {request.tier.value}")
        return snapshot

    def cancel_subscription(
        self,
        subscriber_id: uuid.UUID,
        subscription_id: uuid.UUID,
        immediate: bool,
        db: Session,
    ) -> SubscriptionSnapshot:
        """
        Cancel with Stripe first, then locally.

        Raises:
            InvalidStateError: If the cancellation is not legal from the
                current status
            ProviderUnavailableError: If Stripe failed; local state is
                unchanged (ambiguous failures set the pending marker)
        """
        subscription = self._get_owned(subscriber_id, subscription_id, db)
        ensure_cancellable(subscription, immediate)
        external_ref = subscription.stripe_subscription_id
        _end_read_transaction(db)

        if external_ref:
            try:
                billing_client.cancel_remote_subscription(external_ref, immediate)
            except ProviderUnavailableError as e:
                if e.ambiguous:
                    lifecycle_controller.mark_pending_reconciliation(db, subscription_id)
                    logger.warning(
                        f"Cancel of subscription {subscription_id} is pending reconciliation with Stripe"
                    )
                raise

        try:
            return lifecycle_controller.cancel(db, subscription_id, immediate)
        except (InvalidStateError, StaleStateError):
            # A webhook can apply the same cancellation while we were calling out
            current = to_snapshot(lifecycle_controller.get(db, subscription_id))
            if current.status == SubscriptionStatus.CANCELED or (
                not immediate and current.cancel_at_period_end
            ):
                return current
            raise

    def reactivate_subscription(
        self,
        subscriber_id: uuid.UUID,
        subscription_id: uuid.UUID,
        db: Session,
    ) -> SubscriptionSnapshot:
        """Reactivate a canceled or past-due subscription."""
        self._get_owned(subscriber_id, subscription_id, db)
        return lifecycle_controller.reactivate(db, subscription_id)

    def resume_subscription(
        self,
        subscriber_id: uuid.UUID,
        subscription_id: uuid.UUID,
        db: Session,
    ) -> SubscriptionSnapshot:
        """
        Ask Stripe to resume a paused subscription.

        The local record stays ``paused`` until the provider's
        ``customer.subscription.resumed`` event is reconciled.
        """
        subscription = self._get_owned(subscriber_id, subscription_id, db)
        if subscription.status != SubscriptionStatus.PAUSED:
            raise InvalidStateError(
                f"Only paused subscriptions can be resumed (status={subscription.status.value})"
            )
        if not subscription.stripe_subscription_id:
            raise InvalidStateError(f"Subscription {subscription_id} is not linked to Stripe")
        external_ref = subscription.stripe_subscription_id
        _end_read_transaction(db)

        try:
            billing_client.resume_remote_subscription(external_ref)
        except ProviderUnavailableError as e:
            if e.ambiguous:
                lifecycle_controller.mark_pending_reconciliation(db, subscription_id)
            raise

        return to_snapshot(lifecycle_controller.get(db, subscription_id))

    def get_current_subscription(
        self,
        subscriber_id: uuid.UUID,
        creator_id: Optional[uuid.UUID],
        db: Session,
    ) -> Optional[SubscriptionSnapshot]:
        subscription = lifecycle_controller.find_open(db, subscriber_id, creator_id)
        return to_snapshot(subscription) if subscription else None

    def get_subscription_history(
        self,
        subscriber_id: uuid.UUID,
        db: Session,
        creator_id: Optional[uuid.UUID] = None,
    ) -> SubscriptionList:
        query = db.query(Subscription).filter(Subscription.subscriber_id == subscriber_id)
        if creator_id is not None:
            query = query.filter(Subscription.creator_id == creator_id)
        subscriptions = query.order_by(Subscription.created_at.desc()).all()
        return SubscriptionList(
            subscriptions=[to_snapshot(s) for s in subscriptions],
            total=len(subscriptions),
        )

    def get_my_creators(self, subscriber_id: uuid.UUID, db: Session) -> SubscriptionList:
        """Active creator subscriptions of the subscriber, newest first."""
        subscriptions = (
            db.query(Subscription)
            .filter(
                Subscription.subscriber_id == subscriber_id,
                Subscription.creator_id.isnot(None),
                Subscription.status == SubscriptionStatus.ACTIVE,
            )
            .order_by(Subscription.created_at.desc())
            .all()
        )
        return SubscriptionList(
            subscriptions=[to_snapshot(s) for s in subscriptions],
            total=len(subscriptions),
        )

    def get_creator_subscribers(
        self,
        creator_id: uuid.UUID,
        db: Session,
        page: int = 1,
        limit: int = 20,
    ) -> SubscriberPage:
        """Active subscriptions to a creator, newest first."""
        query = db.query(Subscription).filter(
            Subscription.creator_id == creator_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
        )
        total = query.count()
        subscriptions = (
            query.order_by(Subscription.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return SubscriberPage(
            subscriptions=[to_snapshot(s) for s in subscriptions],
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                pages=math.ceil(total / limit) if limit else 0,
            ),
        )

    def get_subscription_analytics(
        self,
        creator_id: uuid.UUID,
        db: Session,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> SubscriptionAnalytics:
        """
        Counts over the creator's subscriptions created in ``[start, end)``.

        Churn rate is the canceled share of those subscriptions in percent.
        """
        if start is not None and end is not None and start >= end:
            raise ValueError(f"Invalid analytics window: {start} >= {end}")

        query = db.query(Subscription).filter(Subscription.creator_id == creator_id)
        if start is not None:
            query = query.filter(Subscription.created_at >= start)
        if end is not None:
            query = query.filter(Subscription.created_at < end)

        analytics = SubscriptionAnalytics(creator_id=creator_id, period_start=start, period_end=end)
        for subscription in query.all():
            analytics.total_subscriptions += 1
            if subscription.status == SubscriptionStatus.ACTIVE:
                analytics.active_subscriptions += 1
                tier = subscription.tier
                analytics.active_by_tier[tier] = analytics.active_by_tier.get(tier, 0) + 1
            elif subscription.status == SubscriptionStatus.CANCELED:
                analytics.canceled_subscriptions += 1

        if analytics.total_subscriptions:
            analytics.churn_rate = round(
                analytics.canceled_subscriptions / analytics.total_subscriptions * 100, 2
            )
        return analytics

    def check_access(
        self,
        subscriber_id: uuid.UUID,
        creator_id: Optional[uuid.UUID],
        tier: str,
        db: Session,
    ) -> AccessCheckResponse:
        return access_evaluator.check(db, subscriber_id, creator_id, tier)

    def list_tiers(self) -> List[TierInfo]:
        """All tiers in hierarchy order."""
        return [
            TierInfo(
                tier=tier,
                level=level,
                name=TIER_DISPLAY[tier]["name"],
                description=TIER_DISPLAY[tier]["description"],
                unlocks=tiers_unlocked_by(tier),
            )
            for tier, level in sorted(TIER_HIERARCHY.items(), key=lambda item: item[1])
        ]


# Global service instance
subscription_service = SubscriptionService()
