"""
Subscription lifecycle controller.

State machine over the closed status set::

    active --cancel(immediate)--> canceled
    active --cancel(period end)--> active + cancel_at_period_end
    canceled | past_due --reactivate--> active
    active --change_tier--> active (new tier)
    * --apply_provider_status--> any (provider is authoritative)

``canceled`` is terminal for provider updates: a late non-canceled snapshot
never resurrects it. Only ``apply_provider_status`` may move a record into
``past_due``, ``unpaid`` or ``paused``.

Every transition is a single read-modify-write guarded by the record's
version column. A lost race is retried once (re-read, re-validate,
re-apply); if the precondition no longer holds the caller gets
StaleStateError.
"""
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.errors import (
    ConflictError,
    InvalidStateError,
    StaleStateError,
    SubscriptionNotFoundError,
)
from app.core.tiers import Tier, parse_tier
from app.core.timeutils import add_months, add_weeks, utcnow
from app.models import (
    BillingCycle,
    Subscription,
    SubscriptionStatus,
    creator_scope_for,
)
from app.schemas.subscription import ProviderPeriod, SubscriptionSnapshot
import logging

logger = logging.getLogger(__name__)

REACTIVATABLE_STATUSES = {SubscriptionStatus.CANCELED, SubscriptionStatus.PAST_DUE}


def compute_period(start: datetime, billing_cycle: BillingCycle) -> Tuple[datetime, datetime]:
    """Locally computed period bounds for a billing cycle starting at ``start``."""
    if billing_cycle == BillingCycle.WEEKLY:
        return start, add_weeks(start, 1)
    if billing_cycle == BillingCycle.YEARLY:
        return start, add_months(start, 12)
    return start, add_months(start, 1)


def _truncate_period(subscription: Subscription, at: datetime) -> None:
    """End the current period at ``at`` while keeping start < end."""
    if at <= subscription.current_period_start:
        at = subscription.current_period_start + timedelta(microseconds=1)
    subscription.current_period_end = at


def to_snapshot(subscription: Subscription) -> SubscriptionSnapshot:
    return SubscriptionSnapshot.model_validate(subscription)


def ensure_cancellable(subscription: Subscription, immediate: bool) -> None:
    """
    Raise InvalidStateError unless ``cancel(immediate)`` is legal.

    Immediate cancellation is allowed from any open status; cancelling at
    period end only from a plain active record.
    """
    if subscription.status == SubscriptionStatus.CANCELED:
        raise InvalidStateError(f"Subscription {subscription.id} is already canceled")
    if immediate:
        return
    if subscription.status != SubscriptionStatus.ACTIVE:
        raise InvalidStateError(
            f"Only active subscriptions can be canceled at period end "
            f"(status={subscription.status.value})"
        )
    if subscription.cancel_at_period_end:
        raise InvalidStateError(f"Subscription {subscription.id} is already set to cancel at period end")


def ensure_tier_changeable(subscription: Subscription) -> None:
    if subscription.status != SubscriptionStatus.ACTIVE:
        raise InvalidStateError(
            f"Only active subscriptions can change tier (status={subscription.status.value})"
        )


class LifecycleController:
    """Applies lifecycle transitions to subscription records."""

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, db: Session, subscription_id: uuid.UUID) -> Subscription:
        subscription = db.get(Subscription, subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Subscription not found: {subscription_id}")
        return subscription

    def find_open(
        self,
        db: Session,
        subscriber_id: uuid.UUID,
        creator_id: Optional[uuid.UUID],
    ) -> Optional[Subscription]:
        """Return the non-canceled record for the pair, if any."""
        return (
            db.query(Subscription)
            .filter(
                Subscription.subscriber_id == subscriber_id,
                Subscription.creator_scope == creator_scope_for(creator_id),
                Subscription.status != SubscriptionStatus.CANCELED,
            )
            .first()
        )

    def find_by_external_ref(self, db: Session, external_ref: str) -> Optional[Subscription]:
        return (
            db.query(Subscription)
            .filter(Subscription.stripe_subscription_id == external_ref)
            .first()
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def create(
        self,
        db: Session,
        subscriber_id: uuid.UUID,
        creator_id: Optional[uuid.UUID],
        tier: Union[str, Tier],
        external_ref: Optional[str] = None,
        *,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        period: Optional[ProviderPeriod] = None,
        customer_ref: Optional[str] = None,
        price_ref: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        commit: bool = True,
    ) -> SubscriptionSnapshot:
        """
        Insert a new active subscription for the pair.

        Raises:
            ConflictError: If an open record already exists for the pair. The
                partial unique index makes this hold under concurrent creates.
        """
        tier = parse_tier(tier)

        if self.find_open(db, subscriber_id, creator_id) is not None:
            raise ConflictError(
                f"An open subscription already exists for subscriber {subscriber_id} "
                f"and creator {creator_id or 'platform'}"
            )

        if period is not None:
            start, end = period.start, period.end
        else:
            start, end = compute_period(utcnow(), billing_cycle)
        if start >= end:
            raise ValueError(f"Invalid billing period: {start} >= {end}")

        subscription = Subscription(
            subscriber_id=subscriber_id,
            creator_id=creator_id,
            creator_scope=creator_scope_for(creator_id),
            tier=tier,
            status=SubscriptionStatus.ACTIVE,
            billing_cycle=billing_cycle,
            stripe_subscription_id=external_ref,
            stripe_customer_id=customer_ref,
            stripe_price_id=price_ref,
            current_period_start=start,
            current_period_end=end,
            cancel_at_period_end=False,
            subscription_metadata=metadata or {},
        )
        db.add(subscription)

        try:
            db.flush()
            if commit:
                db.commit()
        except IntegrityError as e:
            db.rollback()
            raise ConflictError(
                f"An open subscription already exists for subscriber {subscriber_id} "
                f"and creator {creator_id or 'platform'}"
            ) from e

        logger.info(
            f"Created subscription {subscription.id} for subscriber {subscriber_id} "
            f"(creator={creator_id or 'platform'}, tier={tier.value})"
        )
        return to_snapshot(subscription)

    def cancel(
        self,
        db: Session,
        subscription_id: uuid.UUID,
        immediate: bool = False,
        commit: bool = True,
    ) -> SubscriptionSnapshot:
        """
        Cancel a subscription.

        Immediate cancellation ends the period now and revokes access on the
        next read. Otherwise the record stays active with
        ``cancel_at_period_end`` set until the provider reports the end.
        """

        def mutate(subscription: Subscription) -> None:
            ensure_cancellable(subscription, immediate)

            now = utcnow()
            if immediate:
                subscription.status = SubscriptionStatus.CANCELED
                subscription.canceled_at = now
                subscription.cancel_at_period_end = False
                _truncate_period(subscription, now)
                return

            subscription.cancel_at_period_end = True
            subscription.canceled_at = now

        action = "cancel_immediate" if immediate else "cancel_at_period_end"
        return self._transition(db, subscription_id, mutate, action, commit)

    def reactivate(
        self,
        db: Session,
        subscription_id: uuid.UUID,
        commit: bool = True,
    ) -> SubscriptionSnapshot:
        """
        Bring a canceled or past-due subscription back to active.

        Paused subscriptions are lifted through the provider, not here.

        A Stripe-linked record is also flagged for reconciliation: Stripe is
        not asked to restart billing, so the reconciliation sweep reverts the
        record if the remote subscription stays canceled.
        """

        def mutate(subscription: Subscription) -> None:
            if subscription.status not in REACTIVATABLE_STATUSES:
                raise InvalidStateError(
                    f"Cannot reactivate subscription in status {subscription.status.value}"
                )
            start, end = compute_period(utcnow(), subscription.billing_cycle)
            subscription.status = SubscriptionStatus.ACTIVE
            subscription.cancel_at_period_end = False
            subscription.canceled_at = None
            subscription.current_period_start = start
            subscription.current_period_end = end
            if subscription.stripe_subscription_id:
                subscription.pending_reconciliation = True

        return self._transition(db, subscription_id, mutate, "reactivate", commit)

    def change_tier(
        self,
        db: Session,
        subscription_id: uuid.UUID,
        tier: Union[str, Tier],
        price_ref: Optional[str] = None,
        commit: bool = True,
    ) -> SubscriptionSnapshot:
        """
        Move an active subscription to another tier.

        Status and period are untouched; Stripe prorates the change on the
        next invoice. Changing to the current tier and price is a no-op.
        """
        tier = parse_tier(tier)

        def mutate(subscription: Subscription) -> None:
            ensure_tier_changeable(subscription)
            subscription.tier = tier
            if price_ref:
                subscription.stripe_price_id = price_ref

        return self._transition(db, subscription_id, mutate, "change_tier", commit)

    def apply_provider_status(
        self,
        db: Session,
        subscription_id: uuid.UUID,
        new_status: SubscriptionStatus,
        period: Optional[ProviderPeriod] = None,
        *,
        cancel_at_period_end: Optional[bool] = None,
        canceled_at: Optional[datetime] = None,
        tier: Optional[Tier] = None,
        price_ref: Optional[str] = None,
        commit: bool = True,
    ) -> SubscriptionSnapshot:
        """
        Overwrite status and period with the provider's authoritative snapshot.

        Only the event reconciler calls this. Applying the same snapshot twice
        leaves the record unchanged.

        ``tier`` and ``price_ref`` come from the snapshot's metadata and item;
        when absent the locally recorded tier stands.
        """
        if period is not None and period.start >= period.end:
            raise ValueError(f"Invalid provider period: {period.start} >= {period.end}")

        def mutate(subscription: Subscription) -> None:
            if (
                subscription.status == SubscriptionStatus.CANCELED
                and new_status != SubscriptionStatus.CANCELED
            ):
                logger.warning(
                    f"Ignoring provider status {new_status.value} for canceled "
                    f"subscription {subscription.id}"
                )
                return

            subscription.status = new_status
            if period is not None:
                subscription.current_period_start = period.start
                subscription.current_period_end = period.end
            if cancel_at_period_end is not None:
                subscription.cancel_at_period_end = cancel_at_period_end
            if tier is not None:
                subscription.tier = tier
            if price_ref:
                subscription.stripe_price_id = price_ref

            if new_status == SubscriptionStatus.CANCELED:
                subscription.canceled_at = canceled_at or subscription.canceled_at or utcnow()
            elif new_status == SubscriptionStatus.ACTIVE and subscription.cancel_at_period_end:
                subscription.canceled_at = canceled_at or subscription.canceled_at or utcnow()
            else:
                subscription.canceled_at = None

            subscription.pending_reconciliation = False

        return self._transition(db, subscription_id, mutate, "apply_provider_status", commit)

    def mark_pending_reconciliation(
        self,
        db: Session,
        subscription_id: uuid.UUID,
        commit: bool = True,
    ) -> SubscriptionSnapshot:
        """Flag a record whose outbound call outcome is unknown."""

        def mutate(subscription: Subscription) -> None:
            subscription.pending_reconciliation = True

        return self._transition(db, subscription_id, mutate, "mark_pending_reconciliation", commit)

    def attach_external_ref(
        self,
        db: Session,
        subscription_id: uuid.UUID,
        external_ref: str,
        customer_ref: Optional[str] = None,
        commit: bool = True,
    ) -> SubscriptionSnapshot:
        def mutate(subscription: Subscription) -> None:
            if subscription.stripe_subscription_id and subscription.stripe_subscription_id != external_ref:
                raise InvalidStateError(
                    f"Subscription {subscription.id} is already linked to "
                    f"{subscription.stripe_subscription_id}"
                )
            subscription.stripe_subscription_id = external_ref
            if customer_ref:
                subscription.stripe_customer_id = customer_ref

        return self._transition(db, subscription_id, mutate, "attach_external_ref", commit)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(
        self,
        db: Session,
        subscription_id: uuid.UUID,
        mutate: Callable[[Subscription], None],
        action: str,
        commit: bool,
    ) -> SubscriptionSnapshot:
        """
        Run ``mutate`` as one optimistic read-modify-write.

        With ``commit=False`` the caller owns the transaction; a lost race
        rolls the session back and raises StaleStateError so the caller can
        retry its whole unit of work.
        """
        for attempt in range(2):
            subscription = db.get(Subscription, subscription_id, populate_existing=attempt > 0)
            if subscription is None:
                raise SubscriptionNotFoundError(f"Subscription not found: {subscription_id}")

            previous_status = subscription.status
            try:
                mutate(subscription)
            except InvalidStateError as e:
                if attempt > 0:
                    raise StaleStateError(
                        f"Subscription {subscription_id} changed concurrently: {e.message}"
                    ) from e
                raise

            try:
                db.flush()
                if commit:
                    db.commit()
            except StaleDataError as e:
                db.rollback()
                if attempt > 0 or not commit:
                    raise StaleStateError(
                        f"Subscription {subscription_id} was modified concurrently during {action}"
                    ) from e
                logger.warning(f"Lost update race on subscription {subscription_id} ({action}), retrying")
                continue
            except IntegrityError as e:
                db.rollback()
                raise ConflictError(
                    f"{action} on subscription {subscription_id} conflicts with another open subscription"
                ) from e

            logger.info(
                f"Subscription {subscription_id} {action}: "
                f"{previous_status.value} -> {subscription.status.value}"
            )
            return to_snapshot(subscription)

        raise StaleStateError(f"Subscription {subscription_id} was modified concurrently during {action}")


# Global controller instance
lifecycle_controller = LifecycleController()
