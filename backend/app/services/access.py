"""
Tier access evaluation.

``has_access`` is a pure function over a locally synchronized subscription
snapshot; it never calls the billing provider, so it is safe on every
content request.
"""
import uuid
from typing import Optional, Union

from sqlalchemy.orm import Session

from app.core.tiers import Tier, parse_tier, tier_covers
from app.models import SubscriptionStatus
from app.schemas.subscription import AccessCheckResponse, SubscriptionSnapshot
from app.services.lifecycle import lifecycle_controller, to_snapshot


def has_access(subscription: Optional[SubscriptionSnapshot], requested_tier: Union[str, Tier]) -> bool:
    """
    True iff the subscription is active and its tier covers ``requested_tier``.

    A pending cancel-at-period-end keeps access until the provider ends the
    period. Any other status revokes access immediately, whatever time is
    left in the period.
    """
    if subscription is None:
        return False
    if subscription.status != SubscriptionStatus.ACTIVE:
        return False
    return tier_covers(subscription.tier, requested_tier)


class AccessEvaluator:
    """Answers access queries from the subscription store."""

    def check(
        self,
        db: Session,
        subscriber_id: uuid.UUID,
        creator_id: Optional[uuid.UUID],
        requested_tier: Union[str, Tier],
    ) -> AccessCheckResponse:
        """
        Check a subscriber's access to a creator's content at a tier.

        A platform-wide subscription is consulted when the creator-specific
        record does not grant access.
        """
        requested_tier = parse_tier(requested_tier)
        candidates = [creator_id] if creator_id is None else [creator_id, None]

        for candidate in candidates:
            record = lifecycle_controller.find_open(db, subscriber_id, candidate)
            if record is None:
                continue
            snapshot = to_snapshot(record)
            if has_access(snapshot, requested_tier):
                return AccessCheckResponse(
                    tier=requested_tier,
                    creator_id=creator_id,
                    has_access=True,
                    subscription_id=snapshot.id,
                )

        return AccessCheckResponse(tier=requested_tier, creator_id=creator_id, has_access=False)


# Global evaluator instance
access_evaluator = AccessEvaluator()
