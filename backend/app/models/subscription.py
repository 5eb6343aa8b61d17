"""
Subscription model: one row per (subscriber, creator) subscription relationship.

The row is the source of truth for access decisions. Records are retired by
moving them to ``canceled`` and are never deleted, so the ledger and
analytics keep their history.
"""
import uuid
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB

from app.core.tiers import Tier
from app.core.timeutils import utcnow
from app.db.base import Base

PLATFORM_SCOPE = "platform"


class SubscriptionStatus(str, Enum):
    """Closed set of subscription statuses. ``canceled`` is terminal."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    PAUSED = "paused"
    CANCELED = "canceled"


class BillingCycle(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


# Statuses that still occupy the (subscriber, creator) slot
OPEN_STATUSES = {
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.UNPAID,
    SubscriptionStatus.PAUSED,
}


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


def creator_scope_for(creator_id) -> str:
    """Uniqueness key for the creator side of the pair (NULL means platform-wide)."""
    return str(creator_id) if creator_id else PLATFORM_SCOPE


class Subscription(Base):
    """Subscription model - lifecycle state synchronized with Stripe."""

    __tablename__ = "subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscriber_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    creator_id = Column(UUID(as_uuid=True), nullable=True, index=True)  # NULL = platform-wide tier
    creator_scope = Column(String(64), nullable=False)

    tier = Column(SAEnum(Tier, name="subscription_tier", values_callable=_enum_values), nullable=False)
    status = Column(
        SAEnum(SubscriptionStatus, name="subscription_status", values_callable=_enum_values),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
    )
    billing_cycle = Column(
        SAEnum(BillingCycle, name="billing_cycle", values_callable=_enum_values),
        nullable=False,
        default=BillingCycle.MONTHLY,
    )

    # Stripe integration
    stripe_subscription_id = Column(String(255), unique=True, nullable=True, index=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_price_id = Column(String(255), nullable=True)

    # Billing period, half-open [start, end)
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime, nullable=True)

    # Set when an outbound call timed out and only the webhook can settle the outcome
    pending_reconciliation = Column(Boolean, default=False, nullable=False)

    subscription_metadata = Column(JSONB, nullable=False, default=dict)

    # Optimistic concurrency counter, bumped on every UPDATE
    version = Column(Integer, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "current_period_start < current_period_end",
            name="ck_subscriptions_period_order",
        ),
        # At most one open record per pair, enforced by the database
        Index(
            "uq_subscriptions_open_pair",
            "subscriber_id",
            "creator_scope",
            unique=True,
            postgresql_where=text("status <> 'canceled'"),
            sqlite_where=text("status <> 'canceled'"),
        ),
        Index("ix_subscriptions_status", "status"),
    )

    def __repr__(self):
        return (
            f"<Subscription(id={self.id}, subscriber_id={self.subscriber_id}, "
            f"creator_id={self.creator_id}, tier={self.tier}, status={self.status})>"
        )
