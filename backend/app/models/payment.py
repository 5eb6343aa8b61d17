"""
Payment ledger model.

One row per provider payment reference. Amounts are integer minor-currency
units. Once an entry has succeeded only refunds may change it.
"""
import uuid
from enum import Enum

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB

from app.core.timeutils import utcnow
from app.db.base import Base


class PaymentKind(str, Enum):
    SUBSCRIPTION_CHARGE = "subscription_charge"
    TIP = "tip"
    ONE_TIME = "one_time"


class PaymentOutcome(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"  # partial or full, see refunded_amount


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Payment(Base):
    """Ledger entry for a single payment attempt and its outcome."""

    __tablename__ = "payments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Idempotency key: payment intent id, or invoice id when no intent exists
    provider_payment_ref = Column(String(255), unique=True, nullable=False, index=True)

    subscriber_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    creator_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    subscription_id = Column(
        UUID(as_uuid=True),
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    stripe_invoice_id = Column(String(255), nullable=True)

    kind = Column(SAEnum(PaymentKind, name="payment_kind", values_callable=_enum_values), nullable=False)
    outcome = Column(
        SAEnum(PaymentOutcome, name="payment_outcome", values_callable=_enum_values),
        nullable=False,
    )

    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    refunded_amount = Column(Integer, nullable=False, default=0)

    description = Column(Text, nullable=True)
    payment_metadata = Column(JSONB, nullable=False, default=dict)

    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
        CheckConstraint(
            "refunded_amount >= 0 AND refunded_amount <= amount",
            name="ck_payments_refund_bounds",
        ),
        Index("ix_payments_creator_outcome", "creator_id", "outcome"),
    )

    @property
    def refundable_amount(self) -> int:
        return self.amount - (self.refunded_amount or 0)

    def __repr__(self):
        return (
            f"<Payment(id={self.id}, ref={self.provider_payment_ref}, kind={self.kind}, "
            f"outcome={self.outcome}, amount={self.amount})>"
        )
