"""
Payment ledger.

Append-mostly store of payment attempts and outcomes. The provider payment
reference is the idempotency key, enforced by a unique constraint. After an
entry succeeds the only permitted change is a refund, applied as a single
conditional UPDATE so concurrent refunds can never exceed the amount.

Aggregations here are read-only projections and never write.
"""
import math
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import case, cast, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import (
    DuplicateEntryError,
    InvalidStateError,
    OverRefundError,
    PaymentNotFoundError,
)
from app.core.timeutils import utcnow
from app.models import Payment, PaymentKind, PaymentOutcome
from app.schemas.payment import (
    LedgerEntryCreate,
    Pagination,
    PaymentDetail,
    PaymentHistory,
    RevenueSummary,
)
import logging

logger = logging.getLogger(__name__)

# Outcome moves the ledger accepts from a provider observation
SETTLE_TRANSITIONS = {
    PaymentOutcome.SUCCEEDED: {PaymentOutcome.PENDING, PaymentOutcome.FAILED},
    PaymentOutcome.FAILED: {PaymentOutcome.PENDING},
}

REFUNDABLE_OUTCOMES = {PaymentOutcome.SUCCEEDED, PaymentOutcome.REFUNDED}


class PaymentLedger:
    """Writes and projections over the payments table."""

    def get(self, db: Session, payment_id: uuid.UUID) -> Payment:
        payment = db.get(Payment, payment_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment not found: {payment_id}")
        return payment

    def get_by_ref(self, db: Session, provider_payment_ref: str) -> Optional[Payment]:
        return (
            db.query(Payment)
            .filter(Payment.provider_payment_ref == provider_payment_ref)
            .first()
        )

    def append(self, db: Session, entry: LedgerEntryCreate, commit: bool = True) -> Payment:
        """
        Append a ledger entry.

        Raises:
            DuplicateEntryError: If the provider payment reference is already
                recorded; ``existing`` holds the recorded entry. ``rolled_back``
                is set when the duplicate was only caught by the database, in
                which case the session was rolled back.
        """
        existing = self.get_by_ref(db, entry.provider_payment_ref)
        if existing is not None:
            raise DuplicateEntryError(entry.provider_payment_ref, existing=existing)

        payment = Payment(
            provider_payment_ref=entry.provider_payment_ref,
            subscriber_id=entry.subscriber_id,
            creator_id=entry.creator_id,
            subscription_id=entry.subscription_id,
            stripe_invoice_id=entry.stripe_invoice_id,
            kind=entry.kind,
            outcome=entry.outcome,
            amount=entry.amount,
            currency=entry.currency.lower(),
            refunded_amount=0,
            description=entry.description,
            payment_metadata=entry.metadata,
            processed_at=entry.processed_at,
        )
        db.add(payment)

        try:
            db.flush()
            if commit:
                db.commit()
        except IntegrityError as e:
            db.rollback()
            raise DuplicateEntryError(
                entry.provider_payment_ref,
                existing=self.get_by_ref(db, entry.provider_payment_ref),
                rolled_back=True,
            ) from e

        logger.info(
            f"Ledger append {entry.provider_payment_ref}: {entry.kind.value} "
            f"{entry.outcome.value} {entry.amount} {entry.currency}"
        )
        return payment

    def settle(
        self,
        db: Session,
        provider_payment_ref: str,
        outcome: PaymentOutcome,
        commit: bool = True,
    ) -> Optional[Payment]:
        """
        Advance an existing entry's outcome (pending -> succeeded/failed,
        failed -> succeeded). Entries that already succeeded are left alone.
        """
        allowed_from = SETTLE_TRANSITIONS.get(outcome)
        if not allowed_from:
            raise ValueError(f"Cannot settle a payment as {outcome.value}")

        result = db.execute(
            update(Payment)
            .where(
                Payment.provider_payment_ref == provider_payment_ref,
                Payment.outcome.in_(allowed_from),
            )
            .values(outcome=outcome, processed_at=utcnow(), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if commit:
            db.commit()

        payment = self.get_by_ref(db, provider_payment_ref)
        if payment is not None:
            db.refresh(payment)
            if result.rowcount:
                logger.info(f"Ledger settle {provider_payment_ref}: -> {outcome.value}")
            else:
                logger.info(
                    f"Ledger settle {provider_payment_ref} to {outcome.value} skipped "
                    f"(current outcome {payment.outcome.value})"
                )
        return payment

    def refund(
        self,
        db: Session,
        payment_id: uuid.UUID,
        amount: int,
        reason: Optional[str] = None,
        commit: bool = True,
    ) -> Payment:
        """
        Record a (partial) refund against a succeeded entry.

        Raises:
            OverRefundError: If ``amount`` plus what is already refunded exceeds
                the original amount.
            InvalidStateError: If the entry never succeeded.
        """
        if amount <= 0:
            raise ValueError("Refund amount must be positive")

        payment = self.get(db, payment_id)
        if payment.outcome not in REFUNDABLE_OUTCOMES:
            raise InvalidStateError(
                f"Only succeeded payments can be refunded (outcome={payment.outcome.value})"
            )

        result = db.execute(
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.outcome.in_(REFUNDABLE_OUTCOMES),
                Payment.refunded_amount + amount <= Payment.amount,
            )
            .values(
                refunded_amount=Payment.refunded_amount + amount,
                outcome=PaymentOutcome.REFUNDED,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            db.rollback()
            payment = self.get(db, payment_id)
            raise OverRefundError(
                f"Refund of {amount} exceeds remaining balance "
                f"({payment.refunded_amount} of {payment.amount} already refunded)"
            )

        db.refresh(payment)
        if reason:
            payment.payment_metadata = {**(payment.payment_metadata or {}), "refund_reason": reason}
        db.flush()
        if commit:
            db.commit()

        logger.info(
            f"Ledger refund {payment.provider_payment_ref}: {amount} "
            f"(total refunded {payment.refunded_amount} of {payment.amount})"
        )
        return payment

    def release_refund(
        self,
        db: Session,
        payment_id: uuid.UUID,
        amount: int,
        commit: bool = True,
    ) -> Payment:
        """
        Give back a refund reservation whose provider call was rejected.

        Only used when the provider definitely did not refund; an entry whose
        refunded total drops back to zero returns to ``succeeded``.
        """
        if amount <= 0:
            raise ValueError("Refund amount must be positive")

        result = db.execute(
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.outcome == PaymentOutcome.REFUNDED,
                Payment.refunded_amount >= amount,
            )
            .values(
                refunded_amount=Payment.refunded_amount - amount,
                outcome=cast(
                    case(
                        (Payment.refunded_amount == amount, PaymentOutcome.SUCCEEDED.value),
                        else_=PaymentOutcome.REFUNDED.value,
                    ),
                    Payment.outcome.type,
                ),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            raise InvalidStateError(f"Payment {payment_id} has no refund of {amount} to release")

        if commit:
            db.commit()
        payment = self.get(db, payment_id)
        db.refresh(payment)
        logger.warning(
            f"Ledger refund released on {payment.provider_payment_ref}: {amount} "
            f"(total refunded {payment.refunded_amount})"
        )
        return payment

    def sync_provider_refund(
        self,
        db: Session,
        provider_payment_ref: str,
        total_refunded: int,
        commit: bool = True,
    ) -> Optional[Payment]:
        """
        Raise the refunded total to the provider-reported absolute value.

        Never lowers it, so replays and out-of-order refund events are no-ops.
        A refunded charge has necessarily succeeded, so a pending or failed
        entry is settled first; the success event arriving afterwards then
        finds nothing to change. Returns None when the payment is unknown
        locally.
        """
        payment = self.get_by_ref(db, provider_payment_ref)
        if payment is None:
            return None
        if total_refunded > payment.amount:
            raise OverRefundError(
                f"Provider reports {total_refunded} refunded on {provider_payment_ref} "
                f"but the entry is for {payment.amount}"
            )
        if payment.outcome not in REFUNDABLE_OUTCOMES:
            payment = self.settle(db, provider_payment_ref, PaymentOutcome.SUCCEEDED, commit=False)

        result = db.execute(
            update(Payment)
            .where(
                Payment.id == payment.id,
                Payment.outcome.in_(REFUNDABLE_OUTCOMES),
                Payment.refunded_amount < total_refunded,
            )
            .values(
                refunded_amount=total_refunded,
                outcome=PaymentOutcome.REFUNDED,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if commit:
            db.commit()
        db.refresh(payment)

        if result.rowcount:
            logger.info(f"Ledger refund sync {provider_payment_ref}: refunded total {total_refunded}")
        return payment

    # ------------------------------------------------------------------
    # Read-only projections
    # ------------------------------------------------------------------

    def payment_history(
        self,
        db: Session,
        subscriber_id: uuid.UUID,
        page: int = 1,
        limit: int = 50,
        kind: Optional[PaymentKind] = None,
    ) -> PaymentHistory:
        query = db.query(Payment).filter(Payment.subscriber_id == subscriber_id)
        if kind is not None:
            query = query.filter(Payment.kind == kind)

        total = query.count()
        payments = (
            query.order_by(Payment.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )

        return PaymentHistory(
            payments=[PaymentDetail.model_validate(p) for p in payments],
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                pages=math.ceil(total / limit) if limit else 0,
            ),
        )

    def revenue_summary(
        self,
        db: Session,
        creator_id: uuid.UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        currency: Optional[str] = None,
    ) -> RevenueSummary:
        """Revenue attributed to a creator, grouped by payment kind."""
        currency = (currency or settings.default_currency).lower()

        query = db.query(
            Payment.kind,
            func.count(Payment.id),
            func.coalesce(func.sum(Payment.amount), 0),
            func.coalesce(func.sum(Payment.refunded_amount), 0),
        ).filter(
            Payment.creator_id == creator_id,
            Payment.currency == currency,
            Payment.outcome.in_(REFUNDABLE_OUTCOMES),
        )
        if start is not None:
            query = query.filter(Payment.created_at >= start)
        if end is not None:
            query = query.filter(Payment.created_at < end)

        summary = RevenueSummary(
            creator_id=creator_id,
            currency=currency,
            period_start=start,
            period_end=end,
        )
        for kind, count, gross, refunded in query.group_by(Payment.kind).all():
            count, gross, refunded = int(count), int(gross), int(refunded)
            summary.total_payments += count
            summary.gross_revenue += gross
            summary.refunded += refunded
            if kind == PaymentKind.SUBSCRIPTION_CHARGE:
                summary.subscription_revenue += gross
                summary.subscription_count += count
            elif kind == PaymentKind.TIP:
                summary.tip_revenue += gross
                summary.tip_count += count
            else:
                summary.one_time_revenue += gross
                summary.one_time_count += count

        summary.net_revenue = summary.gross_revenue - summary.refunded
        if summary.total_payments:
            summary.average_payment = summary.gross_revenue // summary.total_payments
        return summary


# Global ledger instance
payment_ledger = PaymentLedger()
