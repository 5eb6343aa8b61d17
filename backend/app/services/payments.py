"""
Payment service: tips and refunds.

Tips are booked as a pending ledger entry keyed by the Stripe payment
intent id; the ``payment_intent.succeeded`` webhook settles it. Refunds
reserve the amount in the ledger first (the conditional update is what
rejects concurrent over-refunds) and only then call Stripe.
"""
import uuid
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import (
    DuplicateEntryError,
    InvalidStateError,
    OverRefundError,
    PaymentNotFoundError,
    ProviderUnavailableError,
)
from app.models import PaymentKind, PaymentOutcome
from app.schemas import (
    LedgerEntryCreate,
    PaymentDetail,
    PaymentHistory,
    PaymentIntentResponse,
    RefundRequest,
    RevenueSummary,
    TipRequest,
)
from app.services.billing_provider import billing_client
from app.services.ledger import REFUNDABLE_OUTCOMES, payment_ledger
import logging

logger = logging.getLogger(__name__)


class PaymentService:
    """Service for one-off payments and refunds."""

    def _currency(self, currency: Optional[str]) -> str:
        currency = (currency or settings.default_currency).lower()
        if currency not in settings.supported_currencies:
            raise ValueError(f"Unsupported currency: {currency}")
        return currency

    def create_tip(self, subscriber_id: uuid.UUID, request: TipRequest, db: Session) -> PaymentIntentResponse:
        """
        Create a payment intent for a tip and book it as pending.

        Raises:
            ValueError: If the amount is below the minimum or the currency
                is not supported
            ProviderUnavailableError: If Stripe could not create the intent
        """
        if request.amount < settings.min_tip_amount:
            raise ValueError(f"Minimum tip amount is {settings.min_tip_amount}")
        currency = self._currency(request.currency)

        metadata = {
            "type": PaymentKind.TIP.value,
            "subscriber_id": str(subscriber_id),
            "creator_id": str(request.creator_id),
        }
        intent = billing_client.create_payment_intent(request.amount, currency, metadata)

        entry = LedgerEntryCreate(
            provider_payment_ref=intent.id,
            subscriber_id=subscriber_id,
            creator_id=request.creator_id,
            kind=PaymentKind.TIP,
            outcome=PaymentOutcome.PENDING,
            amount=request.amount,
            currency=currency,
            description=request.message or "Tip",
            metadata={"message": request.message} if request.message else {},
        )
        try:
            payment = payment_ledger.append(db, entry)
        except DuplicateEntryError:
            # The webhook already booked this intent
            payment = payment_ledger.get_by_ref(db, intent.id)

        logger.info(f"Tip {payment.id} of {request.amount} {currency} from {subscriber_id} to {request.creator_id}")
        return PaymentIntentResponse(
            payment_id=payment.id,
            payment_intent_id=intent.id,
            client_secret=intent.client_secret,
        )

    def request_refund(
        self,
        subscriber_id: uuid.UUID,
        payment_id: uuid.UUID,
        request: RefundRequest,
        db: Session,
    ) -> PaymentDetail:
        """
        Refund (part of) a subscriber's payment.

        Raises:
            OverRefundError: If the refund exceeds what is left to refund
            InvalidStateError: If the payment never succeeded
            ProviderUnavailableError: If Stripe rejected or did not answer
        """
        payment = payment_ledger.get(db, payment_id)
        if payment.subscriber_id != subscriber_id:
            raise PaymentNotFoundError(f"Payment not found: {payment_id}")
        if payment.outcome not in REFUNDABLE_OUTCOMES:
            raise InvalidStateError(
                f"Only succeeded payments can be refunded (outcome={payment.outcome.value})"
            )

        amount = request.amount or payment.refundable_amount
        if amount <= 0 or amount > payment.refundable_amount:
            raise OverRefundError(
                f"Refund of {amount} exceeds remaining balance of {payment.refundable_amount}"
            )

        payment = payment_ledger.refund(db, payment_id, amount, reason=request.reason)
        provider_payment_ref = payment.provider_payment_ref
        refunded_total = payment.refunded_amount

        try:
            billing_client.create_refund(provider_payment_ref, amount, request.reason)
        except ProviderUnavailableError as e:
            if e.ambiguous:
                # charge.refunded will confirm; the reservation stays
                logger.error(f"Refund of {amount} on {provider_payment_ref} is unconfirmed (total {refunded_total})")
            else:
                payment_ledger.release_refund(db, payment_id, amount)
            raise

        return PaymentDetail.model_validate(payment_ledger.get(db, payment_id))

    def get_payment_history(
        self,
        subscriber_id: uuid.UUID,
        db: Session,
        page: int = 1,
        limit: int = 50,
        kind: Optional[PaymentKind] = None,
    ) -> PaymentHistory:
        return payment_ledger.payment_history(db, subscriber_id, page=page, limit=limit, kind=kind)

    def get_revenue_summary(
        self,
        creator_id: uuid.UUID,
        db: Session,
        start=None,
        end=None,
        currency: Optional[str] = None,
    ) -> RevenueSummary:
        return payment_ledger.revenue_summary(
            db, creator_id, start=start, end=end, currency=self._currency(currency)
        )


# Global service instance
payment_service = PaymentService()
