"""
Provider event reconciler.

Consumes signature-verified Stripe webhook events and maps them onto
lifecycle transitions and ledger appends. Delivery is at-least-once, so:

- every event id is claimed in ``processed_events`` in the same transaction
  as its effects; a redelivery returns the stored ack without reapplying;
- subscription events carry the provider's full current state and are
  applied as authoritative snapshots, which makes them order-insensitive;
- ledger writes rely on the payment reference uniqueness, not event order;
  a refund that names a payment not booked yet is left unclaimed
  (EventNotReadyError) so the provider redelivers it later.
"""
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ConflictError, DuplicateEntryError, EventNotReadyError, StaleStateError
from app.core.tiers import Tier, parse_tier
from app.core.timeutils import from_epoch, utcnow
from app.models import (
    BillingCycle,
    PaymentKind,
    PaymentOutcome,
    ProcessedEvent,
    Subscription,
    SubscriptionStatus,
)
from app.schemas.events import (
    INVOICE_SUCCESS_KINDS,
    SUBSCRIPTION_SNAPSHOT_KINDS,
    AckOutcome,
    CheckoutSessionObject,
    EventAck,
    EventKind,
    ProviderEvent,
    SubscriptionObject,
    decode_event,
    map_provider_status,
)
from app.schemas.payment import LedgerEntryCreate
from app.schemas.subscription import ProviderPeriod
from app.services.ledger import payment_ledger
from app.services.lifecycle import lifecycle_controller
import logging

logger = logging.getLogger(__name__)

# Lost races that are resolved by re-running the whole unit of work
RETRYABLE_ERRORS = (IntegrityError, StaleStateError, ConflictError, DuplicateEntryError)

# payment_intent metadata "type" values that are booked directly
DIRECT_PAYMENT_KINDS = {
    "tip": PaymentKind.TIP,
    "one_time": PaymentKind.ONE_TIME,
}

Outcome = Tuple[AckOutcome, Optional[str]]


def _parse_uuid(value: Any) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _snapshot_tier(metadata: Dict[str, Any]) -> Optional[Tier]:
    """Tier stamped on the remote subscription, if it names a known one."""
    value = metadata.get("tier")
    if not value:
        return None
    try:
        return parse_tier(str(value))
    except ValueError:
        logger.warning(f"Ignoring unknown tier {value!r} in subscription metadata")
        return None


class EventReconciler:
    """Idempotent ingestion of provider events."""

    def record_provider_event(self, db: Session, raw: Union[bytes, str, Dict[str, Any]]) -> EventAck:
        """Decode a raw (already verified) webhook payload and ingest it."""
        return self.ingest(db, decode_event(raw))

    def ingest(self, db: Session, event: ProviderEvent) -> EventAck:
        """
        Apply an event exactly once.

        Returns the stored ack with ``replayed=True`` when the event id was
        already processed, including when a concurrent delivery of the same
        event wins the claim.
        """
        prior = self._lookup(db, event.id)
        if prior is not None:
            logger.info(f"Duplicate delivery of event {event.id} ({event.type}), returning prior ack")
            return prior

        for attempt in range(2):
            try:
                return self._ingest_once(db, event)
            except RETRYABLE_ERRORS as e:
                db.rollback()

                prior = self._lookup(db, event.id)
                if prior is not None:
                    logger.info(f"Event {event.id} was processed by a concurrent delivery")
                    return prior
                if attempt > 0:
                    raise
                logger.warning(f"Lost race while ingesting event {event.id} ({type(e).__name__}), retrying")
            except Exception:
                db.rollback()
                raise

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lookup(self, db: Session, event_id: str) -> Optional[EventAck]:
        record = db.get(ProcessedEvent, event_id, populate_existing=True)
        if record is None:
            return None
        return EventAck(
            event_id=record.event_id,
            event_type=record.event_type,
            outcome=AckOutcome(record.outcome),
            detail=record.detail,
            replayed=True,
        )

    def _ingest_once(self, db: Session, event: ProviderEvent) -> EventAck:
        now = utcnow()
        claim = ProcessedEvent(
            event_id=event.id,
            event_type=event.type,
            outcome=AckOutcome.IGNORED.value,
            processed_at=now,
            expires_at=now + timedelta(hours=settings.webhook_dedup_retention_hours),
        )
        db.add(claim)
        db.flush()

        outcome, detail = self._apply(db, event)

        claim.outcome = outcome.value
        claim.detail = detail
        db.commit()

        if outcome == AckOutcome.APPLIED:
            logger.info(f"Applied event {event.id} ({event.type}): {detail}")
        else:
            logger.warning(f"Event {event.id} ({event.type}) {outcome.value}: {detail}")

        return EventAck(event_id=event.id, event_type=event.type, outcome=outcome, detail=detail)

    def _apply(self, db: Session, event: ProviderEvent) -> Outcome:
        if event.kind == EventKind.UNKNOWN:
            return AckOutcome.IGNORED, f"unhandled event type {event.type}"
        if event.payload is None:
            return AckOutcome.IGNORED, f"malformed payload: {event.decode_error}"

        if event.kind in SUBSCRIPTION_SNAPSHOT_KINDS or event.kind == EventKind.SUBSCRIPTION_DELETED:
            return self._apply_subscription_snapshot(db, event)
        if event.kind == EventKind.CHECKOUT_COMPLETED:
            return self._apply_checkout_completed(db, event)
        if event.kind in INVOICE_SUCCESS_KINDS:
            return self._apply_invoice(db, event, PaymentOutcome.SUCCEEDED)
        if event.kind == EventKind.INVOICE_PAYMENT_FAILED:
            return self._apply_invoice(db, event, PaymentOutcome.FAILED)
        if event.kind == EventKind.PAYMENT_SUCCEEDED:
            return self._apply_payment_intent(db, event, PaymentOutcome.SUCCEEDED)
        if event.kind == EventKind.PAYMENT_FAILED:
            return self._apply_payment_intent(db, event, PaymentOutcome.FAILED)
        if event.kind == EventKind.CHARGE_REFUNDED:
            return self._apply_charge_refunded(db, event)

        return AckOutcome.IGNORED, f"no handler for {event.type}"

    # Subscriptions ----------------------------------------------------

    def _apply_subscription_snapshot(self, db: Session, event: ProviderEvent) -> Outcome:
        obj: SubscriptionObject = event.payload
        deleted = event.kind == EventKind.SUBSCRIPTION_DELETED

        status = SubscriptionStatus.CANCELED if deleted else map_provider_status(obj.status)
        if status is None:
            return AckOutcome.IGNORED, f"unmapped provider status {obj.status!r} for {obj.id}"

        period = obj.period()
        if period is not None and period.start >= period.end:
            logger.warning(f"Dropping invalid provider period on {obj.id}: {period.start} >= {period.end}")
            period = None

        record = lifecycle_controller.find_by_external_ref(db, obj.id)
        if record is None:
            if deleted:
                return AckOutcome.ORPHANED, f"no local subscription for {obj.id}"
            record, reason = self._adopt(db, obj.id, obj.metadata, obj.customer_ref, obj.price_ref, period)
            if record is None:
                if reason is not None:
                    return AckOutcome.IGNORED, reason
                return AckOutcome.ORPHANED, f"no local subscription for {obj.id}"

        if deleted:
            end = from_epoch(obj.ended_at) or utcnow()
            start = record.current_period_start
            if end <= start:
                end = start + timedelta(microseconds=1)
            period = ProviderPeriod(start=start, end=end)

        snapshot = lifecycle_controller.apply_provider_status(
            db,
            record.id,
            status,
            period,
            cancel_at_period_end=False if deleted else obj.cancel_at_period_end,
            canceled_at=from_epoch(obj.canceled_at),
            tier=_snapshot_tier(obj.metadata),
            price_ref=obj.price_ref,
            commit=False,
        )
        return AckOutcome.APPLIED, f"subscription {snapshot.id} is {snapshot.status.value}"

    def _apply_checkout_completed(self, db: Session, event: ProviderEvent) -> Outcome:
        session: CheckoutSessionObject = event.payload
        if session.mode != "subscription" or not session.subscription_ref:
            return AckOutcome.IGNORED, f"checkout session {session.id} is not a subscription checkout"

        existing = lifecycle_controller.find_by_external_ref(db, session.subscription_ref)
        if existing is not None:
            return AckOutcome.APPLIED, f"subscription {existing.id} already recorded"

        record, reason = self._adopt(db, session.subscription_ref, session.metadata, session.customer_ref)
        if record is None:
            if reason is not None:
                return AckOutcome.IGNORED, reason
            return AckOutcome.ORPHANED, f"checkout session {session.id} has no subscriber metadata"
        return AckOutcome.APPLIED, f"subscription {record.id} recorded from checkout"

    def _adopt(
        self,
        db: Session,
        external_ref: str,
        metadata: Dict[str, Any],
        customer_ref: Optional[str] = None,
        price_ref: Optional[str] = None,
        period: Optional[ProviderPeriod] = None,
    ) -> Tuple[Optional[Subscription], Optional[str]]:
        """
        Link a provider subscription we have not seen yet to a local record.

        Uses, in order: the local id stamped into the metadata, the open
        record for the (subscriber, creator) pair, then a new record built
        from the metadata. Returns ``(None, reason)`` when the event must be
        ignored and ``(None, None)`` when it cannot be attributed at all.
        """
        local_id = _parse_uuid(metadata.get("local_subscription_id"))
        if local_id is not None:
            record = db.get(Subscription, local_id)
            if record is not None and record.stripe_subscription_id in (None, external_ref):
                lifecycle_controller.attach_external_ref(db, record.id, external_ref, customer_ref, commit=False)
                return record, None

        subscriber_id = _parse_uuid(metadata.get("subscriber_id"))
        if subscriber_id is None:
            return None, None
        creator_id = _parse_uuid(metadata.get("creator_id"))

        record = lifecycle_controller.find_open(db, subscriber_id, creator_id)
        if record is not None:
            if record.stripe_subscription_id not in (None, external_ref):
                return None, (
                    f"{external_ref} conflicts with open subscription {record.id} "
                    f"({record.stripe_subscription_id})"
                )
            lifecycle_controller.attach_external_ref(db, record.id, external_ref, customer_ref, commit=False)
            return record, None

        try:
            tier = parse_tier(metadata.get("tier", ""))
            billing_cycle = BillingCycle(metadata.get("billing_cycle") or BillingCycle.MONTHLY.value)
        except ValueError as e:
            return None, f"cannot create subscription for {external_ref}: {e}"

        snapshot = lifecycle_controller.create(
            db,
            subscriber_id,
            creator_id,
            tier,
            external_ref,
            billing_cycle=billing_cycle,
            period=period,
            customer_ref=customer_ref,
            price_ref=price_ref,
            metadata={"source": "webhook"},
            commit=False,
        )
        return db.get(Subscription, snapshot.id), None

    # Ledger -----------------------------------------------------------

    def _append_or_settle(self, db: Session, entry: LedgerEntryCreate) -> str:
        try:
            payment = payment_ledger.append(db, entry, commit=False)
            return f"ledger entry {payment.id} {entry.outcome.value}"
        except DuplicateEntryError as e:
            if e.rolled_back:
                raise
        payment = payment_ledger.settle(db, entry.provider_payment_ref, entry.outcome, commit=False)
        return f"ledger entry {payment.id} is {payment.outcome.value}"

    def _apply_invoice(self, db: Session, event: ProviderEvent, outcome: PaymentOutcome) -> Outcome:
        invoice = event.payload
        subscription_ref = invoice.subscription_ref
        if not subscription_ref:
            return AckOutcome.IGNORED, f"invoice {invoice.id} is not for a subscription"

        record = lifecycle_controller.find_by_external_ref(db, subscription_ref)
        if record is not None:
            subscriber_id, creator_id, subscription_id = record.subscriber_id, record.creator_id, record.id
        else:
            metadata = invoice.subscription_metadata
            subscriber_id = _parse_uuid(metadata.get("subscriber_id"))
            creator_id = _parse_uuid(metadata.get("creator_id"))
            subscription_id = None
            if subscriber_id is None:
                return AckOutcome.ORPHANED, f"no local subscription for {subscription_ref}"

        amount = invoice.amount_paid if outcome == PaymentOutcome.SUCCEEDED else invoice.amount_due
        entry = LedgerEntryCreate(
            provider_payment_ref=invoice.payment_ref,
            subscriber_id=subscriber_id,
            creator_id=creator_id,
            subscription_id=subscription_id,
            stripe_invoice_id=invoice.id,
            kind=PaymentKind.SUBSCRIPTION_CHARGE,
            outcome=outcome,
            amount=amount,
            currency=invoice.currency,
            description=f"Subscription charge ({subscription_ref})",
            metadata={"stripe_event_id": event.id},
            processed_at=event.created or utcnow(),
        )
        return AckOutcome.APPLIED, self._append_or_settle(db, entry)

    def _apply_payment_intent(self, db: Session, event: ProviderEvent, outcome: PaymentOutcome) -> Outcome:
        intent = event.payload
        if intent.invoice_ref:
            return AckOutcome.IGNORED, f"payment intent {intent.id} is booked through invoice {intent.invoice_ref}"

        kind = DIRECT_PAYMENT_KINDS.get(str(intent.metadata.get("type", "")).lower())
        if kind is None:
            return AckOutcome.IGNORED, f"payment intent {intent.id} is not a tip or one-time payment"

        subscriber_id = _parse_uuid(intent.metadata.get("subscriber_id"))
        if subscriber_id is None:
            return AckOutcome.ORPHANED, f"payment intent {intent.id} has no subscriber metadata"

        if outcome == PaymentOutcome.SUCCEEDED:
            amount = intent.amount_received or intent.amount
        else:
            amount = intent.amount

        metadata: Dict[str, Any] = {"stripe_event_id": event.id}
        if intent.failure_message:
            metadata["failure_message"] = intent.failure_message

        entry = LedgerEntryCreate(
            provider_payment_ref=intent.id,
            subscriber_id=subscriber_id,
            creator_id=_parse_uuid(intent.metadata.get("creator_id")),
            kind=kind,
            outcome=outcome,
            amount=amount,
            currency=intent.currency,
            description=intent.description,
            metadata=metadata,
            processed_at=event.created or utcnow(),
        )
        return AckOutcome.APPLIED, self._append_or_settle(db, entry)

    def _apply_charge_refunded(self, db: Session, event: ProviderEvent) -> Outcome:
        charge = event.payload
        payment = payment_ledger.sync_provider_refund(
            db, charge.payment_ref, charge.amount_refunded, commit=False
        )
        if payment is None:
            raise EventNotReadyError(f"No ledger entry for {charge.payment_ref} yet; event {event.id} deferred")
        return AckOutcome.APPLIED, (
            f"ledger entry {payment.id} refunded {payment.refunded_amount} of {payment.amount}"
        )


# Global reconciler instance
event_reconciler = EventReconciler()
