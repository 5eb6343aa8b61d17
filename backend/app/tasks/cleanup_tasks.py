"""
Celery tasks for periodic billing maintenance.

Tasks:
- prune_processed_events: Delete webhook dedup records past their retention
- reconcile_pending_subscriptions: Re-fetch Stripe state for subscriptions
  whose last outbound call never got an answer
"""
from datetime import timedelta

from app.core.celery_app import celery_app
from app.core.config import settings
from app.core.errors import BillingError
from app.core.timeutils import utcnow
from app.db.base import SessionLocal
from app.models import ProcessedEvent, Subscription
from app.services.billing_provider import billing_client
from app.services.lifecycle import lifecycle_controller
import logging

logger = logging.getLogger(__name__)


@celery_app.task
def prune_processed_events():
    """
    Hourly task to delete dedup records whose retention window has passed.

    The retention window outlasts Stripe's retry schedule, so a pruned event
    can no longer be redelivered.
    """
    db = SessionLocal()

    try:
        now = utcnow()
        deleted = (
            db.query(ProcessedEvent)
            .filter(ProcessedEvent.expires_at < now)
            .delete(synchronize_session=False)
        )
        db.commit()

        logger.info(f"[cleanup] Pruned {deleted} processed webhook events")
        return {"deleted": deleted}

    except Exception as e:
        db.rollback()
        logger.error(f"[cleanup] Pruning processed events failed: {e}")
        raise

    finally:
        db.close()


@celery_app.task
def reconcile_pending_subscriptions():
    """
    Resolve subscriptions flagged after an ambiguous Stripe call.

    Normally the webhook clears the flag. Records still flagged after the
    configured grace period are re-fetched from Stripe and the result is
    applied as a provider snapshot.
    """
    db = SessionLocal()

    try:
        cutoff = utcnow() - timedelta(minutes=settings.pending_reconciliation_after_minutes)
        pending = (
            db.query(Subscription.id, Subscription.stripe_subscription_id)
            .filter(
                Subscription.pending_reconciliation.is_(True),
                Subscription.stripe_subscription_id.isnot(None),
                Subscription.updated_at < cutoff,
            )
            .all()
        )
        # No transaction stays open across the Stripe calls below
        db.commit()

        if not pending:
            logger.info("[cleanup] No subscriptions pending reconciliation")
            return {"reconciled": 0, "total_pending": 0, "errors": None}

        reconciled = 0
        errors = []

        for subscription_id, external_ref in pending:
            try:
                remote = billing_client.retrieve_remote_subscription(external_ref)
                if remote.status is None:
                    errors.append(f"{subscription_id}: unmapped Stripe status {remote.raw_status}")
                    continue

                period = remote.period
                if period is not None and period.start >= period.end:
                    period = None

                lifecycle_controller.apply_provider_status(
                    db,
                    subscription_id,
                    remote.status,
                    period,
                    cancel_at_period_end=remote.cancel_at_period_end,
                    canceled_at=remote.canceled_at,
                )
                reconciled += 1

            except BillingError as e:
                db.rollback()
                errors.append(f"{subscription_id}: {e.message}")
                logger.warning(f"[cleanup] Could not reconcile subscription {subscription_id}: {e.message}")

        logger.info(
            f"[cleanup] Pending reconciliation complete: "
            f"reconciled={reconciled}, errors={len(errors)}"
        )

        return {
            "reconciled": reconciled,
            "total_pending": len(pending),
            "errors": errors if errors else None,
        }

    finally:
        db.close()
