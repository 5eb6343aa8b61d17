"""
Unit tests for subscription service.

Tests subscribe, cancellation against Stripe, resume and lookups.
"""
import logging
import uuid
from datetime import datetime
from unittest.mock import patch

import pytest

from app.core.errors import (
    ConflictError,
    InvalidStateError,
    ProviderUnavailableError,
    SubscriptionNotFoundError,
)
from app.core.tiers import Tier
from app.models import Subscription, SubscriptionStatus
from app.schemas import (
    ProviderPeriod,
    SubscribeRequest,
    SubscriptionCreateRequest,
    SubscriptionUpdateRequest,
)
from app.services.billing_provider import RemoteSubscription
from app.services.lifecycle import lifecycle_controller
from app.services.subscription import subscription_service


def remote_subscription(status=SubscriptionStatus.ACTIVE, raw_status="active", **overrides):
    values = {
        "id": "sub_remote",
        "status": status,
        "raw_status": raw_status,
        "customer_id": "cus_123",
        "price_id": "price_solo",
        "period": ProviderPeriod(start=datetime(2026, 1, 1), end=datetime(2026, 2, 1)),
        "cancel_at_period_end": False,
        "canceled_at": None,
        "client_secret": "pi_secret",
    }
    values.update(overrides)
    return RemoteSubscription(**values)


def subscribe_request(creator_id, **overrides):
    values = {
        "creator_id": creator_id,
        "tier": Tier.SOLO_VIDEO,
        "stripe_price_id": "price_solo",
        "email": "fan@example.com",
    }
    values.update(overrides)
    return SubscribeRequest(**values)


def provider_error(ambiguous):
    return ProviderUnavailableError("Billing provider did not respond", ambiguous=ambiguous)


class TestSubscribe:
    """Test starting a subscription with Stripe."""

    @patch("app.services.subscription.billing_client.create_remote_subscription")
    @patch("app.services.subscription.billing_client.ensure_customer")
    def test_subscribe_records_active_subscription(self, mock_customer, mock_create, db, subscriber_id, creator_id):
        """An immediately active provider subscription grants access."""
        mock_customer.return_value = "cus_123"
        mock_create.return_value = remote_subscription()

        result = subscription_service.subscribe(subscriber_id, subscribe_request(creator_id), db)

        assert result.client_secret == "pi_secret"
        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert result.subscription.stripe_subscription_id == "sub_remote"
        assert result.subscription.current_period_end == datetime(2026, 2, 1)

        metadata = mock_create.call_args.args[2]
        assert metadata["subscriber_id"] == str(subscriber_id)
        assert metadata["creator_id"] == str(creator_id)
        assert metadata["tier"] == "solo_video"

    @patch("app.services.subscription.billing_client.create_remote_subscription")
    @patch("app.services.subscription.billing_client.ensure_customer")
    def test_incomplete_subscription_has_no_access(self, mock_customer, mock_create, db, subscriber_id, creator_id):
        mock_customer.return_value = "cus_123"
        mock_create.return_value = remote_subscription(status=SubscriptionStatus.UNPAID, raw_status="incomplete")

        result = subscription_service.subscribe(subscriber_id, subscribe_request(creator_id), db)

        assert result.subscription.status == SubscriptionStatus.UNPAID
        check = subscription_service.check_access(subscriber_id, creator_id, "picture", db)
        assert check.has_access is False

    @patch("app.services.subscription.billing_client.create_remote_subscription")
    @patch("app.services.subscription.billing_client.ensure_customer")
    def test_subscribe_rejects_open_pair_before_calling_stripe(self, mock_customer, mock_create, db, subscriber_id, creator_id):
        lifecycle_controller.create(db, subscriber_id, creator_id, Tier.PICTURE)

        with pytest.raises(ConflictError):
            subscription_service.subscribe(subscriber_id, subscribe_request(creator_id), db)

        mock_customer.assert_not_called()
        mock_create.assert_not_called()

    @patch("app.services.subscription.billing_client.create_remote_subscription")
    @patch("app.services.subscription.billing_client.ensure_customer")
    def test_provider_failure_creates_nothing(self, mock_customer, mock_create, db, subscriber_id, creator_id):
        mock_customer.return_value = "cus_123"
        mock_create.side_effect = provider_error(ambiguous=True)

        with pytest.raises(ProviderUnavailableError):
            subscription_service.subscribe(subscriber_id, subscribe_request(creator_id), db)

        assert subscription_service.get_current_subscription(subscriber_id, creator_id, db) is None

    @patch("app.services.subscription.billing_client.create_remote_subscription")
    @patch("app.services.subscription.billing_client.ensure_customer")
    def test_webhook_recorded_first(self, mock_customer, mock_create, db, subscriber_id, creator_id):
        """If the created webhook won the race the existing record is returned."""
        mock_customer.return_value = "cus_123"

        def webhook_wins(*args, **kwargs):
            lifecycle_controller.create(db, subscriber_id, creator_id, Tier.SOLO_VIDEO, "sub_remote")
            return remote_subscription()

        mock_create.side_effect = webhook_wins

        result = subscription_service.subscribe(subscriber_id, subscribe_request(creator_id), db)

        assert result.subscription.stripe_subscription_id == "sub_remote"
        history = subscription_service.get_subscription_history(subscriber_id, db)
        assert history.total == 1

    @patch("app.services.subscription.billing_client.create_remote_subscription")
    @patch("app.services.subscription.billing_client.ensure_customer")
    def test_remote_create_is_keyed_per_attempt(self, mock_customer, mock_create, db, subscriber_id, creator_id):
        mock_customer.return_value = "cus_123"
        mock_create.return_value = remote_subscription()

        first = subscription_service.subscribe(subscriber_id, subscribe_request(creator_id), db)
        first_key = mock_create.call_args.kwargs["idempotency_key"]
        lifecycle_controller.cancel(db, first.subscription.id, immediate=True)
        mock_create.return_value = remote_subscription(id="sub_remote_2")
        subscription_service.subscribe(subscriber_id, subscribe_request(creator_id), db)
        second_key = mock_create.call_args.kwargs["idempotency_key"]

        assert first_key == f"subscribe:{subscriber_id}:{creator_id}:price_solo:0"
        assert second_key == f"subscribe:{subscriber_id}:{creator_id}:price_solo:1"

    @patch("app.services.subscription.billing_client.cancel_remote_subscription")
    @patch("app.services.subscription.billing_client.create_remote_subscription")
    @patch("app.services.subscription.billing_client.ensure_customer")
    def test_conflicting_local_record_cancels_remote(
        self, mock_customer, mock_create, mock_cancel, db, subscriber_id, creator_id
    ):
        """A concurrent subscribe that recorded a different subscription wins; ours is undone."""
        mock_customer.return_value = "cus_123"

        def concurrent_subscribe(*args, **kwargs):
            lifecycle_controller.create(db, subscriber_id, creator_id, Tier.PICTURE, "sub_other")
            return remote_subscription()

        mock_create.side_effect = concurrent_subscribe

        with pytest.raises(ConflictError):
            subscription_service.subscribe(subscriber_id, subscribe_request(creator_id), db)

        mock_cancel.assert_called_once_with("sub_remote", immediate=True)
        assert lifecycle_controller.find_by_external_ref(db, "sub_remote") is None
        assert lifecycle_controller.find_open(db, subscriber_id, creator_id).stripe_subscription_id == "sub_other"

    @patch("app.services.subscription.billing_client.cancel_remote_subscription")
    @patch("app.services.subscription.billing_client.create_remote_subscription")
    @patch("app.services.subscription.billing_client.ensure_customer")
    def test_failed_compensation_still_reports_conflict(
        self, mock_customer, mock_create, mock_cancel, db, subscriber_id, creator_id, caplog
    ):
        mock_customer.return_value = "cus_123"

        def concurrent_subscribe(*args, **kwargs):
            lifecycle_controller.create(db, subscriber_id, creator_id, Tier.PICTURE, "sub_other")
            return remote_subscription()

        mock_create.side_effect = concurrent_subscribe
        mock_cancel.side_effect = provider_error(ambiguous=True)

        with caplog.at_level(logging.ERROR, logger="app.services.subscription"):
            with pytest.raises(ConflictError):
                subscription_service.subscribe(subscriber_id, subscribe_request(creator_id), db)

        assert "Could not cancel orphaned Stripe subscription sub_remote" in caplog.text


class TestCreateSubscription:
    def test_create_from_confirmed_checkout(self, db, subscriber_id, creator_id):
        request = SubscriptionCreateRequest(
            creator_id=creator_id,
            tier=Tier.PICTURE,
            stripe_subscription_id="sub_checkout",
        )

        snapshot = subscription_service.create_subscription(subscriber_id, request, db)

        assert snapshot.stripe_subscription_id == "sub_checkout"
        assert snapshot.status == SubscriptionStatus.ACTIVE

    def test_duplicate_create_conflicts(self, db, subscriber_id, creator_id):
        request = SubscriptionCreateRequest(creator_id=creator_id, tier=Tier.PICTURE)
        subscription_service.create_subscription(subscriber_id, request, db)

        with pytest.raises(ConflictError):
            subscription_service.create_subscription(subscriber_id, request, db)


class TestCancelSubscription:
    """Test cancellation, which goes to Stripe before the local record."""

    @pytest.fixture
    def linked(self, db, subscriber_id, creator_id):
        return lifecycle_controller.create(db, subscriber_id, creator_id, Tier.SOLO_VIDEO, "sub_123")

    @patch("app.services.subscription.billing_client.cancel_remote_subscription")
    def test_cancel_immediately(self, mock_cancel, db, subscriber_id, linked):
        snapshot = subscription_service.cancel_subscription(subscriber_id, linked.id, True, db)

        mock_cancel.assert_called_once_with("sub_123", True)
        assert snapshot.status == SubscriptionStatus.CANCELED

    @patch("app.services.subscription.billing_client.cancel_remote_subscription")
    def test_cancel_at_period_end(self, mock_cancel, db, subscriber_id, linked):
        snapshot = subscription_service.cancel_subscription(subscriber_id, linked.id, False, db)

        mock_cancel.assert_called_once_with("sub_123", False)
        assert snapshot.status == SubscriptionStatus.ACTIVE
        assert snapshot.cancel_at_period_end is True

    @patch("app.services.subscription.billing_client.cancel_remote_subscription")
    def test_ambiguous_failure_marks_pending(self, mock_cancel, db, subscriber_id, linked):
        """A timeout leaves the record as it was, flagged for reconciliation."""
        mock_cancel.side_effect = provider_error(ambiguous=True)

        with pytest.raises(ProviderUnavailableError):
            subscription_service.cancel_subscription(subscriber_id, linked.id, True, db)

        record = lifecycle_controller.get(db, linked.id)
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.pending_reconciliation is True

    @patch("app.services.subscription.billing_client.cancel_remote_subscription")
    def test_rejected_cancel_changes_nothing(self, mock_cancel, db, subscriber_id, linked):
        mock_cancel.side_effect = provider_error(ambiguous=False)

        with pytest.raises(ProviderUnavailableError):
            subscription_service.cancel_subscription(subscriber_id, linked.id, True, db)

        record = lifecycle_controller.get(db, linked.id)
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.pending_reconciliation is False

    @patch("app.services.subscription.billing_client.cancel_remote_subscription")
    def test_unlinked_subscription_cancels_locally(self, mock_cancel, db, subscriber_id, creator_id):
        local = lifecycle_controller.create(db, subscriber_id, creator_id, Tier.PICTURE)

        snapshot = subscription_service.cancel_subscription(subscriber_id, local.id, True, db)

        mock_cancel.assert_not_called()
        assert snapshot.status == SubscriptionStatus.CANCELED

    @patch("app.services.subscription.billing_client.cancel_remote_subscription")
    def test_illegal_cancel_never_reaches_stripe(self, mock_cancel, db, subscriber_id, linked):
        lifecycle_controller.cancel(db, linked.id, immediate=True)

        with pytest.raises(InvalidStateError):
            subscription_service.cancel_subscription(subscriber_id, linked.id, True, db)

        mock_cancel.assert_not_called()

    @patch("app.services.subscription.billing_client.cancel_remote_subscription")
    def test_webhook_applied_cancel_first(self, mock_cancel, db, subscriber_id, linked):
        """The deleted webhook can land while Stripe is answering the cancel."""

        def webhook_first(*args, **kwargs):
            lifecycle_controller.apply_provider_status(db, linked.id, SubscriptionStatus.CANCELED)

        mock_cancel.side_effect = webhook_first

        snapshot = subscription_service.cancel_subscription(subscriber_id, linked.id, True, db)

        assert snapshot.status == SubscriptionStatus.CANCELED

    def test_cannot_cancel_someone_elses_subscription(self, db, linked):
        with pytest.raises(SubscriptionNotFoundError):
            subscription_service.cancel_subscription(uuid.uuid4(), linked.id, True, db)


class TestReactivateAndResume:
    def test_reactivate_canceled(self, db, subscriber_id, creator_id):
        local = lifecycle_controller.create(db, subscriber_id, creator_id, Tier.PICTURE)
        lifecycle_controller.cancel(db, local.id, immediate=True)

        snapshot = subscription_service.reactivate_subscription(subscriber_id, local.id, db)

        assert snapshot.status == SubscriptionStatus.ACTIVE

    def test_reactivating_stripe_subscription_awaits_reconciliation(self, db, subscriber_id, creator_id):
        """Stripe is not asked to restart billing, so the record is rechecked against it."""
        linked = lifecycle_controller.create(db, subscriber_id, creator_id, Tier.PICTURE, "sub_ended")
        lifecycle_controller.cancel(db, linked.id, immediate=True)

        snapshot = subscription_service.reactivate_subscription(subscriber_id, linked.id, db)

        assert snapshot.status == SubscriptionStatus.ACTIVE
        assert snapshot.pending_reconciliation is True

    @patch("app.services.subscription.billing_client.resume_remote_subscription")
    def test_resume_waits_for_webhook(self, mock_resume, db, subscriber_id, creator_id):
        local = lifecycle_controller.create(db, subscriber_id, creator_id, Tier.PICTURE, "sub_paused")
        lifecycle_controller.apply_provider_status(db, local.id, SubscriptionStatus.PAUSED)

        snapshot = subscription_service.resume_subscription(subscriber_id, local.id, db)

        mock_resume.assert_called_once_with("sub_paused")
        assert snapshot.status == SubscriptionStatus.PAUSED

    @patch("app.services.subscription.billing_client.resume_remote_subscription")
    def test_resume_timeout_marks_pending(self, mock_resume, db, subscriber_id, creator_id):
        local = lifecycle_controller.create(db, subscriber_id, creator_id, Tier.PICTURE, "sub_paused")
        lifecycle_controller.apply_provider_status(db, local.id, SubscriptionStatus.PAUSED)
        mock_resume.side_effect = provider_error(ambiguous=True)

        with pytest.raises(ProviderUnavailableError):
            subscription_service.resume_subscription(subscriber_id, local.id, db)

        assert lifecycle_controller.get(db, local.id).pending_reconciliation is True

    def test_resume_requires_paused(self, db, subscriber_id, creator_id):
        local = lifecycle_controller.create(db, subscriber_id, creator_id, Tier.PICTURE, "sub_1")

        with pytest.raises(InvalidStateError):
            subscription_service.resume_subscription(subscriber_id, local.id, db)


class TestLookups:
    def test_history_includes_canceled(self, db, subscriber_id, creator_id):
        first = lifecycle_controller.create(db, subscriber_id, creator_id, Tier.PICTURE)
        lifecycle_controller.cancel(db, first.id, immediate=True)
        lifecycle_controller.create(db, subscriber_id, creator_id, Tier.SOLO_VIDEO)
        lifecycle_controller.create(db, subscriber_id, uuid.uuid4(), Tier.PICTURE)

        assert subscription_service.get_subscription_history(subscriber_id, db).total == 3
        assert subscription_service.get_subscription_history(subscriber_id, db, creator_id=creator_id).total == 2

    def test_current_subscription_skips_canceled(self, db, subscriber_id, creator_id):
        first = lifecycle_controller.create(db, subscriber_id, creator_id, Tier.PICTURE)
        lifecycle_controller.cancel(db, first.id, immediate=True)

        assert subscription_service.get_current_subscription(subscriber_id, creator_id, db) is None

    def test_list_tiers_in_hierarchy_order(self):
        tiers = subscription_service.list_tiers()

        assert [t.tier for t in tiers] == [Tier.PICTURE, Tier.SOLO_VIDEO, Tier.COLLAB_VIDEO]
        assert tiers[-1].unlocks == [Tier.PICTURE, Tier.SOLO_VIDEO, Tier.COLLAB_VIDEO]


class TestUpdateSubscription:
    """Test tier changes, which go to Stripe before the local record."""

    @pytest.fixture
    def linked(self, db, subscriber_id, creator_id):
        return lifecycle_controller.create(
            db, subscriber_id, creator_id, Tier.SOLO_VIDEO, "sub_123", price_ref="price_solo"
        )

    @patch("app.services.subscription.billing_client.change_remote_price")
    def test_upgrade_moves_stripe_price_first(self, mock_change, db, subscriber_id, creator_id, linked):
        mock_change.return_value = remote_subscription(id="sub_123", price_id="price_collab")
        request = SubscriptionUpdateRequest(tier=Tier.COLLAB_VIDEO, stripe_price_id="price_collab")

        snapshot = subscription_service.update_subscription(subscriber_id, linked.id, request, db)

        mock_change.assert_called_once_with("sub_123", "price_collab", {"tier": "collab_video"})
        assert snapshot.tier == Tier.COLLAB_VIDEO
        assert lifecycle_controller.get(db, linked.id).stripe_price_id == "price_collab"
        assert subscription_service.check_access(subscriber_id, creator_id, "collab_video", db).has_access is True

    @patch("app.services.subscription.billing_client.change_remote_price")
    def test_stripe_subscription_needs_price(self, mock_change, db, subscriber_id, linked):
        with pytest.raises(ValueError):
            subscription_service.update_subscription(
                subscriber_id, linked.id, SubscriptionUpdateRequest(tier=Tier.COLLAB_VIDEO), db
            )

        mock_change.assert_not_called()

    @patch("app.services.subscription.billing_client.change_remote_price")
    def test_unlinked_subscription_changes_locally(self, mock_change, db, subscriber_id, creator_id):
        local = lifecycle_controller.create(db, subscriber_id, creator_id, Tier.PICTURE)

        snapshot = subscription_service.update_subscription(
            subscriber_id, local.id, SubscriptionUpdateRequest(tier=Tier.SOLO_VIDEO), db
        )

        mock_change.assert_not_called()
        assert snapshot.tier == Tier.SOLO_VIDEO

    @patch("app.services.subscription.billing_client.change_remote_price")
    def test_same_tier_is_a_no_op(self, mock_change, db, subscriber_id, linked):
        snapshot = subscription_service.update_subscription(
            subscriber_id, linked.id, SubscriptionUpdateRequest(tier=Tier.SOLO_VIDEO), db
        )

        mock_change.assert_not_called()
        assert snapshot.version == linked.version

    @patch("app.services.subscription.billing_client.change_remote_price")
    def test_inactive_subscription_never_reaches_stripe(self, mock_change, db, subscriber_id, linked):
        lifecycle_controller.apply_provider_status(db, linked.id, SubscriptionStatus.PAST_DUE)
        request = SubscriptionUpdateRequest(tier=Tier.COLLAB_VIDEO, stripe_price_id="price_collab")

        with pytest.raises(InvalidStateError):
            subscription_service.update_subscription(subscriber_id, linked.id, request, db)

        mock_change.assert_not_called()

    @patch("app.services.subscription.billing_client.change_remote_price")
    def test_ambiguous_failure_marks_pending(self, mock_change, db, subscriber_id, linked):
        mock_change.side_effect = provider_error(ambiguous=True)
        request = SubscriptionUpdateRequest(tier=Tier.COLLAB_VIDEO, stripe_price_id="price_collab")

        with pytest.raises(ProviderUnavailableError):
            subscription_service.update_subscription(subscriber_id, linked.id, request, db)

        record = lifecycle_controller.get(db, linked.id)
        assert record.tier == Tier.SOLO_VIDEO
        assert record.pending_reconciliation is True

    @patch("app.services.subscription.billing_client.change_remote_price")
    def test_webhook_applied_change_first(self, mock_change, db, subscriber_id, linked):
        """The updated webhook can carry the new tier before Stripe answers."""

        def webhook_first(*args, **kwargs):
            lifecycle_controller.apply_provider_status(
                db, linked.id, SubscriptionStatus.ACTIVE, tier=Tier.COLLAB_VIDEO, price_ref="price_collab"
            )
            return remote_subscription(id="sub_123", price_id="price_collab")

        mock_change.side_effect = webhook_first
        request = SubscriptionUpdateRequest(tier=Tier.COLLAB_VIDEO, stripe_price_id="price_collab")

        snapshot = subscription_service.update_subscription(subscriber_id, linked.id, request, db)

        assert snapshot.tier == Tier.COLLAB_VIDEO
        assert snapshot.status == SubscriptionStatus.ACTIVE

    def test_cannot_change_someone_elses_subscription(self, db, linked):
        with pytest.raises(SubscriptionNotFoundError):
            subscription_service.update_subscription(
                uuid.uuid4(), linked.id, SubscriptionUpdateRequest(tier=Tier.PICTURE), db
            )


def backdate(db, subscription_id, created_at):
    record = db.get(Subscription, subscription_id)
    record.created_at = created_at
    db.commit()


class TestCreatorViews:
    """Test the subscriber's creator list and the creator-side views."""

    def test_my_creators_lists_active_creator_subscriptions(self, db, subscriber_id, creator_id):
        other_creator = uuid.uuid4()
        active = lifecycle_controller.create(db, subscriber_id, creator_id, Tier.PICTURE)
        ended = lifecycle_controller.create(db, subscriber_id, other_creator, Tier.PICTURE)
        lifecycle_controller.cancel(db, ended.id, immediate=True)
        lifecycle_controller.create(db, subscriber_id, None, Tier.PICTURE)

        result = subscription_service.get_my_creators(subscriber_id, db)

        assert result.total == 1
        assert result.subscriptions[0].id == active.id

    def test_my_creators_newest_first(self, db, subscriber_id):
        older = lifecycle_controller.create(db, subscriber_id, uuid.uuid4(), Tier.PICTURE)
        newer = lifecycle_controller.create(db, subscriber_id, uuid.uuid4(), Tier.PICTURE)
        backdate(db, older.id, datetime(2026, 1, 1))
        backdate(db, newer.id, datetime(2026, 3, 1))

        result = subscription_service.get_my_creators(subscriber_id, db)

        assert [s.id for s in result.subscriptions] == [newer.id, older.id]

    def test_creator_subscribers_are_paginated(self, db, creator_id):
        for _ in range(5):
            lifecycle_controller.create(db, uuid.uuid4(), creator_id, Tier.PICTURE)
        ended = lifecycle_controller.create(db, uuid.uuid4(), creator_id, Tier.PICTURE)
        lifecycle_controller.cancel(db, ended.id, immediate=True)
        lifecycle_controller.create(db, uuid.uuid4(), uuid.uuid4(), Tier.PICTURE)

        first = subscription_service.get_creator_subscribers(creator_id, db, page=1, limit=2)
        last = subscription_service.get_creator_subscribers(creator_id, db, page=3, limit=2)

        assert first.pagination.total == 5
        assert first.pagination.pages == 3
        assert len(first.subscriptions) == 2
        assert len(last.subscriptions) == 1
        assert all(s.creator_id == creator_id for s in first.subscriptions)

    def test_analytics_counts_and_churn(self, db, creator_id):
        for tier in (Tier.PICTURE, Tier.PICTURE, Tier.COLLAB_VIDEO):
            lifecycle_controller.create(db, uuid.uuid4(), creator_id, tier)
        ended = lifecycle_controller.create(db, uuid.uuid4(), creator_id, Tier.PICTURE)
        lifecycle_controller.cancel(db, ended.id, immediate=True)
        late = lifecycle_controller.create(db, uuid.uuid4(), creator_id, Tier.PICTURE)
        lifecycle_controller.apply_provider_status(db, late.id, SubscriptionStatus.PAST_DUE)

        analytics = subscription_service.get_subscription_analytics(creator_id, db)

        assert analytics.total_subscriptions == 5
        assert analytics.active_subscriptions == 3
        assert analytics.canceled_subscriptions == 1
        assert analytics.churn_rate == 20.0
        assert analytics.active_by_tier == {Tier.PICTURE: 2, Tier.COLLAB_VIDEO: 1}

    def test_analytics_window_filters_by_creation(self, db, creator_id):
        january = lifecycle_controller.create(db, uuid.uuid4(), creator_id, Tier.PICTURE)
        march = lifecycle_controller.create(db, uuid.uuid4(), creator_id, Tier.PICTURE)
        backdate(db, january.id, datetime(2026, 1, 15))
        backdate(db, march.id, datetime(2026, 3, 15))

        analytics = subscription_service.get_subscription_analytics(
            creator_id, db, start=datetime(2026, 1, 1), end=datetime(2026, 2, 1)
        )

        assert analytics.total_subscriptions == 1
        assert analytics.period_start == datetime(2026, 1, 1)

    def test_analytics_without_subscriptions(self, db, creator_id):
        analytics = subscription_service.get_subscription_analytics(creator_id, db)

        assert analytics.total_subscriptions == 0
        assert analytics.churn_rate == 0.0

    def test_analytics_rejects_inverted_window(self, db, creator_id):
        with pytest.raises(ValueError):
            subscription_service.get_subscription_analytics(
                creator_id, db, start=datetime(2026, 2, 1), end=datetime(2026, 1, 1)
            )
