from datetime import timedelta

import pytest

from expenseai_billing.domain.subscriptions import (
    EventKind,
    NotificationKind,
    Plan,
    Provider,
    SubscriptionStatus,
)
from expenseai_billing.errors import ProviderUnavailable, SubscriptionNotFound
from expenseai_billing.models import Subscription
from expenseai_billing.workers.subscription_sync import sweep_lapsed_subscriptions
from tests.conftest import NOW, make_event, make_snapshot, purchase_event

pytestmark = pytest.mark.db


def store_snapshot(user_id, **overrides):
    return make_snapshot(
        Provider.STORE_AGGREGATOR,
        external_subscription_id=user_id,
        external_customer_id=user_id,
        **overrides,
    )


class TestSyncNow:
    def test_first_sync_mirrors_provider_state(self, billing, store_client, user_id):
        snapshot = store_snapshot(user_id, plan=Plan.YEARLY, status=SubscriptionStatus.TRIALING)
        store_client.by_customer[user_id] = snapshot

        result = billing.sync.sync_now(user_id)

        assert result.stale is False
        row = Subscription.query.one()
        assert row.user_id == user_id
        assert row.provider == "store_aggregator"
        assert row.plan == "yearly"
        assert row.status == "trialing"
        assert row.current_period_start == snapshot.current_period_start
        assert row.current_period_end == snapshot.current_period_end
        assert row.is_current is True

    def test_card_customer_is_discovered_through_identity(self, billing, card_client, user_id):
        billing.identity.link(user_id, Provider.CARD_BILLING, "cus_999")
        billing.store.commit()
        card_client.by_customer["cus_999"] = make_snapshot(external_customer_id="cus_999")

        result = billing.sync.sync_now(user_id)

        assert result.subscription.external_subscription_id == "sub_123"
        assert result.subscription.provider is Provider.CARD_BILLING

    def test_no_subscription_anywhere(self, billing, user_id):
        with pytest.raises(SubscriptionNotFound):
            billing.sync.sync_now(user_id)

    def test_discovery_failure_is_raised_when_nothing_cached(self, billing, store_client, user_id):
        store_client.error = ProviderUnavailable("timeout", provider=Provider.STORE_AGGREGATOR)

        with pytest.raises(ProviderUnavailable):
            billing.sync.sync_now(user_id)

    def test_cached_subscription_refreshed_from_provider(self, billing, card_client, notifier, user_id):
        billing.reconciler.apply(purchase_event(user_id))
        card_client.snapshots["sub_123"] = make_snapshot(status=SubscriptionStatus.PAST_DUE)

        result = billing.sync.sync_now(user_id)

        assert result.stale is False
        assert result.subscription.status is SubscriptionStatus.PAST_DUE
        assert Subscription.query.one().status == "past_due"
        assert notifier.kinds[-1] is NotificationKind.PAYMENT_FAILED

    def test_replacement_subscription_found_after_cancellation(self, billing, card_client, user_id):
        billing.reconciler.apply(purchase_event(user_id))
        billing.reconciler.apply(
            make_event(EventKind.CANCELLATION, cancel_at_period_end=False, event_id="evt_cancel")
        )
        card_client.snapshots["sub_123"] = make_snapshot(
            status=SubscriptionStatus.CANCELLED, cancelled_at=NOW, current_period_end=NOW
        )
        card_client.by_customer["cus_123"] = make_snapshot(
            external_subscription_id="sub_NEW",
            current_period_start=NOW - timedelta(hours=2),
            current_period_end=NOW + timedelta(days=30),
        )

        result = billing.sync.sync_now(user_id)

        assert result.subscription.external_subscription_id == "sub_NEW"
        assert result.subscription.status is SubscriptionStatus.ACTIVE
        rows = {row.external_subscription_id: row for row in Subscription.query.all()}
        assert rows["sub_123"].status == "cancelled"
        assert rows["sub_123"].is_current is False
        assert rows["sub_NEW"].is_current is True
        assert billing.entitlements.has_active_entitlement(user_id) is True

    def test_ended_subscription_without_replacement_is_returned(self, billing, card_client, user_id):
        billing.reconciler.apply(purchase_event(user_id))
        billing.reconciler.apply(
            make_event(EventKind.CANCELLATION, cancel_at_period_end=False, event_id="evt_cancel")
        )

        result = billing.sync.sync_now(user_id)

        assert result.stale is False
        assert result.subscription.external_subscription_id == "sub_123"
        assert result.subscription.status is SubscriptionStatus.CANCELLED

    def test_unreachable_provider_serves_cached_state(self, billing, card_client, user_id):
        billing.reconciler.apply(purchase_event(user_id))
        card_client.error = ProviderUnavailable("timeout", provider=Provider.CARD_BILLING)

        result = billing.sync.sync_now(user_id)

        assert result.stale is True
        assert result.warning
        assert result.subscription.status is SubscriptionStatus.ACTIVE
        assert billing.entitlements.has_active_entitlement(user_id) is True

    def test_lapsed_cache_expires_on_sync(self, billing, clock, user_id):
        billing.reconciler.apply(purchase_event(user_id, at=NOW - timedelta(days=29), days=30))
        clock.advance(days=2)

        result = billing.sync.sync_now(user_id)

        assert result.subscription.status is SubscriptionStatus.EXPIRED
        assert Subscription.query.one().status == "expired"

    def test_lapsed_cache_expires_even_when_provider_is_down(self, billing, card_client, clock, user_id):
        billing.reconciler.apply(purchase_event(user_id, at=NOW - timedelta(days=29), days=30))
        card_client.error = ProviderUnavailable("timeout", provider=Provider.CARD_BILLING)
        clock.advance(days=2)

        result = billing.sync.sync_now(user_id)

        assert result.stale is True
        assert result.subscription.status is SubscriptionStatus.EXPIRED


class TestLapseSweep:
    def test_ended_period_is_expired(self, billing, clock, notifier, user_id):
        billing.reconciler.apply(purchase_event(user_id, at=NOW - timedelta(days=29), days=30))
        clock.advance(days=2)

        report = billing.sweeper.run()

        assert report.examined == 1
        assert report.expired == 1
        assert report.errors == []
        assert Subscription.query.one().status == "expired"
        assert notifier.kinds[-1] is NotificationKind.EXPIRED

    def test_renewed_subscription_is_refreshed(self, billing, card_client, clock, user_id):
        billing.reconciler.apply(purchase_event(user_id, at=NOW - timedelta(days=29), days=30))
        clock.advance(hours=23, minutes=30)
        card_client.snapshots["sub_123"] = make_snapshot(
            fetched_at=clock.now,
            current_period_start=NOW + timedelta(days=1),
            current_period_end=NOW + timedelta(days=31),
        )

        report = billing.sweeper.run()

        assert report.resynced == 1
        assert report.expired == 0
        assert Subscription.query.one().current_period_end == NOW + timedelta(days=31)

    def test_unreachable_provider_still_expires(self, billing, card_client, clock, user_id):
        billing.reconciler.apply(purchase_event(user_id, at=NOW - timedelta(days=29), days=30))
        card_client.error = ProviderUnavailable("timeout", provider=Provider.CARD_BILLING)
        clock.advance(days=2)

        report = billing.sweeper.run()

        assert report.resynced == 0
        assert report.expired == 1

    def test_far_future_periods_are_skipped(self, billing, user_id):
        billing.reconciler.apply(purchase_event(user_id))

        report = billing.sweeper.run()

        assert report.examined == 0

    def test_sweep_task_returns_report(self, billing, clock, user_id):
        billing.reconciler.apply(purchase_event(user_id, at=NOW - timedelta(days=29), days=30))
        clock.advance(days=2)

        report = sweep_lapsed_subscriptions.apply().get()

        assert report == {"examined": 1, "expired": 1, "resynced": 1, "errors": []}
