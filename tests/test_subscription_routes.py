from datetime import timedelta
from unittest.mock import patch

import pytest

from expenseai_billing.domain.subscriptions import (
    NotificationKind,
    Plan,
    Provider,
    SubscriptionStatus,
)
from expenseai_billing.errors import ProviderUnavailable
from expenseai_billing.models import ProviderIdentity, Subscription
from tests.conftest import NOW, make_created, make_snapshot, purchase_event

BASE = "/api/v1/subscriptions"


def test_requires_token(client):
    response = client.get(BASE)

    assert response.status_code == 401
    assert response.get_json()["error"] == "AUTH_REQUIRED"


class TestGetSubscription:
    def test_returns_synced_subscription(self, client, billing, card_client, auth_headers, user_id):
        billing.reconciler.apply(purchase_event(user_id))
        card_client.snapshots["sub_123"] = make_snapshot()

        response = client.get(BASE, headers=auth_headers)
        data = response.get_json()

        assert response.status_code == 200
        assert data["success"] is True
        assert data["stale"] is False
        assert "warning" not in data
        assert data["subscription"]["subscription_id"] == "sub_123"
        assert data["subscription"]["status"] == "active"
        assert data["subscription"]["is_entitled"] is True

    def test_stale_response_when_provider_down(self, client, billing, card_client, auth_headers, user_id):
        billing.reconciler.apply(purchase_event(user_id))
        card_client.error = ProviderUnavailable("timeout", provider=Provider.CARD_BILLING)

        response = client.get(BASE, headers=auth_headers)
        data = response.get_json()

        assert response.status_code == 200
        assert data["stale"] is True
        assert data["warning"]
        assert data["subscription"]["is_entitled"] is True

    def test_not_found(self, client, auth_headers):
        response = client.get(BASE, headers=auth_headers)

        assert response.status_code == 404
        assert response.get_json()["error"] == "SUBSCRIPTION_NOT_FOUND"

    def test_provider_down_without_cache_is_retryable(self, client, store_client, auth_headers):
        store_client.error = ProviderUnavailable("timeout", provider=Provider.STORE_AGGREGATOR)

        response = client.get(BASE, headers=auth_headers)

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "30"


class TestEntitlement:
    def test_entitled_user(self, client, billing, auth_headers, user_id):
        billing.reconciler.apply(purchase_event(user_id))

        data = client.get(f"{BASE}/entitlement", headers=auth_headers).get_json()

        assert data["has_active_entitlement"] is True
        assert data["subscription"]["plan"] == "monthly"

    def test_user_without_subscription(self, client, auth_headers):
        data = client.get(f"{BASE}/entitlement", headers=auth_headers).get_json()

        assert data["has_active_entitlement"] is False
        assert data["subscription"] is None

    def test_past_due_keeps_access(self, client, billing, auth_headers, user_id):
        billing.reconciler.apply(purchase_event(user_id, status=SubscriptionStatus.PAST_DUE))

        data = client.get(f"{BASE}/entitlement", headers=auth_headers).get_json()

        assert data["has_active_entitlement"] is True

    def test_lapsed_subscription_is_read_once(self, client, billing, clock, notifier, auth_headers, user_id):
        billing.reconciler.apply(purchase_event(user_id, at=NOW - timedelta(days=29), days=30))
        clock.advance(days=2)

        with patch.object(
            billing.store, "get_current_for_user", wraps=billing.store.get_current_for_user
        ) as lookup:
            data = client.get(f"{BASE}/entitlement", headers=auth_headers).get_json()

        assert lookup.call_count == 1
        assert data["has_active_entitlement"] is False
        assert data["subscription"]["status"] == "expired"
        assert notifier.kinds.count(NotificationKind.EXPIRED) == 1


@pytest.mark.payment
class TestCreateSubscription:
    def test_creates_active_subscription(self, client, card_client, notifier, auth_headers, user_id):
        card_client.created = make_created(make_snapshot(user_id=user_id), provider_status="active")

        response = client.post(
            BASE,
            json={"plan": "monthly", "payment_method_id": "pm_card_visa"},
            headers=auth_headers,
        )
        data = response.get_json()

        assert response.status_code == 201
        assert data["status"] == "active"
        assert data["requires_action"] is False
        assert data["client_secret"] == "pi_secret_123"
        assert data["subscription"]["status"] == "active"
        assert card_client.create_calls == [(user_id, Plan.MONTHLY, "pm_card_visa", None)]
        assert Subscription.query.one().user_id == user_id
        assert notifier.kinds == [NotificationKind.WELCOME]

    def test_payment_needing_confirmation_links_customer_only(self, client, card_client, auth_headers, user_id):
        card_client.created = make_created(None, provider_status="incomplete")

        response = client.post(
            BASE,
            json={"plan": "yearly", "payment_method_id": "pm_3ds"},
            headers=auth_headers,
        )
        data = response.get_json()

        assert response.status_code == 201
        assert data["requires_action"] is True
        assert data["subscription"] is None
        assert Subscription.query.count() == 0
        assert ProviderIdentity.query.filter_by(user_id=user_id).one().external_customer_id == "cus_123"

    def test_existing_customer_is_reused(self, client, billing, card_client, auth_headers, user_id):
        billing.identity.link(user_id, Provider.CARD_BILLING, "cus_existing")
        billing.store.commit()
        card_client.created = make_created(make_snapshot(user_id=user_id, external_customer_id="cus_existing"))

        client.post(BASE, json={"plan": "weekly", "payment_method_id": "pm_1"}, headers=auth_headers)

        assert card_client.create_calls[0][3] == "cus_existing"

    def test_invalid_plan(self, client, auth_headers):
        response = client.post(
            BASE, json={"plan": "lifetime", "payment_method_id": "pm_1"}, headers=auth_headers
        )

        assert response.status_code == 400
        assert response.get_json()["error"] == "VALIDATION_ERROR"

    def test_missing_payment_method(self, client, auth_headers):
        response = client.post(BASE, json={"plan": "monthly"}, headers=auth_headers)

        assert response.status_code == 400

    def test_already_subscribed(self, client, billing, card_client, auth_headers, user_id):
        billing.reconciler.apply(purchase_event(user_id))

        response = client.post(
            BASE, json={"plan": "yearly", "payment_method_id": "pm_1"}, headers=auth_headers
        )

        assert response.status_code == 409
        assert card_client.create_calls == []


class TestCancel:
    def test_cancel_at_period_end(self, client, billing, card_client, notifier, auth_headers, user_id):
        billing.reconciler.apply(purchase_event(user_id))

        response = client.post(
            f"{BASE}/cancel", json={"subscription_id": "sub_123"}, headers=auth_headers
        )
        data = response.get_json()

        assert response.status_code == 200
        assert card_client.cancel_calls == [("sub_123", True)]
        assert data["subscription"]["status"] == "active"
        assert data["subscription"]["cancel_at_period_end"] is True
        assert data["subscription"]["is_entitled"] is True
        assert notifier.kinds[-1] is NotificationKind.CANCELLATION_SCHEDULED

    def test_cancel_immediately(self, client, billing, card_client, auth_headers, user_id):
        billing.reconciler.apply(purchase_event(user_id))

        response = client.post(
            f"{BASE}/cancel",
            json={"subscription_id": "sub_123", "cancel_at_period_end": "false"},
            headers=auth_headers,
        )

        assert card_client.cancel_calls == [("sub_123", False)]
        assert response.get_json()["subscription"]["status"] == "cancelled"
        assert Subscription.query.one().current_period_end == NOW

    def test_repeated_cancel_keeps_first_timestamp(self, client, billing, clock, auth_headers, user_id):
        billing.reconciler.apply(purchase_event(user_id))
        client.post(f"{BASE}/cancel", json={"subscription_id": "sub_123"}, headers=auth_headers)
        cancelled_at = Subscription.query.one().cancelled_at
        clock.advance(minutes=5)

        client.post(f"{BASE}/cancel", json={"subscription_id": "sub_123"}, headers=auth_headers)

        assert Subscription.query.one().cancelled_at == cancelled_at

    def test_cannot_cancel_someone_elses_subscription(self, client, billing, auth_headers):
        billing.reconciler.apply(purchase_event("another-user"))

        response = client.post(
            f"{BASE}/cancel", json={"subscription_id": "sub_123"}, headers=auth_headers
        )

        assert response.status_code == 404

    def test_cannot_cancel_ended_subscription(self, client, billing, card_client, auth_headers, user_id):
        billing.reconciler.apply(purchase_event(user_id, at=NOW - timedelta(days=60), days=30))

        response = client.post(
            f"{BASE}/cancel", json={"subscription_id": "sub_123"}, headers=auth_headers
        )

        assert response.status_code == 409
        assert card_client.cancel_calls == []

    def test_subscription_id_required(self, client, auth_headers):
        response = client.post(f"{BASE}/cancel", json={}, headers=auth_headers)

        assert response.status_code == 400

    def test_invalid_flag(self, client, auth_headers):
        response = client.post(
            f"{BASE}/cancel",
            json={"subscription_id": "sub_123", "cancel_at_period_end": "soon"},
            headers=auth_headers,
        )

        assert response.status_code == 400


class TestPaymentMethod:
    def test_updates_card(self, client, billing, card_client, auth_headers, user_id):
        billing.reconciler.apply(purchase_event(user_id))

        response = client.post(
            f"{BASE}/payment-method", json={"payment_method_id": "pm_new"}, headers=auth_headers
        )

        assert response.status_code == 200
        assert card_client.payment_method_calls == [("cus_123", "sub_123", "pm_new")]

    def test_without_subscription(self, client, auth_headers):
        response = client.post(
            f"{BASE}/payment-method", json={"payment_method_id": "pm_new"}, headers=auth_headers
        )

        assert response.status_code == 404


class TestVerifyPurchase:
    def test_records_store_subscription(self, client, store_client, notifier, auth_headers, user_id):
        snapshot = make_snapshot(
            Provider.STORE_AGGREGATOR,
            external_subscription_id=user_id,
            external_customer_id=user_id,
            plan=Plan.YEARLY,
        )
        store_client.verified = make_created(snapshot, client_secret=None, provider_status=None)

        response = client.post(
            f"{BASE}/verify-purchase",
            json={"platform": "ios", "product_id": "expenseai_yearly", "purchase_token": "receipt-data"},
            headers=auth_headers,
        )
        data = response.get_json()

        assert response.status_code == 200
        assert data["subscription"]["provider"] == "store_aggregator"
        assert data["subscription"]["plan"] == "yearly"
        assert store_client.verify_calls == [(user_id, "ios", "expenseai_yearly", "receipt-data")]
        assert notifier.kinds == [NotificationKind.WELCOME]

    def test_token_required(self, client, auth_headers):
        response = client.post(
            f"{BASE}/verify-purchase",
            json={"platform": "ios", "product_id": "expenseai_yearly"},
            headers=auth_headers,
        )

        assert response.status_code == 400
