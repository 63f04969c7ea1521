import hashlib
import hmac
import json
from datetime import timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import stripe
from sqlalchemy.exc import OperationalError

from expenseai_billing.domain.subscriptions import NotificationKind, Provider
from expenseai_billing.extensions import db
from expenseai_billing.models import Subscription, WebhookEvent
from tests.conftest import NOW, fake

pytestmark = pytest.mark.webhook

RC_SECRET = "rc_webhook_secret"


def epoch(value):
    return int(value.replace(tzinfo=timezone.utc).timestamp())


def millis(value):
    return epoch(value) * 1000


def revenuecat_event(event_type, app_user_id, at=NOW - timedelta(hours=1), event_id=None, **fields):
    event = {
        "id": event_id or fake.uuid4(),
        "type": event_type,
        "app_user_id": app_user_id,
        "event_timestamp_ms": millis(at),
        "purchased_at_ms": millis(NOW - timedelta(hours=1)),
        "expiration_at_ms": millis(NOW + timedelta(days=30)),
        "product_id": "expenseai_monthly",
        "store": "APP_STORE",
        "price": 9.99,
        "currency": "USD",
    }
    event.update(fields)
    return {"event": event}


def stripe_subscription(user_id, status="active", **fields):
    subscription = {
        "id": "sub_123",
        "object": "subscription",
        "customer": "cus_123",
        "status": status,
        "cancel_at_period_end": False,
        "metadata": {"user_id": user_id, "plan": "monthly"},
        "items": {
            "data": [
                {
                    "current_period_start": epoch(NOW - timedelta(days=1)),
                    "current_period_end": epoch(NOW + timedelta(days=29)),
                    "price": {"id": "price_monthly", "recurring": {"interval": "month"}},
                }
            ]
        },
    }
    subscription.update(fields)
    return subscription


def stripe_event(event_type, obj, at=NOW - timedelta(minutes=30), previous_attributes=None):
    data = {"object": obj}
    if previous_attributes is not None:
        data["previous_attributes"] = previous_attributes
    return {"id": f"evt_{fake.uuid4()}", "type": event_type, "created": epoch(at), "data": data}


def post_revenuecat(client, body, signature=None):
    headers = {"X-RevenueCat-Signature": signature} if signature else {}
    return client.post(
        "/webhooks/revenuecat",
        data=json.dumps(body),
        content_type="application/json",
        headers=headers,
    )


def post_stripe(client, body, signature="t=1,v1=abc"):
    return client.post(
        "/webhooks/stripe",
        data=json.dumps(body),
        content_type="application/json",
        headers={"Stripe-Signature": signature},
    )


class TestStoreAggregatorWebhooks:
    def test_initial_purchase_creates_subscription(self, client, notifier, user_id):
        response = post_revenuecat(client, revenuecat_event("INITIAL_PURCHASE", user_id))

        assert response.status_code == 200
        assert response.get_json() == {"received": True, "status": "applied"}
        row = Subscription.query.one()
        assert row.user_id == user_id
        assert row.provider == "store_aggregator"
        assert row.plan == "monthly"
        assert row.status == "active"
        assert row.current_period_end == NOW + timedelta(days=30)
        assert notifier.kinds == [NotificationKind.WELCOME]

    def test_trial_purchase_is_trialing(self, client, user_id):
        post_revenuecat(client, revenuecat_event("INITIAL_PURCHASE", user_id, period_type="TRIAL"))

        row = Subscription.query.one()
        assert row.status == "trialing"
        assert row.trial_end == NOW + timedelta(days=30)

    def test_deferred_cancellation_keeps_entitlement(self, client, billing, user_id):
        post_revenuecat(client, revenuecat_event("INITIAL_PURCHASE", user_id))
        response = post_revenuecat(
            client,
            revenuecat_event(
                "CANCELLATION", user_id, at=NOW - timedelta(minutes=30), cancel_reason="UNSUBSCRIBE"
            ),
        )

        assert response.get_json()["status"] == "applied"
        row = Subscription.query.one()
        assert row.status == "active"
        assert row.cancelled_at == NOW - timedelta(minutes=30)
        assert billing.entitlements.has_active_entitlement(user_id) is True

    def test_redelivered_cancellation_notifies_once(self, client, notifier, user_id):
        post_revenuecat(client, revenuecat_event("INITIAL_PURCHASE", user_id))
        cancellation = revenuecat_event(
            "CANCELLATION", user_id, at=NOW - timedelta(minutes=30), cancel_reason="UNSUBSCRIBE"
        )

        statuses = [post_revenuecat(client, cancellation).get_json()["status"] for _ in range(3)]
        row = Subscription.query.one()

        assert statuses == ["applied", "duplicate", "duplicate"]
        assert row.cancelled_at == NOW - timedelta(minutes=30)
        assert notifier.kinds == [NotificationKind.WELCOME, NotificationKind.CANCELLATION_SCHEDULED]
        event = WebhookEvent.query.filter_by(
            external_event_id=cancellation["event"]["id"]
        ).one()
        assert event.attempts == 3

    def test_billing_error_cancellation_is_payment_failure(self, client, notifier, user_id):
        post_revenuecat(client, revenuecat_event("INITIAL_PURCHASE", user_id))
        post_revenuecat(
            client,
            revenuecat_event(
                "CANCELLATION", user_id, at=NOW - timedelta(minutes=30), cancel_reason="BILLING_ERROR"
            ),
        )

        row = Subscription.query.one()
        assert row.status == "past_due"
        assert row.cancelled_at is None
        assert notifier.kinds[-1] is NotificationKind.PAYMENT_FAILED

    def test_product_change_switches_plan(self, client, notifier, user_id):
        post_revenuecat(client, revenuecat_event("INITIAL_PURCHASE", user_id))
        post_revenuecat(
            client,
            revenuecat_event(
                "PRODUCT_CHANGE",
                user_id,
                at=NOW - timedelta(minutes=10),
                new_product_id="expenseai_yearly",
                expiration_at_ms=millis(NOW + timedelta(days=365)),
            ),
        )

        assert Subscription.query.one().plan == "yearly"
        assert notifier.kinds[-1] is NotificationKind.PLAN_CHANGED

    def test_unknown_event_type_is_acknowledged(self, client):
        response = post_revenuecat(client, revenuecat_event("TEST", "user-1"))

        assert response.status_code == 200
        assert response.get_json()["status"] == "ignored"
        assert Subscription.query.count() == 0

    def test_malformed_body_is_acknowledged(self, client):
        response = client.post(
            "/webhooks/revenuecat", data="{not json", content_type="application/json"
        )

        assert response.status_code == 200
        assert response.get_json()["status"] == "invalid"

    def test_event_without_app_user_is_invalid(self, client):
        body = revenuecat_event("INITIAL_PURCHASE", None)

        response = post_revenuecat(client, body)

        assert response.get_json()["status"] == "invalid"
        assert Subscription.query.count() == 0

    def test_acknowledged_events_are_logged_with_outcome(self, client, billing):
        transfer = revenuecat_event("TRANSFER", "user-1")
        orphan = revenuecat_event("CANCELLATION", None)
        post_revenuecat(client, transfer)
        post_revenuecat(client, orphan)

        logged = {
            event.external_event_id: event for event in WebhookEvent.query.all()
        }
        assert logged[transfer["event"]["id"]].outcome == "ignored"
        assert logged[orphan["event"]["id"]].outcome == "invalid"
        assert all(event.is_processed for event in logged.values())

        for event in logged.values():
            event.received_at = NOW - timedelta(days=400)
            event.processed_at = NOW - timedelta(days=400)
        db.session.commit()

        assert billing.event_log.purge_processed(30) == 2
        assert WebhookEvent.query.count() == 0

    @pytest.mark.parametrize(
        "field, value",
        [("event_timestamp_ms", "abc"), ("expiration_at_ms", "soon"), ("purchased_at_ms", 10**20)],
    )
    def test_unreadable_timestamp_is_acknowledged_as_invalid(self, client, user_id, field, value):
        body = revenuecat_event("INITIAL_PURCHASE", user_id, **{field: value})

        response = post_revenuecat(client, body)

        assert response.status_code == 200
        assert response.get_json()["status"] == "invalid"
        assert Subscription.query.count() == 0
        assert WebhookEvent.query.one().outcome == "invalid"

    def test_failed_write_is_not_acknowledged_and_redelivery_applies(self, client, billing, notifier, user_id):
        body = revenuecat_event("INITIAL_PURCHASE", user_id)
        failure = OperationalError("UPDATE subscriptions", {}, Exception("database is locked"))

        with patch.object(billing.store, "save", side_effect=failure):
            response = post_revenuecat(client, body)

        assert response.status_code == 500
        assert response.get_json()["error"] == "PERSISTENCE_ERROR"
        logged = WebhookEvent.query.filter_by(external_event_id=body["event"]["id"]).one()
        assert logged.processed_at is None
        assert Subscription.query.count() == 0
        assert notifier.sent == []

        redelivery = post_revenuecat(client, body)

        assert redelivery.status_code == 200
        assert redelivery.get_json()["status"] == "applied"
        assert Subscription.query.one().status == "active"
        assert WebhookEvent.query.one().attempts == 2
        assert notifier.kinds == [NotificationKind.WELCOME]

    def test_redelivered_unknown_type_is_duplicate(self, client):
        body = revenuecat_event("TRANSFER", "user-1")

        statuses = [post_revenuecat(client, body).get_json()["status"] for _ in range(2)]

        assert statuses == ["ignored", "duplicate"]


class TestSignatureVerification:
    @pytest.fixture(autouse=True)
    def webhook_secret(self, billing):
        billing.webhooks.verifier.secrets[Provider.STORE_AGGREGATOR] = RC_SECRET

    def _sign(self, body):
        return hmac.new(RC_SECRET.encode(), json.dumps(body).encode(), hashlib.sha256).hexdigest()

    def test_valid_signature_is_processed(self, client, user_id):
        body = revenuecat_event("INITIAL_PURCHASE", user_id)

        response = post_revenuecat(client, body, signature=self._sign(body))

        assert response.status_code == 200
        assert WebhookEvent.query.one().verification == "signature"

    def test_wrong_signature_is_rejected(self, client, user_id):
        body = revenuecat_event("INITIAL_PURCHASE", user_id)

        response = post_revenuecat(client, body, signature="0" * 64)

        assert response.status_code == 401
        assert response.get_json()["error"] == "WEBHOOK_AUTHENTICATION_FAILED"
        assert WebhookEvent.query.count() == 0

    def test_missing_signature_is_rejected(self, client, user_id):
        response = post_revenuecat(client, revenuecat_event("INITIAL_PURCHASE", user_id))

        assert response.status_code == 401

    def test_unsigned_mode_records_verification(self, client, billing, user_id):
        billing.webhooks.verifier.secrets[Provider.STORE_AGGREGATOR] = None

        post_revenuecat(client, revenuecat_event("INITIAL_PURCHASE", user_id))

        assert WebhookEvent.query.one().verification == "unverified"


@pytest.mark.payment
class TestCardBillingWebhooks:
    @pytest.fixture(autouse=True)
    def webhook_secret(self, billing):
        billing.webhooks.verifier.secrets[Provider.CARD_BILLING] = "whsec_test"

    @patch("stripe.WebhookSignature.verify_header", return_value=True)
    def test_subscription_created(self, mock_verify, client, notifier, user_id):
        response = post_stripe(
            client, stripe_event("customer.subscription.created", stripe_subscription(user_id))
        )

        assert response.status_code == 200
        mock_verify.assert_called_once()
        row = Subscription.query.one()
        assert row.external_subscription_id == "sub_123"
        assert row.external_customer_id == "cus_123"
        assert row.status == "active"
        assert notifier.kinds == [NotificationKind.WELCOME]

    @patch("stripe.WebhookSignature.verify_header")
    def test_invalid_signature_returns_401(self, mock_verify, client, user_id):
        mock_verify.side_effect = stripe.SignatureVerificationError("bad signature", "t=1,v1=abc")

        response = post_stripe(
            client, stripe_event("customer.subscription.created", stripe_subscription(user_id))
        )

        assert response.status_code == 401
        assert Subscription.query.count() == 0

    @patch("stripe.WebhookSignature.verify_header", return_value=True)
    def test_payment_failed_invoice_moves_to_past_due(self, mock_verify, client, notifier, user_id):
        post_stripe(client, stripe_event("customer.subscription.created", stripe_subscription(user_id)))
        invoice = {
            "id": "in_123",
            "object": "invoice",
            "customer": "cus_123",
            "subscription": "sub_123",
            "amount_due": 999,
            "currency": "usd",
        }

        post_stripe(client, stripe_event("invoice.payment_failed", invoice, at=NOW - timedelta(minutes=5)))

        assert Subscription.query.one().status == "past_due"
        _, kind, metadata = notifier.sent[-1]
        assert kind is NotificationKind.PAYMENT_FAILED
        assert metadata["amount"] == 9.99

    @patch("stripe.WebhookSignature.verify_header", return_value=True)
    def test_scheduled_cancellation_from_update(self, mock_verify, client, user_id):
        post_stripe(client, stripe_event("customer.subscription.created", stripe_subscription(user_id)))
        updated = stripe_subscription(
            user_id, cancel_at_period_end=True, canceled_at=epoch(NOW - timedelta(minutes=5))
        )

        post_stripe(
            client,
            stripe_event(
                "customer.subscription.updated",
                updated,
                at=NOW - timedelta(minutes=5),
                previous_attributes={"cancel_at_period_end": False},
            ),
        )

        row = Subscription.query.one()
        assert row.status == "active"
        assert row.cancelled_at == NOW - timedelta(minutes=5)

    @patch("stripe.WebhookSignature.verify_header", return_value=True)
    def test_deleted_subscription_is_cancelled(self, mock_verify, client, billing, user_id):
        post_stripe(client, stripe_event("customer.subscription.created", stripe_subscription(user_id)))
        deleted = stripe_subscription(
            user_id, status="canceled", ended_at=epoch(NOW - timedelta(minutes=5))
        )

        post_stripe(
            client,
            stripe_event("customer.subscription.deleted", deleted, at=NOW - timedelta(minutes=5)),
        )

        row = Subscription.query.one()
        assert row.status == "cancelled"
        assert row.current_period_end == NOW - timedelta(minutes=5)
        assert billing.entitlements.has_active_entitlement(user_id) is False

    @patch("stripe.WebhookSignature.verify_header", return_value=True)
    def test_scheduled_cancellation_runs_out_at_period_end(self, mock_verify, client, clock, notifier, user_id):
        period_end = NOW + timedelta(days=29)
        scheduled_at = epoch(NOW - timedelta(minutes=20))
        post_stripe(client, stripe_event("customer.subscription.created", stripe_subscription(user_id)))
        post_stripe(
            client,
            stripe_event(
                "customer.subscription.updated",
                stripe_subscription(user_id, cancel_at_period_end=True, canceled_at=scheduled_at),
                at=NOW - timedelta(minutes=20),
                previous_attributes={"cancel_at_period_end": False},
            ),
        )
        clock.advance(days=29, seconds=5)

        post_stripe(
            client,
            stripe_event(
                "customer.subscription.deleted",
                stripe_subscription(
                    user_id, status="canceled", canceled_at=scheduled_at, ended_at=epoch(period_end)
                ),
                at=period_end,
            ),
        )

        row = Subscription.query.one()
        assert row.status == "expired"
        assert row.current_period_end == period_end
        assert row.cancelled_at == NOW - timedelta(minutes=20)
        assert notifier.kinds[-1] is NotificationKind.EXPIRED

    @patch("stripe.WebhookSignature.verify_header", return_value=True)
    def test_unreadable_created_timestamp_is_invalid(self, mock_verify, client, user_id):
        body = stripe_event("customer.subscription.created", stripe_subscription(user_id))
        body["created"] = "yesterday"

        response = post_stripe(client, body)

        assert response.status_code == 200
        assert response.get_json()["status"] == "invalid"
        assert Subscription.query.count() == 0

    @patch("stripe.WebhookSignature.verify_header", return_value=True)
    def test_incomplete_subscription_is_not_mirrored(self, mock_verify, client, user_id):
        response = post_stripe(
            client,
            stripe_event("customer.subscription.created", stripe_subscription(user_id, status="incomplete")),
        )

        assert response.get_json()["status"] == "ignored"
        assert Subscription.query.count() == 0


class TestAsyncProcessing:
    def test_event_is_queued_then_processed(self, client, billing, notifier, user_id):
        enqueue = MagicMock()
        billing.webhooks.enqueue = enqueue
        body = revenuecat_event("INITIAL_PURCHASE", user_id)

        response = post_revenuecat(client, body)

        assert response.get_json()["status"] == "queued"
        enqueue.assert_called_once_with("store_aggregator", body["event"]["id"])
        assert Subscription.query.count() == 0

        result = billing.webhooks.process_recorded(Provider.STORE_AGGREGATOR, body["event"]["id"])

        assert result.status.value == "applied"
        assert Subscription.query.one().user_id == user_id
        assert notifier.kinds == [NotificationKind.WELCOME]

    def test_enqueue_failure_falls_back_to_inline(self, client, billing, user_id):
        billing.webhooks.enqueue = MagicMock(side_effect=ConnectionError("broker down"))

        response = post_revenuecat(client, revenuecat_event("INITIAL_PURCHASE", user_id))

        assert response.get_json()["status"] == "applied"
        assert Subscription.query.count() == 1
