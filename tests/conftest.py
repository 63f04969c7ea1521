from datetime import datetime, timedelta

import pytest
from faker import Faker
from flask_jwt_extended import create_access_token

from expenseai_billing import create_app
from expenseai_billing.billing.services import get_billing
from expenseai_billing.domain.subscriptions import (
    EventKind,
    Plan,
    Provider,
    ProviderSnapshot,
    ReconcileEvent,
    SubscriptionState,
    SubscriptionStatus,
)
from expenseai_billing.extensions import db
from expenseai_billing.notifications.notification_service import NotificationTrigger
from expenseai_billing.services.provider_client import CreatedSubscription, ProviderClient
from expenseai_billing.utils.retry_policy import RetryPolicy

# Initialize Faker for generating test data
fake = Faker()

NOW = datetime(2026, 3, 1, 12, 0, 0)


def pytest_configure(config):
    config.addinivalue_line("markers", "db: mark test as database-intensive")
    config.addinivalue_line("markers", "payment: mark test as payment-related")
    config.addinivalue_line("markers", "webhook: mark test as webhook-related")


class FrozenClock:
    """Callable clock the tests can move forward."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier(NotificationTrigger):
    def __init__(self):
        self.sent = []
        self.fail = False

    def notify(self, user_id, kind, metadata):
        if self.fail:
            raise RuntimeError("push gateway down")
        self.sent.append((user_id, kind, dict(metadata)))

    @property
    def kinds(self):
        return [kind for _, kind, _ in self.sent]


class FakeProviderClient(ProviderClient):
    """In-memory provider; tests set ``snapshots``/``by_customer``/``error``."""

    def __init__(self, provider):
        super().__init__(RetryPolicy(max_attempts=1, sleep=lambda seconds: None))
        self.provider = provider
        self.snapshots = {}
        self.by_customer = {}
        self.error = None
        self.cancel_calls = []
        self.create_calls = []
        self.payment_method_calls = []
        self.verify_calls = []
        self.created = None
        self.verified = None

    def _maybe_fail(self):
        if self.error is not None:
            raise self.error

    def retrieve_subscription(self, external_subscription_id):
        self._maybe_fail()
        return self.snapshots.get(external_subscription_id)

    def find_subscription_for_customer(self, external_customer_id):
        self._maybe_fail()
        return self.by_customer.get(external_customer_id)

    def cancel_subscription(self, external_subscription_id, at_period_end=True):
        self._maybe_fail()
        self.cancel_calls.append((external_subscription_id, at_period_end))
        return self.snapshots.get(external_subscription_id)

    def create_subscription(self, user_id, plan, payment_method_id, customer_id=None, email=None):
        self._maybe_fail()
        self.create_calls.append((user_id, plan, payment_method_id, customer_id))
        return self.created

    def update_payment_method(self, external_customer_id, external_subscription_id, payment_method_id):
        self._maybe_fail()
        self.payment_method_calls.append(
            (external_customer_id, external_subscription_id, payment_method_id)
        )

    def verify_purchase(self, app_user_id, platform, product_id, purchase_token):
        self._maybe_fail()
        self.verify_calls.append((app_user_id, platform, product_id, purchase_token))
        return self.verified


@pytest.fixture()
def clock():
    return FrozenClock(NOW)


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def card_client():
    return FakeProviderClient(Provider.CARD_BILLING)


@pytest.fixture()
def store_client():
    return FakeProviderClient(Provider.STORE_AGGREGATOR)


@pytest.fixture()
def app(clock, notifier, card_client, store_client):
    """Application on in-memory SQLite with fake providers injected"""
    app = create_app(
        "testing",
        clients={
            Provider.CARD_BILLING: card_client,
            Provider.STORE_AGGREGATOR: store_client,
        },
        notifier=notifier,
        clock=clock,
    )

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def billing(app):
    return get_billing()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def user_id():
    return fake.uuid4()


@pytest.fixture()
def auth_headers(app, user_id):
    token = create_access_token(identity=user_id, additional_claims={"email": fake.email()})
    return {"Authorization": f"Bearer {token}"}


def make_state(user_id="user-1", **overrides):
    values = dict(
        user_id=user_id,
        provider=Provider.CARD_BILLING,
        external_subscription_id="sub_123",
        plan=Plan.MONTHLY,
        status=SubscriptionStatus.ACTIVE,
        current_period_start=NOW - timedelta(days=10),
        current_period_end=NOW + timedelta(days=20),
        external_customer_id="cus_123",
        state_effective_at=NOW - timedelta(days=10),
    )
    values.update(overrides)
    return SubscriptionState(**values)


def make_event(kind, at=NOW, **overrides):
    values = dict(
        provider=Provider.CARD_BILLING,
        kind=kind,
        external_subscription_id="sub_123",
        effective_at=at,
    )
    values.update(overrides)
    return ReconcileEvent(**values)


def purchase_event(user_id, at=NOW - timedelta(days=1), days=30, **overrides):
    values = dict(
        user_id=user_id,
        external_customer_id="cus_123",
        plan=Plan.MONTHLY,
        status=SubscriptionStatus.ACTIVE,
        current_period_start=at,
        current_period_end=at + timedelta(days=days),
        event_id=f"evt_{fake.uuid4()}",
        event_type="customer.subscription.created",
    )
    values.update(overrides)
    return make_event(EventKind.PURCHASE, at=at, **values)


def make_snapshot(provider=Provider.CARD_BILLING, external_subscription_id="sub_123", **overrides):
    values = dict(
        provider=provider,
        external_subscription_id=external_subscription_id,
        plan=Plan.MONTHLY,
        status=SubscriptionStatus.ACTIVE,
        fetched_at=NOW,
        current_period_start=NOW - timedelta(days=5),
        current_period_end=NOW + timedelta(days=25),
        external_customer_id="cus_123",
    )
    values.update(overrides)
    return ProviderSnapshot(**values)


def make_created(snapshot, client_secret="pi_secret_123", provider_status="active"):
    return CreatedSubscription(
        external_subscription_id=snapshot.external_subscription_id if snapshot else "sub_pending",
        external_customer_id=snapshot.external_customer_id if snapshot else "cus_123",
        snapshot=snapshot,
        client_secret=client_secret,
        provider_status=provider_status,
    )
