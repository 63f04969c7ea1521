import logging
from dataclasses import dataclass
from typing import Optional

from expenseai_billing.domain.subscriptions import (
    EventKind,
    Plan,
    Provider,
    ReconcileEvent,
    SubscriptionState,
)
from expenseai_billing.errors import (
    StateConflict,
    SubscriptionNotFound,
    UnsupportedOperation,
    ValidationError,
)
from expenseai_billing.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreationResult:
    subscription: Optional[SubscriptionState]
    client_secret: Optional[str] = None
    provider_status: Optional[str] = None

    @property
    def requires_action(self):
        return self.subscription is None or not self.subscription.status.is_live


class SubscriptionManager:
    """
    User-initiated subscription operations.

    Each operation calls the provider first, outside any lock, and then
    records the outcome through the reconciler so the local cache changes
    by the same rules as for webhooks.
    """

    def __init__(self, store, reconciler, clients, identity, clock=utcnow):
        self.store = store
        self.reconciler = reconciler
        self.clients = clients
        self.identity = identity
        self.clock = clock

    def _client(self, provider):
        client = self.clients.get(provider)
        if client is None:
            raise UnsupportedOperation(f"{provider.value} is not configured")
        return client

    def cancel(self, user_id, subscription_id, cancel_at_period_end=True):
        record = self.store.get_for_user(user_id, subscription_id)
        if record is None:
            raise SubscriptionNotFound("Subscription not found")
        state = record.to_state()
        if state.status.is_terminal:
            raise StateConflict(
                f"Subscription is already {state.status.value}",
                details={"subscription_id": subscription_id},
            )

        self._client(state.provider).cancel_subscription(
            state.external_subscription_id, at_period_end=cancel_at_period_end
        )

        now = self.clock()
        result = self.reconciler.apply(
            ReconcileEvent(
                provider=state.provider,
                kind=EventKind.CANCELLATION,
                external_subscription_id=state.external_subscription_id,
                effective_at=now,
                user_id=user_id,
                cancel_at_period_end=cancel_at_period_end,
                cancelled_at=now,
            )
        )
        logger.info(
            "Subscription cancellation requested",
            extra={
                "user_id": user_id,
                "subscription_id": subscription_id,
                "cancel_at_period_end": cancel_at_period_end,
            },
        )
        return result.subscription or state

    def create_card_subscription(self, user_id, plan, payment_method_id, email=None):
        plan = Plan.parse(plan)
        if plan is None:
            raise ValidationError("plan must be one of weekly, monthly, yearly")
        if not payment_method_id:
            raise ValidationError("payment_method_id is required")

        current = self.store.get_current_for_user(user_id)
        if current is not None and current.to_state().is_entitled(self.clock()):
            raise StateConflict(
                "User already has an active subscription",
                details={"subscription_id": current.external_subscription_id},
            )

        client = self._client(Provider.CARD_BILLING)
        customer_id = self.identity.external_customer_id(user_id, Provider.CARD_BILLING)
        created = client.create_subscription(
            user_id, plan, payment_method_id, customer_id=customer_id, email=email
        )

        subscription = None
        if created.snapshot is not None:
            result = self.reconciler.apply(
                created.snapshot.to_event(kind=EventKind.PURCHASE, user_id=user_id)
            )
            subscription = result.subscription
        else:
            # Awaiting payment confirmation; the invoice webhook creates the row.
            self.identity.link(user_id, Provider.CARD_BILLING, created.external_customer_id)
            self.store.commit()

        return CreationResult(
            subscription=subscription,
            client_secret=created.client_secret,
            provider_status=created.provider_status,
        )

    def update_payment_method(self, user_id, payment_method_id):
        if not payment_method_id:
            raise ValidationError("payment_method_id is required")
        record = self.store.get_current_for_user(user_id)
        if record is None:
            raise SubscriptionNotFound("No subscription on file")
        state = record.to_state()

        customer_id = state.external_customer_id or self.identity.external_customer_id(
            user_id, state.provider
        )
        self._client(state.provider).update_payment_method(
            customer_id, state.external_subscription_id, payment_method_id
        )
        logger.info(
            "Payment method updated",
            extra={"user_id": user_id, "subscription_id": state.external_subscription_id},
        )
        return state

    def verify_purchase(self, user_id, platform, product_id, purchase_token):
        if not product_id or not purchase_token:
            raise ValidationError("product_id and purchase_token are required")

        client = self._client(Provider.STORE_AGGREGATOR)
        app_user_id = self.identity.external_customer_id(user_id, Provider.STORE_AGGREGATOR)
        verified = client.verify_purchase(app_user_id, platform, product_id, purchase_token)
        result = self.reconciler.apply(verified.snapshot.to_event(user_id=user_id))
        return result.subscription
