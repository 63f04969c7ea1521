# stripe_service.py - card billing provider client
import logging
from collections.abc import Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

import sentry_sdk
import stripe

from expenseai_billing.domain.subscriptions import (
    Plan,
    Provider,
    ProviderSnapshot,
    SubscriptionStatus,
)
from expenseai_billing.errors import (
    ProviderRequestError,
    ProviderUnavailable,
    ValidationError,
)
from expenseai_billing.services.provider_client import CreatedSubscription, ProviderClient
from expenseai_billing.utils.clock import from_timestamp, utcnow

logger = logging.getLogger(__name__)

STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
    "paused": SubscriptionStatus.EXPIRED,
}

# Subscriptions whose first payment has not been confirmed yet are not
# mirrored locally; the record appears once the provider reports them active.
UNCONFIRMED_STATUSES = frozenset({"incomplete"})


@dataclass
class StripeConfig:
    api_key: Optional[str]
    webhook_secret: Optional[str] = None
    webhook_tolerance: int = 300
    timeout: int = 10
    price_ids: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_app_config(cls, config) -> "StripeConfig":
        return cls(
            api_key=config.get("STRIPE_SECRET_KEY"),
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
            webhook_tolerance=int(config.get("STRIPE_WEBHOOK_TOLERANCE", 300)),
            timeout=int(config.get("PROVIDER_TIMEOUT_SECONDS", 10)),
            price_ids=dict(config.get("STRIPE_PRICE_IDS") or {}),
        )

    def price_for(self, plan: Plan) -> str:
        price_id = self.price_ids.get(plan.value)
        if not price_id:
            raise ValidationError(f"No card billing price configured for plan '{plan.value}'")
        return price_id


def configure_stripe_http(timeout: int) -> None:
    """Bound every Stripe request by the provider timeout; retries are ours."""
    stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
    stripe.max_network_retries = 0


@contextmanager
def stripe_operation_context(operation_name: str, **context_vars):
    """
    Context manager for Stripe operations.

    Example:
        with stripe_operation_context("retrieve_subscription", subscription_id=sub_id):
            # Stripe operation here
    """
    start_time = datetime.now()
    sentry_sdk.add_breadcrumb(
        category="stripe",
        message=operation_name,
        data=context_vars,
    )
    try:
        yield
    except Exception as e:
        duration = (datetime.now() - start_time).total_seconds()
        logger.warning(
            f"Stripe operation failed: {operation_name}",
            extra={
                "operation": operation_name,
                "duration_seconds": duration,
                "error_type": type(e).__name__,
                "error_message": str(e),
                **context_vars,
            },
        )
        raise
    else:
        duration = (datetime.now() - start_time).total_seconds()
        logger.debug(
            f"Completed Stripe operation: {operation_name}",
            extra={"operation": operation_name, "duration_seconds": duration, **context_vars},
        )


def as_mapping(obj: Any) -> Mapping:
    if obj is None:
        return {}
    if isinstance(obj, Mapping):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def object_id(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return as_mapping(value).get("id")


def price_interval(item: Mapping) -> Optional[str]:
    price = item.get("price") or item.get("plan") or {}
    recurring = price.get("recurring") or {}
    return recurring.get("interval") or price.get("interval")


def snapshot_from_stripe(
    subscription: Any,
    fetched_at: datetime,
    user_id: Optional[str] = None,
) -> Optional[ProviderSnapshot]:
    """
    Translate a Stripe subscription object into a ``ProviderSnapshot``.

    Newer API versions moved the billing window from the subscription onto
    its items, so both locations are read.
    """
    sub = as_mapping(subscription)
    raw_status = sub.get("status")
    if raw_status in UNCONFIRMED_STATUSES:
        return None
    status = STRIPE_STATUS_MAP.get(raw_status)
    if status is None:
        raise ValidationError(f"Unknown card billing subscription status '{raw_status}'")

    if not sub.get("id"):
        raise ValidationError("Card billing subscription without id")

    items = (sub.get("items") or {}).get("data") or []
    first_item = as_mapping(items[0]) if items else {}
    metadata = sub.get("metadata") or {}

    period_start = sub.get("current_period_start") or first_item.get("current_period_start")
    period_end = sub.get("current_period_end") or first_item.get("current_period_end")
    plan = (
        Plan.parse(metadata.get("plan"))
        or Plan.from_interval(price_interval(first_item))
        or Plan.MONTHLY
    )

    cancelled_at = None
    if sub.get("cancel_at_period_end") or status is SubscriptionStatus.CANCELLED:
        cancelled_at = (
            from_timestamp(sub.get("canceled_at"))
            or from_timestamp(sub.get("ended_at"))
            or fetched_at
        )

    price = first_item.get("price") or {}
    return ProviderSnapshot(
        provider=Provider.CARD_BILLING,
        external_subscription_id=sub["id"],
        external_customer_id=object_id(sub.get("customer")),
        user_id=user_id or metadata.get("user_id"),
        plan=plan,
        status=status,
        current_period_start=from_timestamp(period_start),
        current_period_end=from_timestamp(period_end),
        cancelled_at=cancelled_at,
        trial_end=from_timestamp(sub.get("trial_end")),
        fetched_at=fetched_at,
        metadata={"price_id": price.get("id"), "raw_status": raw_status},
    )


class StripeBillingClient(ProviderClient):
    """Card billing provider client built on the Stripe SDK."""

    provider = Provider.CARD_BILLING

    def __init__(self, config: StripeConfig, retry_policy=None, clock=utcnow):
        super().__init__(retry_policy)
        self.config = config
        self.clock = clock

    def _call(self, operation: str, func, *args, context: Optional[Dict[str, Any]] = None, **kwargs):
        context = context or {}

        def attempt():
            with stripe_operation_context(operation, **context):
                try:
                    return func(*args, api_key=self.config.api_key, **kwargs)
                except stripe.RateLimitError as exc:
                    raise ProviderUnavailable(
                        "Card billing provider rate limited the request",
                        provider=self.provider,
                        http_status=429,
                    ) from exc
                except stripe.APIConnectionError as exc:
                    raise ProviderUnavailable(
                        "Could not reach card billing provider",
                        provider=self.provider,
                    ) from exc
                except stripe.StripeError as exc:
                    status = getattr(exc, "http_status", None)
                    if status is None or status >= 500:
                        raise ProviderUnavailable(
                            "Card billing provider error",
                            provider=self.provider,
                            http_status=status,
                        ) from exc
                    raise ProviderRequestError(
                        getattr(exc, "user_message", None) or str(exc),
                        provider=self.provider,
                        http_status=status,
                    ) from exc

        return self.retry_policy.run(attempt, description=f"stripe {operation}")

    def retrieve_subscription(self, external_subscription_id: str) -> Optional[ProviderSnapshot]:
        try:
            subscription = self._call(
                "retrieve_subscription",
                stripe.Subscription.retrieve,
                external_subscription_id,
                context={"subscription_id": external_subscription_id},
            )
        except ProviderRequestError as exc:
            if exc.http_status == 404:
                return None
            raise
        return snapshot_from_stripe(subscription, fetched_at=self.clock())

    def find_subscription_for_customer(self, external_customer_id: str) -> Optional[ProviderSnapshot]:
        try:
            result = self._call(
                "list_subscriptions",
                stripe.Subscription.list,
                customer=external_customer_id,
                status="all",
                limit=10,
                context={"customer_id": external_customer_id},
            )
        except ProviderRequestError as exc:
            if exc.http_status == 404:
                return None
            raise

        fetched_at = self.clock()
        snapshots = [
            snapshot
            for snapshot in (
                snapshot_from_stripe(item, fetched_at=fetched_at)
                for item in (as_mapping(result).get("data") or [])
            )
            if snapshot is not None
        ]
        # Stripe lists newest first; prefer the newest live subscription.
        for snapshot in snapshots:
            if snapshot.status.is_live:
                return snapshot
        return snapshots[0] if snapshots else None

    def create_subscription(
        self,
        user_id: str,
        plan: Plan,
        payment_method_id: str,
        customer_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> CreatedSubscription:
        price_id = self.config.price_for(plan)
        context = {"user_id": user_id, "plan": plan.value}

        if customer_id is None:
            customer = self._call(
                "create_customer",
                stripe.Customer.create,
                email=email,
                metadata={"user_id": user_id},
                idempotency_key=f"expenseai-customer-{user_id}",
                context=context,
            )
            customer_id = as_mapping(customer)["id"]

        self._attach_default_payment_method(customer_id, payment_method_id, context)

        subscription = self._call(
            "create_subscription",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id}],
            payment_behavior="default_incomplete",
            payment_settings={"save_default_payment_method": "on_subscription"},
            expand=["latest_invoice.payment_intent"],
            metadata={"user_id": user_id, "plan": plan.value},
            idempotency_key=f"expenseai-subscription-{user_id}-{plan.value}-{payment_method_id}",
            context=context,
        )
        sub = as_mapping(subscription)
        invoice = as_mapping(sub.get("latest_invoice"))
        payment_intent = as_mapping(invoice.get("payment_intent"))

        logger.info(
            "Card billing subscription created",
            extra={**context, "subscription_id": sub.get("id"), "status": sub.get("status")},
        )
        return CreatedSubscription(
            external_subscription_id=sub["id"],
            external_customer_id=customer_id,
            snapshot=snapshot_from_stripe(sub, fetched_at=self.clock(), user_id=user_id),
            client_secret=payment_intent.get("client_secret"),
            provider_status=sub.get("status"),
        )

    def cancel_subscription(self, external_subscription_id: str, at_period_end: bool = True) -> Optional[ProviderSnapshot]:
        context = {"subscription_id": external_subscription_id, "at_period_end": at_period_end}
        if at_period_end:
            subscription = self._call(
                "schedule_cancellation",
                stripe.Subscription.modify,
                external_subscription_id,
                cancel_at_period_end=True,
                context=context,
            )
        else:
            subscription = self._call(
                "cancel_subscription",
                stripe.Subscription.cancel,
                external_subscription_id,
                context=context,
            )
        return snapshot_from_stripe(subscription, fetched_at=self.clock())

    def update_payment_method(
        self,
        external_customer_id: str,
        external_subscription_id: str,
        payment_method_id: str,
    ) -> None:
        context = {"customer_id": external_customer_id, "subscription_id": external_subscription_id}
        self._attach_default_payment_method(external_customer_id, payment_method_id, context)
        self._call(
            "set_subscription_payment_method",
            stripe.Subscription.modify,
            external_subscription_id,
            default_payment_method=payment_method_id,
            context=context,
        )

    def _attach_default_payment_method(self, customer_id: str, payment_method_id: str, context: Dict[str, Any]) -> None:
        self._call(
            "attach_payment_method",
            stripe.PaymentMethod.attach,
            payment_method_id,
            customer=customer_id,
            context=context,
        )
        self._call(
            "set_default_payment_method",
            stripe.Customer.modify,
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
            context=context,
        )
