"""
Store aggregator (RevenueCat) webhook payloads to ``ReconcileEvent``.

RevenueCat keys everything by app user id, so the app user id doubles as
the external subscription id and the external customer id.
"""

from dataclasses import replace

from expenseai_billing.domain.subscriptions import (
    EventKind,
    Plan,
    Provider,
    ReconcileEvent,
    SubscriptionStatus,
)
from expenseai_billing.errors import ValidationError
from expenseai_billing.utils.clock import from_millis

IMMEDIATE_CANCEL_REASONS = frozenset({"CUSTOMER_SUPPORT"})
BILLING_CANCEL_REASONS = frozenset({"BILLING_ERROR"})


def parse_envelope(body):
    event = body.get("event")
    if not isinstance(event, dict):
        raise ValidationError("Store aggregator payload without event")
    event_id = event.get("id")
    event_type = event.get("type")
    if not event_id or not event_type:
        raise ValidationError("Store aggregator event without id or type")
    return event_id, event_type


def _event(body):
    return body.get("event") or {}


def _normalize(body, kind, product_key="product_id"):
    event = _event(body)
    app_user_id = event.get("app_user_id")
    if not app_user_id:
        raise ValidationError("Store aggregator event without app_user_id")

    effective_at = from_millis(event.get("event_timestamp_ms") or event.get("purchased_at_ms"))
    if effective_at is None:
        raise ValidationError("Store aggregator event without timestamp")

    product_id = event.get(product_key) or event.get("product_id")
    return ReconcileEvent(
        provider=Provider.STORE_AGGREGATOR,
        kind=kind,
        external_subscription_id=app_user_id,
        external_customer_id=app_user_id,
        effective_at=effective_at,
        plan=Plan.from_product_id(product_id) if product_id else None,
        current_period_start=from_millis(event.get("purchased_at_ms")),
        current_period_end=from_millis(event.get("expiration_at_ms")),
        metadata={
            "product_id": product_id,
            "store": event.get("store"),
            "environment": event.get("environment"),
            "transaction_id": event.get("transaction_id"),
            "original_transaction_id": event.get("original_transaction_id"),
            "reason": event.get("cancel_reason") or event.get("expiration_reason"),
            "amount": event.get("price"),
            "currency": event.get("currency"),
        },
    )


def handle_initial_purchase(body):
    normalized = _normalize(body, EventKind.PURCHASE)
    if (_event(body).get("period_type") or "").upper() == "TRIAL":
        return replace(
            normalized,
            status=SubscriptionStatus.TRIALING,
            trial_end=normalized.current_period_end,
        )
    return replace(normalized, status=SubscriptionStatus.ACTIVE)


def handle_renewal(body):
    return _normalize(body, EventKind.RENEWAL)


def handle_product_change(body):
    return _normalize(body, EventKind.PLAN_CHANGE, product_key="new_product_id")


def handle_cancellation(body):
    event = _event(body)
    reason = (event.get("cancel_reason") or "").upper()

    if reason in BILLING_CANCEL_REASONS:
        return replace(
            _normalize(body, EventKind.PAYMENT_FAILED),
            current_period_start=None,
            current_period_end=None,
        )

    normalized = _normalize(body, EventKind.CANCELLATION)
    at_period_end = reason not in IMMEDIATE_CANCEL_REASONS
    if isinstance(event.get("cancel_at_period_end"), bool):
        at_period_end = event["cancel_at_period_end"]
    return replace(
        normalized,
        cancel_at_period_end=at_period_end,
        cancelled_at=normalized.effective_at,
    )


def handle_uncancellation(body):
    return _normalize(body, EventKind.UNCANCELLATION)


def handle_billing_issue(body):
    return replace(
        _normalize(body, EventKind.PAYMENT_FAILED),
        current_period_start=None,
        current_period_end=None,
    )


def handle_expiration(body):
    return _normalize(body, EventKind.EXPIRATION)


HANDLERS = {
    "INITIAL_PURCHASE": handle_initial_purchase,
    "RENEWAL": handle_renewal,
    "SUBSCRIPTION_EXTENDED": handle_renewal,
    "PRODUCT_CHANGE": handle_product_change,
    "CANCELLATION": handle_cancellation,
    "UNCANCELLATION": handle_uncancellation,
    "BILLING_ISSUE": handle_billing_issue,
    "EXPIRATION": handle_expiration,
}
