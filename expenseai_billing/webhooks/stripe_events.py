"""
Card billing (Stripe) webhook payloads to ``ReconcileEvent``.

Each handler receives the decoded Stripe event and returns a normalized
event, or ``None`` when the payload is well-formed but has no bearing on
subscription state (one-off invoices, zero-amount trial invoices,
subscriptions still awaiting their first payment).
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
from expenseai_billing.services.stripe_service import (
    as_mapping,
    object_id,
    price_interval,
    snapshot_from_stripe,
)
from expenseai_billing.utils.clock import from_timestamp


def parse_envelope(body):
    event_id = body.get("id")
    event_type = body.get("type")
    if not event_id or not event_type:
        raise ValidationError("Card billing event without id or type")
    return event_id, event_type


def _event_time(event):
    created = from_timestamp(event.get("created"))
    if created is None:
        raise ValidationError("Card billing event without created timestamp")
    return created


def _data(event):
    data = event.get("data") or {}
    obj = data.get("object")
    if not isinstance(obj, dict):
        raise ValidationError("Card billing event without data object")
    return obj, data.get("previous_attributes") or {}


def _snapshot(event):
    obj, previous = _data(event)
    at = _event_time(event)
    return snapshot_from_stripe(obj, fetched_at=at), obj, previous, at


def handle_subscription_created(event):
    snapshot, _, _, at = _snapshot(event)
    if snapshot is None:
        return None
    return snapshot.to_event(kind=EventKind.SNAPSHOT, effective_at=at)


def handle_subscription_updated(event):
    snapshot, obj, previous, at = _snapshot(event)
    if snapshot is None:
        return None

    if "cancel_at_period_end" in previous:
        if obj.get("cancel_at_period_end"):
            return replace(
                snapshot.to_event(kind=EventKind.CANCELLATION, effective_at=at),
                cancel_at_period_end=True,
                cancelled_at=snapshot.cancelled_at or at,
            )
        return replace(
            snapshot.to_event(kind=EventKind.UNCANCELLATION, effective_at=at),
            cancelled_at=None,
        )

    if "items" in previous or "plan" in previous:
        return snapshot.to_event(kind=EventKind.PLAN_CHANGE, effective_at=at)

    return snapshot.to_event(kind=EventKind.SNAPSHOT, effective_at=at)


def handle_subscription_deleted(event):
    snapshot, obj, _, at = _snapshot(event)
    if snapshot is None:
        return None
    if snapshot.status is SubscriptionStatus.EXPIRED:
        return snapshot.to_event(kind=EventKind.EXPIRATION, effective_at=at)
    return replace(
        snapshot.to_event(kind=EventKind.CANCELLATION, effective_at=at),
        cancel_at_period_end=False,
        cancelled_at=snapshot.cancelled_at or at,
        ended_at=from_timestamp(obj.get("ended_at")) or at,
    )


def handle_trial_will_end(event):
    snapshot, _, _, at = _snapshot(event)
    if snapshot is None:
        return None
    return snapshot.to_event(kind=EventKind.TRIAL_ENDING, effective_at=at)


def _invoice_subscription_details(invoice):
    parent = invoice.get("parent") or {}
    return invoice.get("subscription_details") or parent.get("subscription_details") or {}


def _invoice_subscription_id(invoice):
    subscription = invoice.get("subscription")
    if subscription is None:
        subscription = _invoice_subscription_details(invoice).get("subscription")
    return object_id(subscription)


def _invoice_line_period(invoice):
    lines = (invoice.get("lines") or {}).get("data") or []
    for line in lines:
        line = as_mapping(line)
        period = line.get("period") or {}
        if period.get("end"):
            pricing = line.get("pricing") or {}
            interval = price_interval(line) or price_interval(pricing.get("price_details") or {})
            return from_timestamp(period.get("start")), from_timestamp(period.get("end")), interval
    return None, None, None


def _major_units(cents):
    return round(cents / 100, 2) if cents is not None else None


def _invoice_event(event, kind, include_period=True):
    invoice, _ = _data(event)
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        return None

    at = _event_time(event)
    start, end, interval = _invoice_line_period(invoice) if include_period else (None, None, None)
    metadata = _invoice_subscription_details(invoice).get("metadata") or {}
    return ReconcileEvent(
        provider=Provider.CARD_BILLING,
        kind=kind,
        external_subscription_id=subscription_id,
        effective_at=at,
        user_id=metadata.get("user_id"),
        external_customer_id=object_id(invoice.get("customer")),
        plan=Plan.parse(metadata.get("plan")) or Plan.from_interval(interval),
        current_period_start=start,
        current_period_end=end,
        metadata={
            "invoice_id": invoice.get("id"),
            "amount": _major_units(
                invoice.get("amount_paid") if kind is EventKind.PAYMENT_SUCCEEDED else invoice.get("amount_due")
            ),
            "currency": invoice.get("currency"),
        },
    )


def handle_invoice_payment_succeeded(event):
    invoice, _ = _data(event)
    if not invoice.get("amount_paid"):
        # Trial start invoices are settled for zero.
        return None
    return _invoice_event(event, EventKind.PAYMENT_SUCCEEDED)


def handle_invoice_payment_failed(event):
    return _invoice_event(event, EventKind.PAYMENT_FAILED, include_period=False)


def handle_invoice_upcoming(event):
    return _invoice_event(event, EventKind.RENEWAL_REMINDER, include_period=False)


HANDLERS = {
    "customer.subscription.created": handle_subscription_created,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "customer.subscription.trial_will_end": handle_trial_will_end,
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "invoice.upcoming": handle_invoice_upcoming,
}
