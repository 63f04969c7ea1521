import math
from datetime import datetime

from expenseai_billing.domain.subscriptions import NotificationKind
from expenseai_billing.utils.clock import parse_iso8601, utcnow

PLAN_NAMES = {
    "weekly": "Weekly",
    "monthly": "Monthly",
    "yearly": "Yearly",
}


def _plan(metadata):
    return metadata.get("plan") or "premium"


def _date(value):
    parsed = parse_iso8601(value) if isinstance(value, str) else value
    if not isinstance(parsed, datetime):
        return None
    return f"{parsed:%B} {parsed.day}, {parsed.year}"


def _amount(metadata):
    amount = metadata.get("amount")
    if amount is None:
        return None
    return f"${float(amount):.2f}"


class PushTemplates:
    """Push notification texts; each returns ``(title, body)``."""

    @staticmethod
    def welcome(metadata, now):
        plan_name = PLAN_NAMES.get(metadata.get("plan"), "Premium")
        return (
            f"Welcome to ExpenseAI {plan_name}!",
            "Your subscription is now active! Let's start tracking your expenses smarter!",
        )

    @staticmethod
    def renewed(metadata, now):
        renews = _date(metadata.get("period_end"))
        body = f"Your {_plan(metadata)} subscription has renewed."
        if renews:
            body += f" Your next billing date is {renews}."
        return "✅ Subscription Renewed", body

    @staticmethod
    def payment_succeeded(metadata, now):
        amount = _amount(metadata)
        if amount:
            body = f"Your {_plan(metadata)} subscription payment of {amount} was processed successfully!"
        else:
            body = f"Your {_plan(metadata)} subscription payment was processed successfully!"
        return "💳 Payment Successful", body

    @staticmethod
    def payment_failed(metadata, now):
        return (
            "⚠️ Payment Failed",
            f"We couldn't process your {_plan(metadata)} subscription payment. "
            "Please update your payment method to continue using ExpenseAI Premium.",
        )

    @staticmethod
    def cancellation_scheduled(metadata, now):
        end = _date(metadata.get("period_end"))
        if end:
            body = (
                f"Your {_plan(metadata)} subscription has been cancelled and will end on {end}. "
                "You'll keep access until then."
            )
        else:
            body = f"Your {_plan(metadata)} subscription has been cancelled."
        return "📅 Subscription Cancelled", body

    @staticmethod
    def cancellation_confirmed(metadata, now):
        return (
            "📅 Subscription Cancelled",
            f"Your {_plan(metadata)} subscription has been cancelled and premium access has ended.",
        )

    @staticmethod
    def reactivated(metadata, now):
        return (
            "🎉 Subscription Reactivated",
            f"Welcome back! Your {_plan(metadata)} subscription is now active again. "
            "Enjoy all premium features!",
        )

    @staticmethod
    def trial_ending(metadata, now):
        trial_end = parse_iso8601(metadata.get("trial_end")) if metadata.get("trial_end") else None
        days_left = None
        if trial_end is not None:
            days_left = max(1, math.ceil((trial_end - now).total_seconds() / 86400))
        if days_left == 1:
            body = "Your free trial ends tomorrow! Subscribe now to keep using ExpenseAI Premium features."
        elif days_left:
            body = f"Your free trial ends in {days_left} days. Subscribe now to continue enjoying premium features!"
        else:
            body = "Your free trial ends soon. Subscribe now to continue enjoying premium features!"
        return "⏰ Trial Ending Soon", body

    @staticmethod
    def expired(metadata, now):
        return (
            "😔 Subscription Expired",
            f"Your {_plan(metadata)} subscription has expired. Subscribe again to restore access "
            "to premium features like unlimited AI scanning and advanced analytics.",
        )

    @staticmethod
    def plan_changed(metadata, now):
        plan_name = PLAN_NAMES.get(metadata.get("plan"), "new")
        return (
            "🔁 Plan Updated",
            f"You're now on the {plan_name} plan. Your new price applies from your next billing date.",
        )

    @staticmethod
    def renewal_reminder(metadata, now):
        renews = _date(metadata.get("period_end"))
        if renews:
            body = (
                f"Your {_plan(metadata)} subscription will renew on {renews}. "
                "Make sure your payment method is up to date!"
            )
        else:
            body = (
                f"Your {_plan(metadata)} subscription will renew soon. "
                "Make sure your payment method is up to date!"
            )
        return "🔄 Subscription Renewing Soon", body


_RENDERERS = {
    NotificationKind.WELCOME: PushTemplates.welcome,
    NotificationKind.RENEWED: PushTemplates.renewed,
    NotificationKind.PAYMENT_SUCCEEDED: PushTemplates.payment_succeeded,
    NotificationKind.PAYMENT_FAILED: PushTemplates.payment_failed,
    NotificationKind.CANCELLATION_SCHEDULED: PushTemplates.cancellation_scheduled,
    NotificationKind.CANCELLATION_CONFIRMED: PushTemplates.cancellation_confirmed,
    NotificationKind.REACTIVATED: PushTemplates.reactivated,
    NotificationKind.TRIAL_ENDING: PushTemplates.trial_ending,
    NotificationKind.EXPIRED: PushTemplates.expired,
    NotificationKind.PLAN_CHANGED: PushTemplates.plan_changed,
    NotificationKind.RENEWAL_REMINDER: PushTemplates.renewal_reminder,
}


def render(kind, metadata, now=None):
    kind = NotificationKind(kind)
    return _RENDERERS[kind](metadata or {}, now or utcnow())
