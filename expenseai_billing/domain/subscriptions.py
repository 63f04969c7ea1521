"""
Provider-independent subscription vocabulary.

Everything the reconciliation core consumes or produces is defined here:
the closed enumerations, the locally cached ``SubscriptionState``, the
normalized ``ReconcileEvent`` every provider payload is translated into,
and the result types handed back to callers.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from expenseai_billing.utils.clock import isoformat


class Provider(str, Enum):
    CARD_BILLING = "card_billing"
    STORE_AGGREGATOR = "store_aggregator"


class Plan(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @classmethod
    def parse(cls, value):
        if value is None:
            return None
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return None

    @classmethod
    def from_interval(cls, interval):
        return {
            "week": cls.WEEKLY,
            "month": cls.MONTHLY,
            "year": cls.YEARLY,
        }.get((interval or "").lower())

    @classmethod
    def from_product_id(cls, product_id):
        """Store product identifiers embed the billing period, e.g. ``expenseai_yearly``."""
        product = (product_id or "").lower()
        if "weekly" in product or "week" in product:
            return cls.WEEKLY
        if "yearly" in product or "annual" in product or "year" in product:
            return cls.YEARLY
        return cls.MONTHLY


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self):
        return self in TERMINAL_STATUSES

    @property
    def is_live(self):
        return self in LIVE_STATUSES


LIVE_STATUSES = frozenset(
    {SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}
)
TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED})

# Past-due subscriptions keep access while the provider retries payment.
ENTITLED_STATUSES = LIVE_STATUSES


class EventKind(str, Enum):
    PURCHASE = "purchase"
    RENEWAL = "renewal"
    PLAN_CHANGE = "plan_change"
    CANCELLATION = "cancellation"
    UNCANCELLATION = "uncancellation"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    TRIAL_ENDING = "trial_ending"
    EXPIRATION = "expiration"
    RENEWAL_REMINDER = "renewal_reminder"
    SNAPSHOT = "snapshot"
    LAPSE_CHECK = "lapse_check"

    @property
    def user_initiated(self):
        return self in (EventKind.CANCELLATION, EventKind.UNCANCELLATION)


class NotificationKind(str, Enum):
    WELCOME = "welcome"
    RENEWED = "renewed"
    CANCELLATION_SCHEDULED = "cancellation_scheduled"
    CANCELLATION_CONFIRMED = "cancellation_confirmed"
    REACTIVATED = "reactivated"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    TRIAL_ENDING = "trial_ending"
    EXPIRED = "expired"
    PLAN_CHANGED = "plan_changed"
    RENEWAL_REMINDER = "renewal_reminder"


class ProcessingStatus(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"
    INVALID = "invalid"
    QUEUED = "queued"


@dataclass(frozen=True)
class SubscriptionState:
    """The locally cached view of one provider subscription."""

    user_id: str
    provider: Provider
    external_subscription_id: str
    plan: Plan
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    external_customer_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    state_effective_at: Optional[datetime] = None
    cancellation_effective_at: Optional[datetime] = None

    @property
    def cancel_at_period_end(self):
        return self.cancelled_at is not None and self.status.is_live

    def is_entitled(self, now):
        return (
            self.status in ENTITLED_STATUSES
            and self.current_period_end is not None
            and now < self.current_period_end
        )

    def is_lapsed(self, now):
        return (
            self.status.is_live
            and self.current_period_end is not None
            and self.current_period_end <= now
        )

    def to_dict(self):
        return {
            "provider": self.provider.value,
            "subscription_id": self.external_subscription_id,
            "plan": self.plan.value,
            "status": self.status.value,
            "current_period_start": isoformat(self.current_period_start),
            "current_period_end": isoformat(self.current_period_end),
            "cancelled_at": isoformat(self.cancelled_at),
            "cancel_at_period_end": self.cancel_at_period_end,
            "trial_end": isoformat(self.trial_end),
        }


@dataclass(frozen=True)
class ReconcileEvent:
    """
    A provider occurrence in normalized form.

    ``effective_at`` is the provider's own timestamp for the occurrence and
    drives ordering; it is never the local receive time except for
    snapshots pulled on demand, where the fetch time is the observation
    time.
    """

    provider: Provider
    kind: EventKind
    external_subscription_id: str
    effective_at: datetime
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    user_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    plan: Optional[Plan] = None
    status: Optional[SubscriptionStatus] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = True
    cancelled_at: Optional[datetime] = None
    # When an immediate cancellation actually ended access; defaults to effective_at.
    ended_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def lock_key(self):
        return f"{self.provider.value}:{self.external_subscription_id}"

    def with_identity(self, event_id, event_type):
        return replace(self, event_id=event_id, event_type=event_type)


@dataclass(frozen=True)
class ProviderSnapshot:
    """Authoritative provider state returned by a pull (retrieve/list/verify)."""

    provider: Provider
    external_subscription_id: str
    plan: Plan
    status: SubscriptionStatus
    fetched_at: datetime
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    external_customer_id: Optional[str] = None
    user_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_event(self, kind=EventKind.SNAPSHOT, effective_at=None, user_id=None):
        return ReconcileEvent(
            provider=self.provider,
            kind=kind,
            external_subscription_id=self.external_subscription_id,
            effective_at=effective_at or self.fetched_at,
            user_id=user_id or self.user_id,
            external_customer_id=self.external_customer_id,
            plan=self.plan,
            status=self.status,
            current_period_start=self.current_period_start,
            current_period_end=self.current_period_end,
            cancel_at_period_end=self.cancelled_at is not None and self.status.is_live,
            cancelled_at=self.cancelled_at,
            trial_end=self.trial_end,
            metadata=dict(self.metadata),
        )


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    STALE = "stale"
    IGNORED = "ignored"


@dataclass(frozen=True)
class TransitionResult:
    previous: Optional[SubscriptionState]
    state: Optional[SubscriptionState]
    outcome: TransitionOutcome
    notifications: Tuple[Notification, ...] = ()
    reason: Optional[str] = None

    @property
    def changed(self):
        return self.state is not None and self.state != self.previous


@dataclass(frozen=True)
class ProcessingResult:
    """Outcome handed back to webhook, sync and task callers."""

    status: ProcessingStatus
    subscription: Optional[SubscriptionState] = None
    notifications: Tuple[Notification, ...] = ()
    reason: Optional[str] = None

    @classmethod
    def ignored(cls, reason):
        return cls(ProcessingStatus.IGNORED, reason=reason)

    @classmethod
    def invalid(cls, reason):
        return cls(ProcessingStatus.INVALID, reason=reason)
