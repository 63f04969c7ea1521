import uuid
from datetime import timedelta

from sqlalchemy import CheckConstraint, Index, UniqueConstraint, text

from expenseai_billing.domain.subscriptions import (
    Plan,
    Provider,
    SubscriptionState,
    SubscriptionStatus,
)
from expenseai_billing.extensions import db
from expenseai_billing.utils.clock import isoformat, utcnow


def _next_version(previous):
    """
    Version generator for ``updated_at``.

    Every write must produce a value distinct from the one it replaces,
    otherwise two writes within one clock tick would share a version and
    the compare-and-swap guard could not tell them apart.
    """
    now = utcnow()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    user_id = db.Column(db.String(64), nullable=False, index=True)
    provider = db.Column(db.String(32), nullable=False)
    external_subscription_id = db.Column(db.String(255), nullable=False)
    external_customer_id = db.Column(db.String(255), nullable=True)

    plan = db.Column(db.String(16), nullable=False)
    status = db.Column(db.String(16), nullable=False, index=True)

    current_period_start = db.Column(db.DateTime, nullable=True)
    current_period_end = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    trial_end = db.Column(db.DateTime, nullable=True)

    # Newest provider timestamp applied, and the newest user-initiated one.
    state_effective_at = db.Column(db.DateTime, nullable=True)
    cancellation_effective_at = db.Column(db.DateTime, nullable=True)

    # Exactly one row per user carries is_current; see SubscriptionStore.save.
    is_current = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "provider", "external_subscription_id", name="uq_subscription_provider_external"
        ),
        CheckConstraint(
            "status IN ('trialing', 'active', 'past_due', 'cancelled', 'expired')",
            name="valid_subscription_status",
        ),
        CheckConstraint(
            "plan IN ('weekly', 'monthly', 'yearly')",
            name="valid_subscription_plan",
        ),
        CheckConstraint(
            "provider IN ('card_billing', 'store_aggregator')",
            name="valid_subscription_provider",
        ),
        Index(
            "uq_subscription_current_per_user",
            "user_id",
            unique=True,
            sqlite_where=text("is_current = 1"),
            postgresql_where=text("is_current"),
        ),
        Index("idx_subscription_status_period_end", "status", "current_period_end"),
        Index("idx_subscription_provider_customer", "provider", "external_customer_id"),
    )

    # updated_at doubles as the optimistic-concurrency version: every UPDATE
    # is conditioned on the value read, and a mismatch raises StaleDataError.
    __mapper_args__ = {
        "version_id_col": updated_at,
        "version_id_generator": _next_version,
    }

    def to_state(self):
        return SubscriptionState(
            user_id=self.user_id,
            provider=Provider(self.provider),
            external_subscription_id=self.external_subscription_id,
            external_customer_id=self.external_customer_id,
            plan=Plan(self.plan),
            status=SubscriptionStatus(self.status),
            current_period_start=self.current_period_start,
            current_period_end=self.current_period_end,
            cancelled_at=self.cancelled_at,
            trial_end=self.trial_end,
            state_effective_at=self.state_effective_at,
            cancellation_effective_at=self.cancellation_effective_at,
        )

    def apply_state(self, state):
        self.user_id = state.user_id
        self.provider = state.provider.value
        self.external_subscription_id = state.external_subscription_id
        self.external_customer_id = state.external_customer_id
        self.plan = state.plan.value
        self.status = state.status.value
        self.current_period_start = state.current_period_start
        self.current_period_end = state.current_period_end
        self.cancelled_at = state.cancelled_at
        self.trial_end = state.trial_end
        self.state_effective_at = state.state_effective_at
        self.cancellation_effective_at = state.cancellation_effective_at

    @property
    def is_live(self):
        return SubscriptionStatus(self.status).is_live

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "provider": self.provider,
            "subscription_id": self.external_subscription_id,
            "plan": self.plan,
            "status": self.status,
            "current_period_start": isoformat(self.current_period_start),
            "current_period_end": isoformat(self.current_period_end),
            "cancelled_at": isoformat(self.cancelled_at),
            "trial_end": isoformat(self.trial_end),
            "is_current": self.is_current,
            "updated_at": isoformat(self.updated_at),
        }

    def __repr__(self):
        return (
            f"<Subscription {self.provider}:{self.external_subscription_id} "
            f"user={self.user_id} status={self.status}>"
        )
