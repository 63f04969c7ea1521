import logging
from collections import namedtuple
from datetime import datetime

from expenseai_billing.domain.subscriptions import LIVE_STATUSES
from expenseai_billing.extensions import db
from expenseai_billing.models.subscription import Subscription

logger = logging.getLogger(__name__)

SweepCandidate = namedtuple(
    "SweepCandidate", ["provider", "external_subscription_id", "user_id", "current_period_end"]
)

_LIVE_VALUES = tuple(status.value for status in LIVE_STATUSES)


class SubscriptionStore:
    """
    Persistence adapter for cached subscription state.

    Writes go through ``save`` which also maintains the one-current-row-
    per-user rule. Commits are left to the caller so a state write and
    its webhook processed marker land in one transaction.
    """

    @property
    def session(self):
        return db.session

    def get(self, provider, external_subscription_id, for_update=False):
        query = Subscription.query.filter_by(
            provider=provider.value,
            external_subscription_id=external_subscription_id,
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_current_for_user(self, user_id):
        return Subscription.query.filter_by(user_id=user_id, is_current=True).first()

    def get_for_user(self, user_id, external_subscription_id):
        return Subscription.query.filter_by(
            user_id=user_id, external_subscription_id=external_subscription_id
        ).first()

    def list_for_user(self, user_id):
        return (
            Subscription.query.filter_by(user_id=user_id)
            .order_by(Subscription.created_at.desc())
            .all()
        )

    def save(self, record, state):
        """Create or update the row for ``state`` and return it (flushed, not committed)."""
        if record is None:
            record = Subscription()
            self.session.add(record)
        record.apply_state(state)
        self.session.flush()
        self._maintain_current(record)
        return record

    def _maintain_current(self, record):
        others = Subscription.query.filter(
            Subscription.user_id == record.user_id,
            Subscription.id != record.id,
        ).all()

        if record.is_live:
            chosen = record
        else:
            live_others = [other for other in others if other.is_live]
            pool = live_others or [record] + others
            chosen = max(pool, key=lambda row: row.state_effective_at or datetime.min)

        # Clear first so the partial unique index never sees two current rows.
        changed = False
        for row in [record] + others:
            if row is not chosen and row.is_current:
                row.is_current = False
                changed = True
        if changed:
            self.session.flush()

        if not chosen.is_current:
            chosen.is_current = True
            self.session.flush()
            logger.debug(
                "Current subscription lineage moved",
                extra={"user_id": record.user_id, "subscription_id": chosen.external_subscription_id},
            )

    def live_ending_before(self, cutoff, limit=None):
        query = (
            Subscription.query.filter(
                Subscription.status.in_(_LIVE_VALUES),
                Subscription.current_period_end.isnot(None),
                Subscription.current_period_end <= cutoff,
            )
            .order_by(Subscription.current_period_end.asc())
        )
        if limit:
            query = query.limit(limit)
        return [
            SweepCandidate(
                provider=row.provider,
                external_subscription_id=row.external_subscription_id,
                user_id=row.user_id,
                current_period_end=row.current_period_end,
            )
            for row in query.all()
        ]

    def commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()
