import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List

from expenseai_billing.domain.subscriptions import Provider, SubscriptionStatus
from expenseai_billing.errors import BillingError
from expenseai_billing.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    examined: int = 0
    expired: int = 0
    resynced: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "examined": self.examined,
            "expired": self.expired,
            "resynced": self.resynced,
            "errors": list(self.errors),
        }


class LapseSweeper:
    """
    Periodic pass over live subscriptions whose billing period ends soon.

    Each candidate is refreshed from its provider; when the provider cannot
    be reached the row is lapse-checked locally instead. Every write goes
    through the reconciler, one subscription at a time.
    """

    def __init__(self, store, sync, lookahead=timedelta(hours=1), clock=utcnow):
        self.store = store
        self.sync = sync
        self.lookahead = lookahead
        self.clock = clock

    def run(self, limit=None):
        report = SweepReport()
        cutoff = self.clock() + self.lookahead
        candidates = self.store.live_ending_before(cutoff, limit=limit)

        for candidate in candidates:
            report.examined += 1
            key = f"{candidate.provider}:{candidate.external_subscription_id}"
            try:
                result = self.sync.resync(Provider(candidate.provider), candidate.external_subscription_id)
            except BillingError as exc:
                logger.error(
                    "Lapse sweep failed for subscription",
                    extra={"lock_key": key, "error": exc.message},
                )
                report.errors.append(key)
                continue

            if not result.stale:
                report.resynced += 1
            state = result.subscription
            if state is not None and state.status is SubscriptionStatus.EXPIRED:
                report.expired += 1

        logger.info("Lapse sweep finished", extra=report.to_dict())
        return report
