import logging
from dataclasses import dataclass, replace
from typing import Optional

from expenseai_billing.domain.subscriptions import SubscriptionState
from expenseai_billing.errors import BillingError, ProviderError, SubscriptionNotFound
from expenseai_billing.observability.metrics import metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncResult:
    subscription: Optional[SubscriptionState]
    stale: bool = False
    error: Optional[BillingError] = None

    @property
    def warning(self):
        if not self.stale:
            return None
        return "Billing provider unreachable; showing last known subscription status"


class SubscriptionSync:
    """
    On-demand pull of provider state for a user.

    The provider is called outside any subscription lock; the snapshot it
    returns is applied through the reconciler like any other event. When
    the provider cannot be reached the last cached state is returned and
    flagged stale.
    """

    def __init__(self, store, reconciler, clients, identity):
        self.store = store
        self.reconciler = reconciler
        self.clients = clients
        self.identity = identity

    def sync_now(self, user_id):
        record = self.store.get_current_for_user(user_id)
        local = record.to_state() if record is not None else None

        if local is None:
            result = self._discover(user_id)
        else:
            result = self._sync_lineage(local)
            if result.subscription is None or not result.subscription.status.is_live:
                # A replacement subscription may exist whose webhooks never arrived.
                result = self._recover(user_id, result)
        metrics.record_sync("stale" if result.stale else "fresh")
        return result

    def resync(self, provider, external_subscription_id):
        """Refresh a single known subscription (used by the lapse sweep)."""
        record = self.store.get(provider, external_subscription_id)
        if record is None:
            raise SubscriptionNotFound(
                f"No local subscription {provider.value}:{external_subscription_id}"
            )
        return self._sync_lineage(record.to_state())

    def _sync_lineage(self, local):
        client = self.clients.get(local.provider)
        if client is None:
            return SyncResult(self.reconciler.expire_if_lapsed(local))

        try:
            snapshot = client.retrieve_subscription(local.external_subscription_id)
        except ProviderError as exc:
            logger.warning(
                "Provider sync failed, serving cached subscription",
                extra={
                    "user_id": local.user_id,
                    "provider": local.provider.value,
                    "subscription_id": local.external_subscription_id,
                    "error": exc.message,
                },
            )
            return SyncResult(self.reconciler.expire_if_lapsed(local), stale=True, error=exc)

        if snapshot is None:
            logger.info(
                "Provider has no record of cached subscription",
                extra={"user_id": local.user_id, "subscription_id": local.external_subscription_id},
            )
            return SyncResult(self.reconciler.expire_if_lapsed(local))

        outcome = self.reconciler.apply(snapshot.to_event(user_id=local.user_id))
        return SyncResult(outcome.subscription or local)

    def _discover(self, user_id):
        found, errors = self._lookup(user_id)
        if not found:
            if errors:
                raise errors[0]
            raise SubscriptionNotFound(f"No subscription found for user {user_id}")
        return self._apply_found(user_id, found, errors)

    def _recover(self, user_id, fallback):
        found, errors = self._lookup(user_id)
        live = [snapshot for snapshot in found if snapshot.status.is_live]
        if not live:
            return fallback
        logger.info(
            "Live subscription found for user with ended local subscription",
            extra={
                "user_id": user_id,
                "subscription_ids": [snapshot.external_subscription_id for snapshot in live],
            },
        )
        return self._apply_found(user_id, live, errors)

    def _apply_found(self, user_id, found, errors):
        for snapshot in sorted(found, key=_snapshot_rank):
            self.reconciler.apply(snapshot.to_event(user_id=user_id))

        record = self.store.get_current_for_user(user_id)
        return SyncResult(
            record.to_state() if record is not None else None,
            stale=bool(errors),
            error=errors[0] if errors else None,
        )

    def _lookup(self, user_id):
        errors = []
        found = []
        for provider, client in self.clients.items():
            customer_id = self.identity.external_customer_id(user_id, provider)
            if not customer_id:
                continue
            try:
                snapshot = client.find_subscription_for_customer(customer_id)
            except ProviderError as exc:
                logger.warning(
                    "Provider lookup failed during discovery",
                    extra={"user_id": user_id, "provider": provider.value, "error": exc.message},
                )
                errors.append(exc)
                continue
            if snapshot is not None:
                found.append(replace(snapshot, user_id=user_id))
        return found, errors


def _snapshot_rank(snapshot):
    # Apply terminal lineages first so the live one ends up current.
    return (snapshot.status.is_live, snapshot.current_period_end or snapshot.fetched_at)
