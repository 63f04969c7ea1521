import logging
from dataclasses import replace

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from expenseai_billing.billing.state_machine import CREATING_KINDS, SubscriptionStateMachine
from expenseai_billing.domain.subscriptions import (
    EventKind,
    ProcessingResult,
    ProcessingStatus,
    ReconcileEvent,
    TransitionOutcome,
)
from expenseai_billing.errors import PersistenceError, StateConflict, ValidationError
from expenseai_billing.observability.metrics import metrics
from expenseai_billing.utils.clock import utcnow

logger = logging.getLogger(__name__)

_OUTCOME_STATUS = {
    TransitionOutcome.APPLIED: ProcessingStatus.APPLIED,
    TransitionOutcome.UNCHANGED: ProcessingStatus.UNCHANGED,
    TransitionOutcome.STALE: ProcessingStatus.STALE,
    TransitionOutcome.IGNORED: ProcessingStatus.IGNORED,
}

CAS_ATTEMPTS = 2


class SubscriptionReconciler:
    """
    Applies normalized events to cached subscription state.

    Per event, under the subscription's lock:
    1. skip if the event id was already processed
    2. read the current row and run the pure transition
    3. write the new state and the processed marker in one commit
    Notifications are fired only after the commit, outside the lock.
    """

    def __init__(self, store, locks, identity, notifier, event_log, clock=utcnow):
        self.store = store
        self.locks = locks
        self.identity = identity
        self.notifier = notifier
        self.event_log = event_log
        self.clock = clock

    def apply(self, event):
        with self.locks.hold(event.lock_key):
            result = self._apply_with_retry(event)
        self._notify(result)
        return result

    def expire_if_lapsed(self, state):
        """Run the lapse check for ``state`` through the normal write path."""
        if state is None or not state.is_lapsed(self.clock()):
            return state
        result = self.apply(
            ReconcileEvent(
                provider=state.provider,
                kind=EventKind.LAPSE_CHECK,
                external_subscription_id=state.external_subscription_id,
                effective_at=self.clock(),
            )
        )
        return result.subscription or state

    def _apply_with_retry(self, event):
        for attempt in range(1, CAS_ATTEMPTS + 1):
            try:
                return self._apply_once(event)
            except StaleDataError as exc:
                self.store.rollback()
                if attempt == CAS_ATTEMPTS:
                    logger.error(
                        "Subscription write lost compare-and-swap twice",
                        extra={"lock_key": event.lock_key, "event_id": event.event_id},
                    )
                    raise PersistenceError("Subscription changed concurrently") from exc
                logger.warning(
                    "Subscription changed during write, re-reading",
                    extra={"lock_key": event.lock_key, "event_id": event.event_id},
                )
            except IntegrityError as exc:
                self.store.rollback()
                if event.event_id and self.event_log.is_processed(event.provider, event.event_id):
                    return ProcessingResult(
                        ProcessingStatus.DUPLICATE, reason="event processed concurrently"
                    )
                logger.error(
                    "Subscription write violated a constraint",
                    extra={"lock_key": event.lock_key, "error": str(exc.orig)},
                )
                raise PersistenceError("Subscription state could not be stored") from exc
            except SQLAlchemyError as exc:
                self.store.rollback()
                logger.error(
                    "Subscription write failed",
                    extra={"lock_key": event.lock_key, "error": str(exc)},
                )
                raise PersistenceError("Subscription state could not be stored") from exc

    def _apply_once(self, event):
        if event.event_id and self.event_log.is_processed(event.provider, event.event_id):
            logger.info(
                "Duplicate event skipped",
                extra={"event_id": event.event_id, "event_type": event.event_type},
            )
            return ProcessingResult(ProcessingStatus.DUPLICATE, reason="event already processed")

        record = self.store.get(event.provider, event.external_subscription_id, for_update=True)
        current = record.to_state() if record is not None else None
        event = self._resolve_user(event, current)

        try:
            transition = SubscriptionStateMachine.transition(current, event, self.clock())
        except StateConflict as conflict:
            logger.debug(
                "Stale event discarded",
                extra={"event_id": event.event_id, "event_type": event.event_type, "reason": conflict.message},
            )
            self._mark_processed(event, ProcessingStatus.STALE)
            self.store.commit()
            metrics.record_event_outcome(event.provider.value, ProcessingStatus.STALE.value)
            return ProcessingResult(ProcessingStatus.STALE, subscription=current, reason=conflict.message)

        status = _OUTCOME_STATUS[transition.outcome]
        if transition.changed:
            self.store.save(record, transition.state)
            if current is None:
                self.identity.link(
                    transition.state.user_id,
                    transition.state.provider,
                    transition.state.external_customer_id,
                )
        self._mark_processed(event, status)
        self.store.commit()

        if transition.changed:
            before = current.status.value if current else "none"
            logger.info(
                "Subscription state updated",
                extra={
                    "user_id": transition.state.user_id,
                    "subscription_id": transition.state.external_subscription_id,
                    "event_kind": event.kind.value,
                    "from_status": before,
                    "to_status": transition.state.status.value,
                },
            )
            metrics.record_transition(event.provider.value, before, transition.state.status.value)
        elif transition.outcome is TransitionOutcome.IGNORED:
            logger.info(
                "Event had no subscription to act on",
                extra={"event_id": event.event_id, "event_kind": event.kind.value, "reason": transition.reason},
            )
        metrics.record_event_outcome(event.provider.value, status.value)

        return ProcessingResult(
            status,
            subscription=transition.state or current,
            notifications=transition.notifications,
            reason=transition.reason,
        )

    def _resolve_user(self, event, current):
        if current is not None:
            return replace(event, user_id=current.user_id)
        if event.user_id:
            return event
        user_id = self.identity.user_id_for(event.provider, event.external_customer_id)
        if user_id:
            return replace(event, user_id=user_id)
        if event.kind in CREATING_KINDS:
            raise ValidationError(
                "Could not resolve the ExpenseAI user for provider customer",
                details={"provider": event.provider.value, "customer_id": event.external_customer_id},
            )
        return event

    def _mark_processed(self, event, status):
        if event.event_id:
            self.event_log.mark_processed(event.provider, event.event_id, event.event_type, status.value)

    def _notify(self, result):
        if not result.notifications or result.subscription is None:
            return
        user_id = result.subscription.user_id
        for notification in result.notifications:
            try:
                self.notifier.notify(user_id, notification.kind, notification.metadata)
            except Exception:
                logger.warning(
                    "Notification dropped",
                    exc_info=True,
                    extra={"user_id": user_id, "kind": notification.kind.value},
                )
                metrics.record_notification_dropped(notification.kind.value)
