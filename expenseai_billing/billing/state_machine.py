"""
Authoritative subscription state machine.

``SubscriptionStateMachine.transition`` is the ONLY place where a
subscription changes status. It is pure: given the current cached state
(or ``None``), a normalized event and the current time it returns the next
state plus the notifications implied by the change. Nothing here touches
the database, a lock or the network, so webhook delivery, on-demand sync
and the lapse sweep all funnel through the same rules.

Ordering:
- ``state_effective_at`` records the newest provider timestamp applied.
  Non user-initiated events older than it are stale and discarded, except
  that a stale event may still extend a live billing period.
- Cancellation and uncancellation are ordered only among themselves via
  ``cancellation_effective_at``.

Every field written comes from the event, never from ``now``; replaying an
event therefore leaves the state untouched.
"""

from dataclasses import replace

from expenseai_billing.domain.subscriptions import (
    EventKind,
    Notification,
    NotificationKind,
    Plan,
    SubscriptionState,
    SubscriptionStatus,
    TransitionOutcome,
    TransitionResult,
)
from expenseai_billing.errors import StateConflict
from expenseai_billing.utils.clock import isoformat

CREATING_KINDS = frozenset(
    {EventKind.PURCHASE, EventKind.RENEWAL, EventKind.PLAN_CHANGE, EventKind.SNAPSHOT}
)

# Kinds whose billing window may be merged in even when the event is stale.
PERIOD_EXTENDING_KINDS = frozenset(
    {
        EventKind.PURCHASE,
        EventKind.RENEWAL,
        EventKind.PLAN_CHANGE,
        EventKind.PAYMENT_SUCCEEDED,
        EventKind.SNAPSHOT,
    }
)

NOTIFICATION_METADATA_KEYS = ("amount", "currency", "reason", "product_id")


def _latest(first, second):
    if first is None:
        return second
    if second is None:
        return first
    return max(first, second)


def _ends_later(candidate, reference):
    return candidate is not None and (reference is None or candidate > reference)


def _advance_period(state, event):
    """Adopt the event's billing window only when it ends later than ours."""
    if not _ends_later(event.current_period_end, state.current_period_end):
        return state
    return replace(
        state,
        current_period_start=event.current_period_start or state.current_period_start,
        current_period_end=event.current_period_end,
    )


def _expire_if_lapsed(state, now):
    if state is not None and state.is_lapsed(now):
        return replace(state, status=SubscriptionStatus.EXPIRED)
    return state


class SubscriptionStateMachine:
    @staticmethod
    def transition(current, event, now):
        """
        Compute the next state for ``event``.

        Raises ``StateConflict`` when the event is older than the state it
        would overwrite and carries nothing that can still be merged.
        """
        if event.kind is EventKind.LAPSE_CHECK:
            return SubscriptionStateMachine._lapse_check(current, event, now)

        if current is None:
            return SubscriptionStateMachine._create(event, now)

        guard = (
            current.cancellation_effective_at
            if event.kind.user_initiated
            else current.state_effective_at
        )
        if guard is not None and event.effective_at < guard:
            return SubscriptionStateMachine._stale(current, event, now)

        handler = _HANDLERS[event.kind]
        new = handler(current, event)

        if new.external_customer_id is None and event.external_customer_id:
            new = replace(new, external_customer_id=event.external_customer_id)
        new = replace(
            new,
            state_effective_at=_latest(current.state_effective_at, event.effective_at),
        )
        if event.kind.user_initiated:
            new = replace(
                new,
                cancellation_effective_at=_latest(
                    current.cancellation_effective_at, event.effective_at
                ),
            )
        new = _expire_if_lapsed(new, now)

        outcome = TransitionOutcome.APPLIED if new != current else TransitionOutcome.UNCHANGED
        return TransitionResult(
            previous=current,
            state=new,
            outcome=outcome,
            notifications=derive_notifications(current, new, event),
        )

    @staticmethod
    def _lapse_check(current, event, now):
        if current is None:
            return TransitionResult(
                previous=None,
                state=None,
                outcome=TransitionOutcome.IGNORED,
                reason="no local subscription",
            )
        new = _expire_if_lapsed(current, now)
        outcome = TransitionOutcome.APPLIED if new != current else TransitionOutcome.UNCHANGED
        return TransitionResult(
            previous=current,
            state=new,
            outcome=outcome,
            notifications=derive_notifications(current, new, event),
        )

    @staticmethod
    def _create(event, now):
        if event.kind not in CREATING_KINDS:
            return TransitionResult(
                previous=None,
                state=None,
                outcome=TransitionOutcome.IGNORED,
                reason=f"{event.kind.value} for unknown subscription",
            )
        if event.user_id is None or event.current_period_end is None:
            return TransitionResult(
                previous=None,
                state=None,
                outcome=TransitionOutcome.IGNORED,
                reason="event lacks user or billing period",
            )

        state = SubscriptionState(
            user_id=event.user_id,
            provider=event.provider,
            external_subscription_id=event.external_subscription_id,
            external_customer_id=event.external_customer_id,
            plan=event.plan or Plan.MONTHLY,
            status=event.status or SubscriptionStatus.ACTIVE,
            current_period_start=event.current_period_start,
            current_period_end=event.current_period_end,
            cancelled_at=event.cancelled_at,
            trial_end=event.trial_end,
            state_effective_at=event.effective_at,
        )
        state = _expire_if_lapsed(state, now)
        return TransitionResult(
            previous=None,
            state=state,
            outcome=TransitionOutcome.APPLIED,
            notifications=derive_notifications(None, state, event),
        )

    @staticmethod
    def _stale(current, event, now):
        merged = current
        if event.kind in PERIOD_EXTENDING_KINDS and current.status.is_live:
            merged = _advance_period(current, event)
        merged = _expire_if_lapsed(merged, now)

        if merged == current:
            raise StateConflict(
                f"{event.kind.value} at {isoformat(event.effective_at)} predates "
                f"state at {isoformat(current.state_effective_at)}",
                details={"subscription": current.external_subscription_id},
            )
        return TransitionResult(
            previous=current,
            state=merged,
            outcome=TransitionOutcome.STALE,
            notifications=derive_notifications(current, merged, None),
            reason="stale event merged into billing period",
        )


def _reopen(state, event):
    """Resubscription after a terminal state, only for a newer billing period."""
    if not _ends_later(event.current_period_end, state.current_period_end):
        return state
    status = event.status if event.status and event.status.is_live else SubscriptionStatus.ACTIVE
    return replace(
        state,
        status=status,
        plan=event.plan or state.plan,
        current_period_start=event.current_period_start,
        current_period_end=event.current_period_end,
        cancelled_at=None,
        trial_end=event.trial_end or state.trial_end,
    )


def _apply_payment(state, event):
    # purchase, renewal and successful payment
    if state.status.is_terminal:
        return _reopen(state, event)

    new = _advance_period(state, event)
    if event.kind is EventKind.PURCHASE and event.status and event.status.is_live:
        status = event.status
    elif new.status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.TRIALING):
        status = SubscriptionStatus.ACTIVE
    else:
        status = new.status
    return replace(new, status=status, plan=event.plan or new.plan)


def _apply_plan_change(state, event):
    if state.status.is_terminal:
        return _reopen(state, event)
    new = _advance_period(state, event)
    status = event.status if event.status and event.status.is_live else new.status
    return replace(new, status=status, plan=event.plan or new.plan)


def _apply_payment_failed(state, event):
    if state.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
        return replace(state, status=SubscriptionStatus.PAST_DUE)
    return state


def _apply_cancellation(state, event):
    if state.status.is_terminal:
        return state

    cancelled_at = state.cancelled_at or event.cancelled_at or event.effective_at
    if event.cancel_at_period_end:
        return replace(state, cancelled_at=cancelled_at)

    # The period is cut at the moment access ended, not when it was requested.
    ended_at = event.ended_at or event.effective_at
    period_end = state.current_period_end
    if period_end is not None and ended_at >= period_end:
        return replace(state, status=SubscriptionStatus.EXPIRED, cancelled_at=cancelled_at)
    return replace(
        state,
        status=SubscriptionStatus.CANCELLED,
        cancelled_at=cancelled_at,
        current_period_end=ended_at,
    )


def _apply_uncancellation(state, event):
    if state.status is SubscriptionStatus.EXPIRED:
        return state
    if state.status is SubscriptionStatus.CANCELLED:
        new = _advance_period(state, event)
        return replace(new, status=SubscriptionStatus.ACTIVE, cancelled_at=None)
    if state.cancelled_at is not None:
        return replace(_advance_period(state, event), cancelled_at=None)
    return state


def _apply_trial_ending(state, event):
    return replace(state, trial_end=event.trial_end or state.trial_end)


def _apply_expiration(state, event):
    if not state.status.is_live:
        return state
    ended_at = event.current_period_end or event.effective_at
    period_end = state.current_period_end
    if period_end is None or ended_at < period_end:
        period_end = ended_at
    return replace(state, status=SubscriptionStatus.EXPIRED, current_period_end=period_end)


def _apply_snapshot(state, event):
    # The provider's view wins wholesale for anything it reports.
    status = event.status or state.status
    if event.cancelled_at is not None:
        cancelled_at = event.cancelled_at
    elif status.is_live:
        cancelled_at = None
    else:
        cancelled_at = state.cancelled_at
    return replace(
        state,
        status=status,
        plan=event.plan or state.plan,
        current_period_start=event.current_period_start or state.current_period_start,
        current_period_end=event.current_period_end or state.current_period_end,
        cancelled_at=cancelled_at,
        trial_end=event.trial_end or state.trial_end,
    )


def _no_change(state, event):
    return state


_HANDLERS = {
    EventKind.PURCHASE: _apply_payment,
    EventKind.RENEWAL: _apply_payment,
    EventKind.PAYMENT_SUCCEEDED: _apply_payment,
    EventKind.PLAN_CHANGE: _apply_plan_change,
    EventKind.PAYMENT_FAILED: _apply_payment_failed,
    EventKind.CANCELLATION: _apply_cancellation,
    EventKind.UNCANCELLATION: _apply_uncancellation,
    EventKind.TRIAL_ENDING: _apply_trial_ending,
    EventKind.EXPIRATION: _apply_expiration,
    EventKind.SNAPSHOT: _apply_snapshot,
    EventKind.RENEWAL_REMINDER: _no_change,
}


def _notification_metadata(state, event):
    metadata = {
        "plan": state.plan.value,
        "status": state.status.value,
        "provider": state.provider.value,
        "subscription_id": state.external_subscription_id,
        "period_end": isoformat(state.current_period_end),
        "cancelled_at": isoformat(state.cancelled_at),
        "trial_end": isoformat(state.trial_end),
    }
    if event is not None:
        for key in NOTIFICATION_METADATA_KEYS:
            if key in event.metadata:
                metadata[key] = event.metadata[key]
    return metadata


def derive_notifications(previous, new, event):
    """
    Map an old/new state pair (plus the triggering event) to the user
    notifications it implies. Identical states yield nothing, which is what
    keeps redelivered events from notifying twice.
    """
    if new is None:
        return ()

    kinds = []
    if previous is None:
        if new.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            kinds.append(NotificationKind.WELCOME)
    else:
        before, after = previous.status, new.status
        if after is not before:
            if after is SubscriptionStatus.EXPIRED:
                kinds.append(NotificationKind.EXPIRED)
            elif after is SubscriptionStatus.CANCELLED:
                kinds.append(NotificationKind.CANCELLATION_CONFIRMED)
            elif before.is_terminal:
                kinds.append(NotificationKind.REACTIVATED)
            elif after is SubscriptionStatus.PAST_DUE:
                kinds.append(NotificationKind.PAYMENT_FAILED)
            elif before is SubscriptionStatus.PAST_DUE and after is SubscriptionStatus.ACTIVE:
                kinds.append(NotificationKind.PAYMENT_SUCCEEDED)

        if before.is_live and after.is_live:
            if previous.cancelled_at is None and new.cancelled_at is not None:
                kinds.append(NotificationKind.CANCELLATION_SCHEDULED)
            elif previous.cancelled_at is not None and new.cancelled_at is None:
                kinds.append(NotificationKind.REACTIVATED)

            if new.plan is not previous.plan:
                kinds.append(NotificationKind.PLAN_CHANGED)
            elif (
                after is SubscriptionStatus.ACTIVE
                and before is not SubscriptionStatus.PAST_DUE
                and _ends_later(new.current_period_end, previous.current_period_end)
            ):
                kinds.append(NotificationKind.RENEWED)

    if event is not None and _is_newer(event, previous):
        if event.kind is EventKind.TRIAL_ENDING and new.status is SubscriptionStatus.TRIALING:
            kinds.append(NotificationKind.TRIAL_ENDING)
        elif (
            event.kind is EventKind.RENEWAL_REMINDER
            and new.status is SubscriptionStatus.ACTIVE
            and new.cancelled_at is None
        ):
            kinds.append(NotificationKind.RENEWAL_REMINDER)

    if not kinds:
        return ()
    metadata = _notification_metadata(new, event)
    return tuple(Notification(kind=kind, metadata=dict(metadata)) for kind in kinds)


def _is_newer(event, previous):
    if previous is None or previous.state_effective_at is None:
        return True
    return event.effective_at > previous.state_effective_at
