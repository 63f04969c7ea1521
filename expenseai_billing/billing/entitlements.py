from expenseai_billing.utils.clock import utcnow


class EntitlementService:
    """
    Answers "may this user use premium features right now".

    Reads come from the local cache only. A cached row whose billing period
    has already ended is expired through the reconciler before answering,
    so access never outlives the period even when no event arrives.
    """

    def __init__(self, store, reconciler, clock=utcnow):
        self.store = store
        self.reconciler = reconciler
        self.clock = clock

    def current_subscription(self, user_id):
        record = self.store.get_current_for_user(user_id)
        if record is None:
            return None
        return self.reconciler.expire_if_lapsed(record.to_state())

    def grants_access(self, state):
        return state is not None and state.is_entitled(self.clock())

    def has_active_entitlement(self, user_id):
        return self.grants_access(self.current_subscription(user_id))
