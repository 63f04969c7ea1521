import logging
from functools import wraps
from typing import Any, Callable

from flask import jsonify
from flask_jwt_extended import get_jwt_identity, verify_jwt_in_request

from expenseai_billing.billing.services import get_billing

logger = logging.getLogger(__name__)


def require_active_entitlement(fn: Callable) -> Callable:
    """
    Gate an endpoint on the caller holding premium access.

    Verifies the access token itself, so it can be used without a
    separate ``@jwt_required``.
    """

    @wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        verify_jwt_in_request()
        user_id = str(get_jwt_identity())

        if not get_billing().entitlements.has_active_entitlement(user_id):
            logger.info("Subscription required", extra={"user_id": user_id})
            return jsonify({
                "success": False,
                "error": "SUBSCRIPTION_REQUIRED",
                "message": "An active ExpenseAI Premium subscription is required",
            }), 403

        return fn(*args, **kwargs)

    return wrapper
