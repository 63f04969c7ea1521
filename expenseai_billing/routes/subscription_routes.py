from flask import Blueprint, jsonify, request
from flask_jwt_extended import get_jwt, get_jwt_identity, jwt_required

from expenseai_billing.billing.services import get_billing
from expenseai_billing.errors import ValidationError

bp = Blueprint("subscriptions", __name__, url_prefix="/api/v1/subscriptions")


def _current_user_id():
    return str(get_jwt_identity())


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _as_bool(value, default):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise ValidationError("cancel_at_period_end must be a boolean")


def _projection(state):
    if state is None:
        return None
    payload = state.to_dict()
    payload["is_entitled"] = get_billing().entitlements.grants_access(state)
    return payload


@bp.route("", methods=["GET"])
@jwt_required()
def get_subscription():
    """Pull-sync the caller's subscription and return it"""
    result = get_billing().sync.sync_now(_current_user_id())
    response = {
        "success": True,
        "subscription": _projection(result.subscription),
        "stale": result.stale,
    }
    if result.warning:
        response["warning"] = result.warning
    return jsonify(response), 200


@bp.route("", methods=["POST"])
@jwt_required()
def create_subscription():
    """Start a card billing subscription"""
    data = _json_body()
    created = get_billing().manager.create_card_subscription(
        _current_user_id(),
        data.get("plan"),
        data.get("payment_method_id"),
        email=get_jwt().get("email"),
    )
    return jsonify({
        "success": True,
        "subscription": _projection(created.subscription),
        "client_secret": created.client_secret,
        "status": created.provider_status,
        "requires_action": created.requires_action,
    }), 201


@bp.route("/cancel", methods=["POST"])
@jwt_required()
def cancel_subscription():
    data = _json_body()
    subscription_id = data.get("subscription_id")
    if not subscription_id:
        raise ValidationError("subscription_id is required")
    state = get_billing().manager.cancel(
        _current_user_id(),
        subscription_id,
        cancel_at_period_end=_as_bool(data.get("cancel_at_period_end"), True),
    )
    return jsonify({"success": True, "subscription": _projection(state)}), 200


@bp.route("/payment-method", methods=["POST"])
@jwt_required()
def update_payment_method():
    data = _json_body()
    state = get_billing().manager.update_payment_method(
        _current_user_id(), data.get("payment_method_id")
    )
    return jsonify({"success": True, "subscription": _projection(state)}), 200


@bp.route("/verify-purchase", methods=["POST"])
@jwt_required()
def verify_purchase():
    """Validate a store purchase token and record the subscription it grants"""
    data = _json_body()
    state = get_billing().manager.verify_purchase(
        _current_user_id(),
        data.get("platform"),
        data.get("product_id"),
        data.get("purchase_token"),
    )
    return jsonify({"success": True, "subscription": _projection(state)}), 200


@bp.route("/entitlement", methods=["GET"])
@jwt_required()
def entitlement():
    entitlements = get_billing().entitlements
    state = entitlements.current_subscription(_current_user_id())
    return jsonify({
        "success": True,
        "has_active_entitlement": entitlements.grants_access(state),
        "subscription": _projection(state),
    }), 200
