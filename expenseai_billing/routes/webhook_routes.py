import logging

from flask import Blueprint, jsonify, request

from expenseai_billing.billing.services import get_billing
from expenseai_billing.domain.subscriptions import Provider

logger = logging.getLogger(__name__)

bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")

SIGNATURE_HEADERS = {
    Provider.CARD_BILLING: "Stripe-Signature",
    Provider.STORE_AGGREGATOR: "X-RevenueCat-Signature",
}


def _receive(provider):
    # Signatures are computed over the exact bytes received.
    raw_body = request.get_data(cache=False)
    signature = request.headers.get(SIGNATURE_HEADERS[provider])
    result = get_billing().webhooks.handle(provider, raw_body, signature)
    return jsonify({"received": True, "status": result.status.value}), 200


@bp.route("/stripe", methods=["POST"])
def stripe_webhook():
    """Card billing provider deliveries"""
    return _receive(Provider.CARD_BILLING)


@bp.route("/revenuecat", methods=["POST"])
def revenuecat_webhook():
    """Store aggregator deliveries"""
    return _receive(Provider.STORE_AGGREGATOR)
