from flask import Blueprint, jsonify

from expenseai_billing.health.checks import run_health_checks

bp = Blueprint("health", __name__)


@bp.route("/health", methods=["GET"])
def health():
    report = run_health_checks()
    status = 200 if report["status"] == "ok" else 503
    return jsonify(report), status
