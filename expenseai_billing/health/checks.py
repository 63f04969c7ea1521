import time

from flask import current_app
from sqlalchemy import text

from expenseai_billing.extensions import db, get_redis


def _check_database():
    start = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        latency = round((time.time() - start) * 1000, 2)
        return {"status": "ok", "latency_ms": latency}
    except Exception as e:
        db.session.rollback()
        return {"status": "error", "error": str(e)}


def _check_redis():
    client = get_redis()
    if client is None:
        return {"status": "skipped", "reason": "REDIS_URL not set"}

    start = time.time()
    try:
        client.ping()
        latency = round((time.time() - start) * 1000, 2)
        return {"status": "ok", "latency_ms": latency}
    except Exception as e:
        return {"status": "error", "error": str(e)}


def run_health_checks():
    """
    Master health runner used by route.
    """
    started = time.time()

    checks = {
        "database": _check_database(),
        "redis": _check_redis(),
    }

    overall = "ok"
    for c in checks.values():
        if c["status"] == "error":
            overall = "degraded"

    return {
        "status": overall,
        "timestamp": int(time.time()),
        "checks": checks,
        "duration_ms": round((time.time() - started) * 1000, 2),
        "providers": sorted(
            provider.value for provider in current_app.extensions["billing"].clients
        ),
    }
