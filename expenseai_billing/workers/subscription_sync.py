from flask import current_app

from expenseai_billing.billing.services import get_billing
from expenseai_billing.extensions import db
from expenseai_billing.workers.base_tasks import BaseTask
from expenseai_billing.workers.celery_app import celery_app


@celery_app.task(base=BaseTask, name="expenseai_billing.workers.subscription_sync.sweep_lapsed_subscriptions")
def sweep_lapsed_subscriptions(limit=None):
    try:
        report = get_billing().sweeper.run(limit=limit)
    except Exception:
        db.session.rollback()
        raise
    return report.to_dict()


@celery_app.task(base=BaseTask, name="expenseai_billing.workers.subscription_sync.purge_processed_events")
def purge_processed_events():
    days = current_app.config.get("WEBHOOK_DEDUP_WINDOW_DAYS", 30)
    return get_billing().event_log.purge_processed(days)
