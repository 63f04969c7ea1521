from celery.utils.log import get_task_logger

from expenseai_billing.billing.services import get_billing
from expenseai_billing.domain.subscriptions import Provider
from expenseai_billing.errors import PersistenceError, ProviderUnavailable
from expenseai_billing.extensions import db
from expenseai_billing.workers.base_tasks import BaseTask
from expenseai_billing.workers.celery_app import celery_app

logger = get_task_logger(__name__)


@celery_app.task(
    bind=True,
    base=BaseTask,
    name="expenseai_billing.workers.webhook_tasks.process_inbound_event",
    autoretry_for=(ProviderUnavailable, PersistenceError),
    retry_backoff=30,
    retry_kwargs={"max_retries": 5},
    retry_jitter=True,
)
def process_inbound_event(self, provider, event_id):
    try:
        result = get_billing().webhooks.process_recorded(Provider(provider), event_id)
    except Exception:
        db.session.rollback()
        raise
    logger.info(
        "Queued webhook processed",
        extra={"provider": provider, "event_id": event_id, "status": result.status.value},
    )
    return result.status.value


def enqueue_inbound_event(provider, event_id):
    process_inbound_event.delay(provider, event_id)
