import requests
from celery.utils.log import get_task_logger
from flask import current_app

from expenseai_billing.notifications.templates import render
from expenseai_billing.workers.base_tasks import BaseTask
from expenseai_billing.workers.celery_app import celery_app

logger = get_task_logger(__name__)


@celery_app.task(
    bind=True,
    base=BaseTask,
    name="expenseai_billing.workers.notification_tasks.deliver_subscription_notification",
    autoretry_for=(requests.RequestException,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": 3},
    retry_jitter=True,
)
def deliver_subscription_notification(self, user_id, kind, metadata):
    title, body = render(kind, metadata)
    gateway = current_app.config.get("PUSH_GATEWAY_URL")
    if not gateway:
        logger.info(
            "Push gateway not configured, notification skipped",
            extra={"user_id": user_id, "kind": kind},
        )
        return False

    response = requests.post(
        gateway,
        json={
            "user_id": user_id,
            "title": title,
            "body": body,
            "data": {"type": kind, **(metadata or {})},
        },
        timeout=current_app.config.get("PROVIDER_TIMEOUT_SECONDS", 10),
    )
    response.raise_for_status()
    logger.info("Subscription notification sent", extra={"user_id": user_id, "kind": kind})
    return True
