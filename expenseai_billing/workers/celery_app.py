import os

from celery import Celery

from expenseai_billing.workers.base_tasks import BaseTask
from expenseai_billing.workers.celerybeat import CELERY_BEAT_SCHEDULE

celery_app = Celery(
    "expenseai_billing",
    broker=os.getenv("CELERY_BROKER_URL") or os.getenv("REDIS_URL", "redis://localhost:6379/0"),
    backend=os.getenv("CELERY_RESULT_BACKEND") or os.getenv("REDIS_URL", "redis://localhost:6379/0"),
    include=[
        "expenseai_billing.workers.webhook_tasks",
        "expenseai_billing.workers.notification_tasks",
        "expenseai_billing.workers.subscription_sync",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_default_queue="billing",
    task_routes={
        "expenseai_billing.workers.notification_tasks.*": {"queue": "notifications"},
    },
    beat_schedule=CELERY_BEAT_SCHEDULE,
)


def init_celery(app):
    celery_app.conf.update(
        broker_url=app.config.get("CELERY_BROKER_URL") or celery_app.conf.broker_url,
        task_always_eager=app.config.get("CELERY_TASK_ALWAYS_EAGER", False),
    )

    BaseTask.flask_app = app
    app.extensions["celery"] = celery_app
    return celery_app
