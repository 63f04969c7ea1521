from celery.schedules import crontab

CELERY_BEAT_SCHEDULE = {
    "sweep-lapsed-subscriptions": {
        "task": "expenseai_billing.workers.subscription_sync.sweep_lapsed_subscriptions",
        "schedule": crontab(minute="*/15"),
    },
    "purge-processed-webhook-events-daily": {
        "task": "expenseai_billing.workers.subscription_sync.purge_processed_events",
        "schedule": crontab(minute=30, hour=3),
    },
}
