"""
Celery entry point:

    celery -A celery_worker.celery worker -Q billing,notifications
    celery -A celery_worker.celery beat
"""

import os

from dotenv import load_dotenv

load_dotenv()

from expenseai_billing import create_app  # noqa: E402
from expenseai_billing.logging_config import configure_worker_logging  # noqa: E402

app = create_app(os.getenv("APP_ENV", "production"))
configure_worker_logging()
celery = app.extensions["celery"]

# Register task modules with the worker.
import expenseai_billing.workers.notification_tasks  # noqa: E402,F401
import expenseai_billing.workers.subscription_sync  # noqa: E402,F401
import expenseai_billing.workers.webhook_tasks  # noqa: E402,F401
