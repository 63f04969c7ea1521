from celery import Task
from celery.utils.log import get_task_logger
from flask import has_app_context

logger = get_task_logger(__name__)


class BaseTask(Task):
    """Runs every task inside the Flask app context set by ``init_celery``."""

    abstract = True
    flask_app = None

    def __call__(self, *args, **kwargs):
        if self.flask_app is None or has_app_context():
            return super().__call__(*args, **kwargs)
        with self.flask_app.app_context():
            return super().__call__(*args, **kwargs)

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(
            "Task failed",
            extra={
                "task": self.name,
                "task_id": task_id,
                "error": str(exc),
            },
        )

    def on_retry(self, exc, task_id, args, kwargs, einfo):
        logger.warning(
            "Task retrying",
            extra={"task": self.name, "task_id": task_id, "error": str(exc)},
        )
