import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class NotificationTrigger(ABC):
    """Fire-and-forget user notification seam used by the reconciler."""

    @abstractmethod
    def notify(self, user_id, kind, metadata):
        raise NotImplementedError


class CeleryNotificationTrigger(NotificationTrigger):
    """Hands notifications to the Celery delivery task."""

    def notify(self, user_id, kind, metadata):
        from expenseai_billing.workers.notification_tasks import deliver_subscription_notification

        deliver_subscription_notification.delay(user_id, kind.value, dict(metadata or {}))
        logger.debug(
            "Subscription notification queued",
            extra={"user_id": user_id, "kind": kind.value},
        )


class LoggingNotificationTrigger(NotificationTrigger):
    """Used when no push gateway is configured (local development)."""

    def notify(self, user_id, kind, metadata):
        logger.info(
            "Subscription notification (not delivered)",
            extra={"user_id": user_id, "kind": kind.value},
        )
