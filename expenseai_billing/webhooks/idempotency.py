import logging
from datetime import timedelta

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from expenseai_billing.errors import PersistenceError
from expenseai_billing.extensions import db
from expenseai_billing.models.webhook_event import WebhookEvent
from expenseai_billing.utils.clock import utcnow

logger = logging.getLogger(__name__)


class WebhookEventLog:
    """
    Receipt and processed-marker bookkeeping for inbound events.

    ``mark_processed`` only stages the change; it is committed together
    with the subscription write by the reconciler.
    """

    def get(self, provider, external_event_id):
        return WebhookEvent.query.filter_by(
            provider=provider.value, external_event_id=external_event_id
        ).one_or_none()

    def is_processed(self, provider, external_event_id):
        event = self.get(provider, external_event_id)
        return event is not None and event.is_processed

    def record_received(self, inbound, verification_mode):
        existing = self.get(inbound.provider, inbound.event_id)
        if existing is not None:
            existing.attempts += 1
            db.session.commit()
            return existing

        event = WebhookEvent(
            provider=inbound.provider.value,
            external_event_id=inbound.event_id,
            event_type=inbound.event_type,
            payload=inbound.payload,
            verification=verification_mode.value,
            attempts=1,
        )
        db.session.add(event)
        try:
            db.session.commit()
        except IntegrityError:
            # Concurrent delivery of the same event recorded it first.
            db.session.rollback()
            return self.get(inbound.provider, inbound.event_id)
        return event

    def mark_processed(self, provider, external_event_id, event_type, outcome):
        event = self.get(provider, external_event_id)
        if event is None:
            event = WebhookEvent(
                provider=provider.value,
                external_event_id=external_event_id,
                event_type=event_type or "unknown",
                attempts=1,
            )
            db.session.add(event)
        event.processed_at = utcnow()
        event.outcome = outcome
        return event

    def settle(self, provider, external_event_id, event_type, outcome):
        """Record an outcome that involved no subscription write, and commit it."""
        db.session.rollback()
        try:
            event = self.mark_processed(provider, external_event_id, event_type, outcome)
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error(
                "Could not record webhook outcome",
                extra={"provider": provider.value, "event_id": external_event_id, "error": str(exc)},
            )
            raise PersistenceError("Webhook outcome could not be recorded") from exc
        return event

    def purge_processed(self, older_than_days):
        """
        Delete events older than the dedup window: processed ones by
        ``processed_at``, and ones that never completed by ``received_at``.
        """
        cutoff = utcnow() - timedelta(days=older_than_days)
        deleted = WebhookEvent.query.filter(
            or_(
                and_(WebhookEvent.processed_at.isnot(None), WebhookEvent.processed_at < cutoff),
                and_(WebhookEvent.processed_at.is_(None), WebhookEvent.received_at < cutoff),
            )
        ).delete(synchronize_session=False)
        db.session.commit()
        logger.info("Purged processed webhook events", extra={"deleted": deleted, "cutoff": cutoff.isoformat()})
        return deleted
