import logging

from sqlalchemy.exc import SQLAlchemyError

from expenseai_billing.domain.subscriptions import ProcessingResult, ProcessingStatus
from expenseai_billing.errors import PersistenceError, ValidationError
from expenseai_billing.extensions import db
from expenseai_billing.observability.metrics import metrics
from expenseai_billing.webhooks.dispatcher import InboundEvent

logger = logging.getLogger(__name__)


class WebhookProcessor:
    """
    Entry point for raw webhook deliveries.

    verify -> parse envelope -> record receipt -> dispatch (inline, or
    via ``enqueue`` when asynchronous processing is enabled).
    Authentication failures propagate as ``AuthenticationError``; payloads
    that cannot be parsed are acknowledged as invalid.
    """

    def __init__(self, verifier, dispatcher, event_log, enqueue=None):
        self.verifier = verifier
        self.dispatcher = dispatcher
        self.event_log = event_log
        self.enqueue = enqueue

    def handle(self, provider, raw_body, signature):
        verification = self.verifier.verify(raw_body, signature, provider)

        try:
            inbound = InboundEvent.from_body(provider, raw_body)
        except ValidationError as exc:
            logger.warning(
                "Malformed webhook acknowledged",
                extra={"provider": provider.value, "reason": exc.message},
            )
            metrics.record_webhook(provider.value, None, ProcessingStatus.INVALID.value)
            return ProcessingResult.invalid(exc.message)

        if not verification.verified:
            logger.warning(
                "Processing webhook without signature verification",
                extra={"provider": provider.value, "event_id": inbound.event_id, "event_type": inbound.event_type},
            )

        try:
            record = self.event_log.record_received(inbound, verification.mode)
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error(
                "Could not record webhook receipt",
                extra={"provider": provider.value, "event_id": inbound.event_id, "error": str(exc)},
            )
            raise PersistenceError("Webhook could not be recorded") from exc

        if record is not None and record.is_processed:
            result = ProcessingResult(ProcessingStatus.DUPLICATE, reason="event already processed")
        elif self.enqueue is not None:
            result = self._enqueue(inbound)
        else:
            result = self.dispatcher.dispatch(inbound)

        metrics.record_webhook(provider.value, inbound.event_type, result.status.value)
        return result

    def _enqueue(self, inbound):
        try:
            self.enqueue(inbound.provider.value, inbound.event_id)
        except Exception:
            logger.warning(
                "Could not enqueue webhook, processing inline",
                exc_info=True,
                extra={"provider": inbound.provider.value, "event_id": inbound.event_id},
            )
            return self.dispatcher.dispatch(inbound)
        return ProcessingResult(ProcessingStatus.QUEUED, reason="queued for processing")

    def process_recorded(self, provider, event_id):
        """Dispatch an event previously stored by ``handle`` (async mode)."""
        record = self.event_log.get(provider, event_id)
        if record is None:
            logger.warning(
                "Queued webhook event not found",
                extra={"provider": provider.value, "event_id": event_id},
            )
            return ProcessingResult.ignored("unknown event")
        if record.is_processed:
            return ProcessingResult(ProcessingStatus.DUPLICATE, reason="event already processed")
        try:
            inbound = InboundEvent.from_payload(provider, record.payload)
        except ValidationError as exc:
            self.event_log.settle(provider, event_id, record.event_type, ProcessingStatus.INVALID.value)
            return ProcessingResult.invalid(exc.message)
        return self.dispatcher.dispatch(inbound)
