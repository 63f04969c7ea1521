import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict

from expenseai_billing.domain.subscriptions import ProcessingResult, Provider
from expenseai_billing.errors import ValidationError
from expenseai_billing.webhooks import revenuecat_events, stripe_events

logger = logging.getLogger(__name__)

ENVELOPE_PARSERS = {
    Provider.CARD_BILLING: stripe_events.parse_envelope,
    Provider.STORE_AGGREGATOR: revenuecat_events.parse_envelope,
}


@dataclass(frozen=True)
class InboundEvent:
    provider: Provider
    event_id: str
    event_type: str
    payload: Dict[str, Any] = field(compare=False, hash=False)

    @classmethod
    def from_body(cls, provider, raw_body):
        try:
            payload = json.loads(raw_body)
        except (TypeError, ValueError, UnicodeDecodeError) as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc
        return cls.from_payload(provider, payload)

    @classmethod
    def from_payload(cls, provider, payload):
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")
        event_id, event_type = ENVELOPE_PARSERS[provider](payload)
        return cls(provider=provider, event_id=str(event_id), event_type=str(event_type), payload=payload)


class EventDispatcher:
    """
    Routes inbound events to the provider-specific normalizer for their
    type, then hands the normalized event to the reconciler.

    Unknown types and payloads that fail validation are acknowledged
    without touching state so the provider stops redelivering them. Their
    outcome is still written to the event log so the row ages out with
    the dedup window.
    """

    def __init__(self, reconciler, handlers=None, event_log=None):
        self.reconciler = reconciler
        self.event_log = event_log
        self._handlers = {
            Provider.CARD_BILLING: dict(stripe_events.HANDLERS),
            Provider.STORE_AGGREGATOR: dict(revenuecat_events.HANDLERS),
        }
        for provider, extra in (handlers or {}).items():
            self._handlers.setdefault(provider, {}).update(extra)

    def register(self, provider, event_type, handler):
        self._handlers.setdefault(provider, {})[event_type] = handler

    def handler_for(self, provider, event_type):
        return self._handlers.get(provider, {}).get(event_type)

    def dispatch(self, inbound):
        handler = self.handler_for(inbound.provider, inbound.event_type)
        if handler is None:
            logger.info(
                "Unhandled webhook event type",
                extra={"provider": inbound.provider.value, "event_type": inbound.event_type, "event_id": inbound.event_id},
            )
            return self._settle(inbound, ProcessingResult.ignored(f"unhandled event type {inbound.event_type}"))

        try:
            normalized = handler(inbound.payload)
            if normalized is None:
                logger.info(
                    "Webhook event not applicable to subscription state",
                    extra={"provider": inbound.provider.value, "event_type": inbound.event_type, "event_id": inbound.event_id},
                )
                return self._settle(inbound, ProcessingResult.ignored("event does not affect subscription state"))
            return self.reconciler.apply(
                normalized.with_identity(inbound.event_id, inbound.event_type)
            )
        except ValidationError as exc:
            logger.warning(
                "Webhook payload rejected",
                extra={
                    "provider": inbound.provider.value,
                    "event_type": inbound.event_type,
                    "event_id": inbound.event_id,
                    "reason": exc.message,
                },
            )
            return self._settle(inbound, ProcessingResult.invalid(exc.message))

    def _settle(self, inbound, result):
        if self.event_log is not None:
            self.event_log.settle(inbound.provider, inbound.event_id, inbound.event_type, result.status.value)
        return result
