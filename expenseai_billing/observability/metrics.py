"""
Observability metrics module.

The manager operates in two modes:
1. No-op mode: every recording method exists but does nothing
2. Active mode: counters are registered with prometheus_client

Call ``metrics.configure(enabled)`` once at startup; collectors are only
registered the first time active mode is requested so repeated app
construction (tests, CLI) never registers a metric twice.
"""

import typing as t

from flask import Flask, Response


class MetricsManager:
    """Central manager for metrics operations."""

    def __init__(self, enabled: bool = False):
        self.enabled = False
        self._initialized = False
        self._set_dummies()
        if enabled:
            self.configure(True)

    def _set_dummies(self) -> None:
        self.webhook_events_total = _DummyMetric()
        self.event_outcomes_total = _DummyMetric()
        self.subscription_transitions_total = _DummyMetric()
        self.sync_requests_total = _DummyMetric()
        self.notifications_dropped_total = _DummyMetric()

    def configure(self, enabled: bool) -> None:
        if enabled and not self._initialized:
            from prometheus_client import Counter

            self.webhook_events_total = Counter(
                "billing_webhook_events_total",
                "Inbound webhook deliveries",
                ["provider", "event_type", "status"],
            )
            self.event_outcomes_total = Counter(
                "billing_event_outcomes_total",
                "Reconciliation outcomes per provider",
                ["provider", "status"],
            )
            self.subscription_transitions_total = Counter(
                "billing_subscription_transitions_total",
                "Subscription status transitions",
                ["provider", "from_status", "to_status"],
            )
            self.sync_requests_total = Counter(
                "billing_sync_requests_total",
                "On-demand provider syncs",
                ["outcome"],
            )
            self.notifications_dropped_total = Counter(
                "billing_notifications_dropped_total",
                "Notifications that could not be enqueued",
                ["kind"],
            )
            self._initialized = True
        self.enabled = enabled and self._initialized

    def record_webhook(self, provider: str, event_type: str, status: str) -> None:
        if self.enabled:
            self.webhook_events_total.labels(
                provider=provider, event_type=event_type or "unknown", status=status
            ).inc()

    def record_event_outcome(self, provider: str, status: str) -> None:
        if self.enabled:
            self.event_outcomes_total.labels(provider=provider, status=status).inc()

    def record_transition(self, provider: str, from_status: str, to_status: str) -> None:
        if self.enabled:
            self.subscription_transitions_total.labels(
                provider=provider, from_status=from_status, to_status=to_status
            ).inc()

    def record_sync(self, outcome: str) -> None:
        if self.enabled:
            self.sync_requests_total.labels(outcome=outcome).inc()

    def record_notification_dropped(self, kind: str) -> None:
        if self.enabled:
            self.notifications_dropped_total.labels(kind=kind).inc()


class _DummyMetric:
    """Dummy metric object that mimics Prometheus metric interface."""

    def labels(self, **labels: str) -> "_DummyMetric":
        return self

    def inc(self, amount: float = 1) -> None:
        pass


metrics = MetricsManager()


def register_metrics(app: Flask) -> None:
    """Expose /metrics when metrics are enabled."""
    metrics.configure(bool(app.config.get("METRICS_ENABLED", False)))
    if not metrics.enabled:
        return

    from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

    @app.route("/metrics")
    def prometheus_metrics() -> t.Any:
        return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)
