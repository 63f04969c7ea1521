from sqlalchemy import Index, UniqueConstraint

from expenseai_billing.extensions import db
from expenseai_billing.utils.clock import utcnow


class WebhookEvent(db.Model):
    """
    Inbound provider event log.

    ``(provider, external_event_id)`` is unique so a redelivered event can
    be recognised. ``processed_at`` is set in the same transaction as the
    subscription write it caused.
    """

    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    provider = db.Column(db.String(32), nullable=False)
    external_event_id = db.Column(db.String(255), nullable=False)
    event_type = db.Column(db.String(100), nullable=False)
    payload = db.Column(db.JSON, nullable=True)
    verification = db.Column(db.String(16), nullable=False, default="signature")

    received_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    processed_at = db.Column(db.DateTime, nullable=True)
    outcome = db.Column(db.String(32), nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("provider", "external_event_id", name="uq_webhook_event_provider_id"),
        Index("idx_webhook_event_processed_at", "processed_at"),
    )

    @property
    def is_processed(self):
        return self.processed_at is not None

    def __repr__(self):
        return f"<WebhookEvent {self.provider}:{self.external_event_id} {self.event_type}>"
