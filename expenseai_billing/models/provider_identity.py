from sqlalchemy import UniqueConstraint

from expenseai_billing.extensions import db
from expenseai_billing.utils.clock import utcnow


class ProviderIdentity(db.Model):
    """Maps an ExpenseAI user to their customer id at one billing provider."""

    __tablename__ = "provider_identities"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    provider = db.Column(db.String(32), nullable=False)
    external_customer_id = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "external_customer_id", name="uq_identity_provider_customer"),
        UniqueConstraint("user_id", "provider", name="uq_identity_user_provider"),
    )

    def __repr__(self):
        return f"<ProviderIdentity {self.provider}:{self.external_customer_id} user={self.user_id}>"
