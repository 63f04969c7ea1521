import logging
from abc import ABC, abstractmethod

from expenseai_billing.domain.subscriptions import Provider
from expenseai_billing.extensions import db
from expenseai_billing.models.provider_identity import ProviderIdentity

logger = logging.getLogger(__name__)


class IdentityResolver(ABC):
    """Translates between ExpenseAI user ids and provider customer ids."""

    @abstractmethod
    def external_customer_id(self, user_id, provider):
        raise NotImplementedError

    @abstractmethod
    def user_id_for(self, provider, external_customer_id):
        raise NotImplementedError

    @abstractmethod
    def link(self, user_id, provider, external_customer_id):
        raise NotImplementedError


class IdentityDirectory(IdentityResolver):
    """
    Identity mapping backed by the ``provider_identities`` table.

    Mobile clients log in to the store aggregator with their ExpenseAI
    user id as the app user id, so for that provider an unmapped id is
    taken to be the user id itself.
    """

    def external_customer_id(self, user_id, provider):
        row = ProviderIdentity.query.filter_by(user_id=user_id, provider=provider.value).first()
        if row is not None:
            return row.external_customer_id
        if provider is Provider.STORE_AGGREGATOR:
            return user_id
        return None

    def user_id_for(self, provider, external_customer_id):
        if not external_customer_id:
            return None
        row = ProviderIdentity.query.filter_by(
            provider=provider.value, external_customer_id=external_customer_id
        ).first()
        if row is not None:
            return row.user_id
        if provider is Provider.STORE_AGGREGATOR:
            return external_customer_id
        return None

    def link(self, user_id, provider, external_customer_id):
        """Record the mapping in the current transaction; the caller commits."""
        if not user_id or not external_customer_id:
            return None
        row = ProviderIdentity.query.filter_by(user_id=user_id, provider=provider.value).first()
        if row is None:
            row = ProviderIdentity(
                user_id=user_id,
                provider=provider.value,
                external_customer_id=external_customer_id,
            )
            db.session.add(row)
        elif row.external_customer_id != external_customer_id:
            logger.warning(
                "Provider customer id changed for user",
                extra={
                    "user_id": user_id,
                    "provider": provider.value,
                    "previous_customer_id": row.external_customer_id,
                    "customer_id": external_customer_id,
                },
            )
            row.external_customer_id = external_customer_id
        return row
