from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from expenseai_billing.domain.subscriptions import ProviderSnapshot
from expenseai_billing.errors import UnsupportedOperation
from expenseai_billing.utils.retry_policy import RetryPolicy


@dataclass(frozen=True)
class CreatedSubscription:
    external_subscription_id: str
    external_customer_id: str
    snapshot: Optional[ProviderSnapshot]
    client_secret: Optional[str] = None
    provider_status: Optional[str] = None


class ProviderClient(ABC):
    """
    Outbound interface to one billing provider.

    Implementations classify failures as ``ProviderUnavailable`` (retried
    with backoff by ``retry_policy``) or ``ProviderRequestError`` (not
    retried). Lookups return ``None`` when the provider has no record.
    """

    provider = None

    def __init__(self, retry_policy=None):
        self.retry_policy = retry_policy or RetryPolicy()

    @abstractmethod
    def retrieve_subscription(self, external_subscription_id):
        raise NotImplementedError

    @abstractmethod
    def find_subscription_for_customer(self, external_customer_id):
        raise NotImplementedError

    @abstractmethod
    def cancel_subscription(self, external_subscription_id, at_period_end=True):
        raise NotImplementedError

    def create_subscription(self, user_id, plan, payment_method_id, customer_id=None, email=None):
        raise UnsupportedOperation(
            f"{self.provider.value} subscriptions cannot be created server-side"
        )

    def update_payment_method(self, external_customer_id, external_subscription_id, payment_method_id):
        raise UnsupportedOperation(
            "Payment methods for store purchases are managed in the App Store or Google Play"
        )

    def verify_purchase(self, app_user_id, platform, product_id, purchase_token):
        raise UnsupportedOperation(
            f"{self.provider.value} does not verify store receipts"
        )
