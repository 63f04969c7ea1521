from expenseai_billing.config.base import ConfigurationError

from .domain import (
    AuthenticationError,
    BillingError,
    DomainError,
    LockTimeout,
    PersistenceError,
    ProviderError,
    ProviderRequestError,
    ProviderUnavailable,
    StateConflict,
    SubscriptionNotFound,
    UnsupportedOperation,
    ValidationError,
)

__all__ = [
    "AuthenticationError",
    "BillingError",
    "ConfigurationError",
    "DomainError",
    "LockTimeout",
    "PersistenceError",
    "ProviderError",
    "ProviderRequestError",
    "ProviderUnavailable",
    "StateConflict",
    "SubscriptionNotFound",
    "UnsupportedOperation",
    "ValidationError",
]
