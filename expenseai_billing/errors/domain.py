class DomainError(Exception):
    """
    Base class for every error raised by the billing domain.

    Each subclass carries the HTTP status and machine-readable code the
    API layer renders, plus a ``retryable`` hint used by webhook delivery
    and background tasks.
    """

    status_code = 400
    code = "DOMAIN_ERROR"
    retryable = False
    default_message = "Billing request could not be completed"

    def __init__(self, message=None, *, details=None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        payload = {
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class BillingError(DomainError):
    status_code = 500
    code = "BILLING_ERROR"


class AuthenticationError(BillingError):
    status_code = 401
    code = "WEBHOOK_AUTHENTICATION_FAILED"
    default_message = "Webhook authenticity could not be established"


class ValidationError(BillingError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Malformed billing payload"


class ProviderError(BillingError):
    status_code = 502
    code = "PROVIDER_ERROR"
    default_message = "Billing provider request failed"

    def __init__(self, message=None, *, provider=None, http_status=None, details=None):
        self.provider = provider
        self.http_status = http_status
        super().__init__(message, details=details)


class ProviderUnavailable(ProviderError):
    """Timeouts, connection failures, 5xx and 429 responses."""

    status_code = 503
    code = "PROVIDER_UNAVAILABLE"
    retryable = True
    default_message = "Billing provider is temporarily unavailable"


class ProviderRequestError(ProviderError):
    """The provider rejected the request itself (4xx other than 429)."""

    status_code = 502
    code = "PROVIDER_REQUEST_REJECTED"
    default_message = "Billing provider rejected the request"


class StateConflict(BillingError):
    status_code = 409
    code = "STATE_CONFLICT"
    default_message = "Event is older than the current subscription state"


class PersistenceError(BillingError):
    status_code = 500
    code = "PERSISTENCE_ERROR"
    retryable = True
    default_message = "Subscription state could not be stored"


class LockTimeout(PersistenceError):
    status_code = 503
    code = "SUBSCRIPTION_BUSY"
    default_message = "Subscription is being updated, try again shortly"


class SubscriptionNotFound(BillingError):
    status_code = 404
    code = "SUBSCRIPTION_NOT_FOUND"
    default_message = "No subscription found"


class UnsupportedOperation(BillingError):
    status_code = 409
    code = "UNSUPPORTED_OPERATION"
    default_message = "Operation is not supported for this subscription"
