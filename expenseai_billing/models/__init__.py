from .provider_identity import ProviderIdentity
from .subscription import Subscription
from .webhook_event import WebhookEvent

__all__ = ["ProviderIdentity", "Subscription", "WebhookEvent"]
