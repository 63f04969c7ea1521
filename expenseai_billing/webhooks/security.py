import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from enum import Enum

import stripe

from expenseai_billing.domain.subscriptions import Provider
from expenseai_billing.errors import AuthenticationError

logger = logging.getLogger(__name__)

ALLOWED_DRIFT_SECONDS = 300  # 5 minutes

_HEX_SHA256 = re.compile(r"^[0-9a-f]{64}$")


class VerificationMode(str, Enum):
    SIGNATURE = "signature"
    UNVERIFIED = "unverified"


@dataclass(frozen=True)
class Verification:
    provider: Provider
    mode: VerificationMode

    @property
    def verified(self):
        return self.mode is VerificationMode.SIGNATURE


class WebhookVerifier:
    """
    Authenticates inbound webhook bodies.

    With a secret configured for the provider the signature must match or
    ``AuthenticationError`` is raised. Without one the payload is accepted
    but the returned ``Verification`` says so, and the caller logs it.
    """

    def __init__(self, secrets, tolerance=ALLOWED_DRIFT_SECONDS):
        self.secrets = dict(secrets)
        self.tolerance = tolerance

    @classmethod
    def from_config(cls, config):
        return cls(
            secrets={
                Provider.CARD_BILLING: config.get("STRIPE_WEBHOOK_SECRET"),
                Provider.STORE_AGGREGATOR: config.get("REVENUECAT_WEBHOOK_SECRET"),
            },
            tolerance=int(config.get("STRIPE_WEBHOOK_TOLERANCE", ALLOWED_DRIFT_SECONDS)),
        )

    def verify(self, payload, signature, provider):
        secret = self.secrets.get(provider)
        if not secret:
            return Verification(provider=provider, mode=VerificationMode.UNVERIFIED)

        if not signature:
            raise AuthenticationError("Missing webhook signature")

        if provider is Provider.CARD_BILLING:
            self._verify_stripe(payload, signature, secret)
        else:
            self._verify_hmac_sha256(payload, signature, secret)
        return Verification(provider=provider, mode=VerificationMode.SIGNATURE)

    def _verify_stripe(self, payload, signature, secret):
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise AuthenticationError("Webhook body is not valid UTF-8") from exc
        try:
            stripe.WebhookSignature.verify_header(body, signature, secret, self.tolerance)
        except stripe.SignatureVerificationError as exc:
            raise AuthenticationError("Invalid webhook signature") from exc

    def _verify_hmac_sha256(self, payload, signature, secret):
        provided = signature.strip().lower()
        if not _HEX_SHA256.match(provided):
            raise AuthenticationError("Malformed webhook signature")

        expected_signature = hmac.new(
            secret.encode(),
            payload,
            hashlib.sha256,
        ).hexdigest()

        if not hmac.compare_digest(expected_signature, provided):
            raise AuthenticationError("Invalid webhook signature")
