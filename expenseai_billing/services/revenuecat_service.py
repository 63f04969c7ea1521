import logging
from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests

from expenseai_billing.domain.subscriptions import (
    Plan,
    Provider,
    ProviderSnapshot,
    SubscriptionStatus,
)
from expenseai_billing.errors import (
    ProviderRequestError,
    ProviderUnavailable,
    UnsupportedOperation,
    ValidationError,
)
from expenseai_billing.services.provider_client import CreatedSubscription, ProviderClient
from expenseai_billing.utils.clock import parse_iso8601, utcnow

logger = logging.getLogger(__name__)

REVENUECAT_BASE_URL = "https://api.revenuecat.com/v1"

PLATFORM_HEADERS = {
    "ios": "ios",
    "android": "android",
}

# Only Google Play subscriptions can be cancelled or revoked server-side.
CANCELLABLE_STORES = frozenset({"play_store"})


def snapshot_from_subscriber(
    subscriber: Dict[str, Any],
    app_user_id: str,
    fetched_at,
    entitlement_id: Optional[str] = None,
) -> Optional[ProviderSnapshot]:
    """
    Derive the subscription snapshot from a RevenueCat subscriber document.

    The entitlement's product wins; otherwise the subscription with the
    latest expiry is used.
    """
    subscriptions = subscriber.get("subscriptions") or {}
    if not subscriptions:
        return None

    product_id = None
    entitlement = (subscriber.get("entitlements") or {}).get(entitlement_id) if entitlement_id else None
    if entitlement:
        product_id = entitlement.get("product_identifier")
    if product_id not in subscriptions:
        product_id = max(
            subscriptions,
            key=lambda key: parse_iso8601(subscriptions[key].get("expires_date")) or datetime.min,
        )

    details = subscriptions[product_id]
    expires_at = parse_iso8601(details.get("expires_date"))
    refunded_at = parse_iso8601(details.get("refunded_at"))

    if refunded_at is not None:
        status = SubscriptionStatus.CANCELLED
    elif expires_at is not None and expires_at <= fetched_at:
        status = SubscriptionStatus.EXPIRED
    elif details.get("billing_issues_detected_at"):
        status = SubscriptionStatus.PAST_DUE
    elif (details.get("period_type") or "").lower() == "trial":
        status = SubscriptionStatus.TRIALING
    else:
        status = SubscriptionStatus.ACTIVE

    cancelled_at = refunded_at or parse_iso8601(details.get("unsubscribe_detected_at"))
    if refunded_at is not None and (expires_at is None or refunded_at < expires_at):
        expires_at = refunded_at

    return ProviderSnapshot(
        provider=Provider.STORE_AGGREGATOR,
        external_subscription_id=app_user_id,
        external_customer_id=app_user_id,
        plan=Plan.from_product_id(product_id),
        status=status,
        current_period_start=parse_iso8601(details.get("purchase_date")),
        current_period_end=expires_at,
        cancelled_at=cancelled_at,
        trial_end=expires_at if status is SubscriptionStatus.TRIALING else None,
        fetched_at=fetched_at,
        metadata={
            "product_id": product_id,
            "store": details.get("store"),
            "is_sandbox": bool(details.get("is_sandbox")),
        },
    )


class RevenueCatClient(ProviderClient):
    """Store aggregator client for the RevenueCat REST API."""

    provider = Provider.STORE_AGGREGATOR

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = REVENUECAT_BASE_URL,
        entitlement_id: Optional[str] = "premium",
        timeout: int = 10,
        retry_policy=None,
        session: Optional[requests.Session] = None,
        clock=utcnow,
    ):
        super().__init__(retry_policy)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.entitlement_id = entitlement_id
        self.timeout = timeout
        self.session = session or requests.Session()
        self.clock = clock

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    def _request(self, method: str, path: str, headers: Optional[Dict[str, str]] = None, **kwargs):
        url = f"{self.base_url}{path}"

        def attempt():
            try:
                response = self.session.request(
                    method,
                    url,
                    headers=self._headers(headers),
                    timeout=self.timeout,
                    **kwargs,
                )
            except (requests.Timeout, requests.ConnectionError) as exc:
                raise ProviderUnavailable(
                    "Could not reach store aggregator",
                    provider=self.provider,
                ) from exc

            status = response.status_code
            if status == 429 or status >= 500:
                raise ProviderUnavailable(
                    f"Store aggregator returned {status}",
                    provider=self.provider,
                    http_status=status,
                )
            if status == 404:
                return None
            if status >= 400:
                raise ProviderRequestError(
                    f"Store aggregator rejected request: {response.text[:200]}",
                    provider=self.provider,
                    http_status=status,
                )
            try:
                return response.json()
            except ValueError as exc:
                raise ProviderUnavailable(
                    "Store aggregator returned an unreadable body",
                    provider=self.provider,
                    http_status=status,
                ) from exc

        return self.retry_policy.run(attempt, description=f"revenuecat {method} {path}")

    def _snapshot(self, subscriber: Dict[str, Any], app_user_id: str) -> Optional[ProviderSnapshot]:
        try:
            return snapshot_from_subscriber(
                subscriber,
                app_user_id=app_user_id,
                fetched_at=self.clock(),
                entitlement_id=self.entitlement_id,
            )
        except ValidationError as exc:
            raise ProviderRequestError(
                f"Store aggregator returned an unreadable subscriber: {exc.message}",
                provider=self.provider,
            ) from exc

    def get_subscriber(self, app_user_id: str) -> Optional[Dict[str, Any]]:
        body = self._request("GET", f"/subscribers/{quote(app_user_id, safe='')}")
        if not body:
            return None
        return body.get("subscriber")

    def retrieve_subscription(self, external_subscription_id: str) -> Optional[ProviderSnapshot]:
        subscriber = self.get_subscriber(external_subscription_id)
        if subscriber is None:
            return None
        return self._snapshot(subscriber, external_subscription_id)

    def find_subscription_for_customer(self, external_customer_id: str) -> Optional[ProviderSnapshot]:
        # Subscriptions are keyed by app user id, which is also the customer id.
        return self.retrieve_subscription(external_customer_id)

    def verify_purchase(self, app_user_id: str, platform: str, product_id: str, purchase_token: str) -> CreatedSubscription:
        platform_header = PLATFORM_HEADERS.get((platform or "").lower())
        if platform_header is None:
            raise ValidationError(f"Unsupported purchase platform '{platform}'")

        body = self._request(
            "POST",
            "/receipts",
            headers={"X-Platform": platform_header},
            json={
                "app_user_id": app_user_id,
                "fetch_token": purchase_token,
                "product_id": product_id,
            },
        )
        subscriber = (body or {}).get("subscriber")
        if not subscriber:
            raise ValidationError("Receipt did not resolve to a subscriber")

        snapshot = self._snapshot(subscriber, app_user_id)
        if snapshot is None:
            raise ValidationError("Receipt did not grant a subscription")

        logger.info(
            "Store purchase verified",
            extra={"app_user_id": app_user_id, "product_id": product_id, "status": snapshot.status.value},
        )
        return CreatedSubscription(
            external_subscription_id=snapshot.external_subscription_id,
            external_customer_id=app_user_id,
            snapshot=snapshot,
        )

    def cancel_subscription(self, external_subscription_id: str, at_period_end: bool = True) -> Optional[ProviderSnapshot]:
        subscriber = self.get_subscriber(external_subscription_id)
        snapshot = None
        if subscriber is not None:
            snapshot = self._snapshot(subscriber, external_subscription_id)
        if snapshot is None:
            return None

        store = (snapshot.metadata.get("store") or "").lower()
        if store not in CANCELLABLE_STORES:
            raise UnsupportedOperation(
                "Manage your subscription in the App Store or Google Play"
            )

        product_id = snapshot.metadata["product_id"]
        action = "cancel" if at_period_end else "revoke"
        self._request(
            "POST",
            f"/subscribers/{quote(external_subscription_id, safe='')}"
            f"/subscriptions/{quote(product_id, safe='')}/{action}",
        )
        logger.info(
            "Store subscription cancellation requested",
            extra={"app_user_id": external_subscription_id, "product_id": product_id, "action": action},
        )
        return self.retrieve_subscription(external_subscription_id)
