"""
Wiring for the billing components.

``build_billing_services`` constructs every collaborator from app config
and injects them explicitly; provider clients are never module globals.
``init_billing`` stores the result on ``app.extensions["billing"]`` and
``get_billing`` fetches it for the current app.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Optional

from flask import current_app

from expenseai_billing.billing.entitlements import EntitlementService
from expenseai_billing.billing.identity import IdentityDirectory, IdentityResolver
from expenseai_billing.billing.management import SubscriptionManager
from expenseai_billing.billing.reconciler import SubscriptionReconciler
from expenseai_billing.billing.store import SubscriptionStore
from expenseai_billing.billing.sweep import LapseSweeper
from expenseai_billing.billing.sync import SubscriptionSync
from expenseai_billing.domain.subscriptions import Provider
from expenseai_billing.extensions import get_redis
from expenseai_billing.notifications.notification_service import (
    CeleryNotificationTrigger,
    LoggingNotificationTrigger,
    NotificationTrigger,
)
from expenseai_billing.services.provider_client import ProviderClient
from expenseai_billing.services.revenuecat_service import REVENUECAT_BASE_URL, RevenueCatClient
from expenseai_billing.services.stripe_service import (
    StripeBillingClient,
    StripeConfig,
    configure_stripe_http,
)
from expenseai_billing.utils.clock import utcnow
from expenseai_billing.utils.redis_lock import SubscriptionLockManager
from expenseai_billing.utils.retry_policy import RetryPolicy
from expenseai_billing.webhooks.dispatcher import EventDispatcher
from expenseai_billing.webhooks.idempotency import WebhookEventLog
from expenseai_billing.webhooks.processor import WebhookProcessor
from expenseai_billing.webhooks.security import WebhookVerifier

logger = logging.getLogger(__name__)


@dataclass
class BillingServices:
    store: SubscriptionStore
    identity: IdentityResolver
    clients: Dict[Provider, ProviderClient]
    locks: SubscriptionLockManager
    notifier: NotificationTrigger
    event_log: WebhookEventLog
    reconciler: SubscriptionReconciler
    dispatcher: EventDispatcher
    webhooks: WebhookProcessor
    sync: SubscriptionSync
    entitlements: EntitlementService
    manager: SubscriptionManager
    sweeper: LapseSweeper


def build_provider_clients(config, retry_policy=None):
    retry_policy = retry_policy or RetryPolicy.from_config(config)
    timeout = int(config.get("PROVIDER_TIMEOUT_SECONDS", 10))
    clients = {}

    if config.get("STRIPE_SECRET_KEY"):
        stripe_config = StripeConfig.from_app_config(config)
        configure_stripe_http(stripe_config.timeout)
        clients[Provider.CARD_BILLING] = StripeBillingClient(stripe_config, retry_policy=retry_policy)
    else:
        logger.warning("STRIPE_SECRET_KEY not set; card billing calls are disabled")

    if config.get("REVENUECAT_API_KEY"):
        clients[Provider.STORE_AGGREGATOR] = RevenueCatClient(
            api_key=config["REVENUECAT_API_KEY"],
            base_url=config.get("REVENUECAT_BASE_URL") or REVENUECAT_BASE_URL,
            entitlement_id=config.get("REVENUECAT_ENTITLEMENT_ID"),
            timeout=timeout,
            retry_policy=retry_policy,
        )
    else:
        logger.warning("REVENUECAT_API_KEY not set; store aggregator calls are disabled")

    return clients


def build_billing_services(
    config,
    clients: Optional[Dict[Provider, ProviderClient]] = None,
    notifier: Optional[NotificationTrigger] = None,
    locks: Optional[SubscriptionLockManager] = None,
    identity: Optional[IdentityResolver] = None,
    clock=None,
) -> BillingServices:
    clock = clock or utcnow
    if clients is None:
        clients = build_provider_clients(config)
    if notifier is None:
        notifier = CeleryNotificationTrigger() if config.get("PUSH_GATEWAY_URL") else LoggingNotificationTrigger()
    if locks is None:
        locks = SubscriptionLockManager(
            client=get_redis(),
            ttl=int(config.get("SUBSCRIPTION_LOCK_TTL_SECONDS", 30)),
            wait=int(config.get("SUBSCRIPTION_LOCK_WAIT_SECONDS", 10)),
        )
    identity = identity or IdentityDirectory()

    store = SubscriptionStore()
    event_log = WebhookEventLog()
    reconciler = SubscriptionReconciler(store, locks, identity, notifier, event_log, clock=clock)
    dispatcher = EventDispatcher(reconciler, event_log=event_log)

    enqueue = None
    if config.get("WEBHOOK_ASYNC_PROCESSING"):
        from expenseai_billing.workers.webhook_tasks import enqueue_inbound_event

        enqueue = enqueue_inbound_event

    sync = SubscriptionSync(store, reconciler, clients, identity)
    return BillingServices(
        store=store,
        identity=identity,
        clients=clients,
        locks=locks,
        notifier=notifier,
        event_log=event_log,
        reconciler=reconciler,
        dispatcher=dispatcher,
        webhooks=WebhookProcessor(WebhookVerifier.from_config(config), dispatcher, event_log, enqueue=enqueue),
        sync=sync,
        entitlements=EntitlementService(store, reconciler, clock=clock),
        manager=SubscriptionManager(store, reconciler, clients, identity, clock=clock),
        sweeper=LapseSweeper(
            store,
            sync,
            lookahead=timedelta(hours=float(config.get("LAPSE_SWEEP_LOOKAHEAD_HOURS", 1))),
            clock=clock,
        ),
    )


def init_billing(app, **overrides):
    services = build_billing_services(app.config, **overrides)
    app.extensions["billing"] = services
    logger.info(
        "Billing services initialised",
        extra={
            "providers": sorted(provider.value for provider in services.clients),
            "distributed_locks": services.locks.distributed,
            "async_webhooks": services.webhooks.enqueue is not None,
        },
    )
    return services


def get_billing() -> BillingServices:
    return current_app.extensions["billing"]
