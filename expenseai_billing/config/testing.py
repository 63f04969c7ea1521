from .base import BaseConfig


class TestingConfig(BaseConfig):
    """
    Test configuration: in-memory SQLite, process-local locks, no network.
    """

    TESTING = True

    SECRET_KEY = "test-secret-key"
    JWT_SECRET_KEY = "test-jwt-secret"

    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    CREATE_TABLES_ON_START = False

    REDIS_URL = None
    CELERY_BROKER_URL = "memory://"
    CELERY_TASK_ALWAYS_EAGER = True

    STRIPE_SECRET_KEY = None
    STRIPE_WEBHOOK_SECRET = None
    STRIPE_PRICE_IDS = {"weekly": "price_weekly", "monthly": "price_monthly", "yearly": "price_yearly"}
    REVENUECAT_API_KEY = None
    REVENUECAT_WEBHOOK_SECRET = None

    PROVIDER_MAX_ATTEMPTS = 3
    PROVIDER_BACKOFF_BASE_SECONDS = 0.0
    PROVIDER_BACKOFF_MAX_SECONDS = 0.0
    SUBSCRIPTION_LOCK_WAIT_SECONDS = 2
    WEBHOOK_ASYNC_PROCESSING = False
    REQUIRE_WEBHOOK_SECRETS = False

    PUSH_GATEWAY_URL = None
    SENTRY_DSN = None
    METRICS_ENABLED = False
    LOG_LEVEL = "WARNING"
