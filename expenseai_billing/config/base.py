import json
import os


class ConfigurationError(Exception):
    """
    Raised when an invalid or unsupported configuration is requested.
    """
    pass


def _env_bool(name, default=False):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name, default):
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name, default):
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _price_ids():
    """STRIPE_PRICE_IDS as JSON, or STRIPE_PRICE_WEEKLY/MONTHLY/YEARLY."""
    raw = os.getenv("STRIPE_PRICE_IDS")
    if raw:
        try:
            return dict(json.loads(raw))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError("STRIPE_PRICE_IDS must be a JSON object") from exc
    prices = {
        "weekly": os.getenv("STRIPE_PRICE_WEEKLY"),
        "monthly": os.getenv("STRIPE_PRICE_MONTHLY"),
        "yearly": os.getenv("STRIPE_PRICE_YEARLY"),
    }
    return {plan: price for plan, price in prices.items() if price}


class BaseConfig:
    """
    Base configuration shared by all environments.
    """

    # Flask
    DEBUG = False
    TESTING = False
    SECRET_KEY = os.getenv("SECRET_KEY")

    # Application
    APP_NAME = "ExpenseAI Billing"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Database
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///expenseai_billing.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
    CREATE_TABLES_ON_START = _env_bool("CREATE_TABLES_ON_START")

    # Auth (tokens issued by the ExpenseAI API)
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY")

    # Redis / Celery
    REDIS_URL = os.getenv("REDIS_URL")
    REQUIRE_REDIS = False
    CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL") or os.getenv("REDIS_URL")
    CELERY_TASK_ALWAYS_EAGER = False

    # Card billing (Stripe)
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_WEBHOOK_TOLERANCE = _env_int("STRIPE_WEBHOOK_TOLERANCE", 300)
    STRIPE_PRICE_IDS = _price_ids()

    # Store aggregator (RevenueCat)
    REVENUECAT_API_KEY = os.getenv("REVENUECAT_API_KEY")
    REVENUECAT_WEBHOOK_SECRET = os.getenv("REVENUECAT_WEBHOOK_SECRET")
    REVENUECAT_BASE_URL = os.getenv("REVENUECAT_BASE_URL", "https://api.revenuecat.com/v1")
    REVENUECAT_ENTITLEMENT_ID = os.getenv("REVENUECAT_ENTITLEMENT_ID", "premium")

    # Provider calls
    PROVIDER_TIMEOUT_SECONDS = _env_int("PROVIDER_TIMEOUT_SECONDS", 10)
    PROVIDER_MAX_ATTEMPTS = _env_int("PROVIDER_MAX_ATTEMPTS", 3)
    PROVIDER_BACKOFF_BASE_SECONDS = _env_float("PROVIDER_BACKOFF_BASE_SECONDS", 0.5)
    PROVIDER_BACKOFF_MAX_SECONDS = _env_float("PROVIDER_BACKOFF_MAX_SECONDS", 4.0)
    PROVIDER_DEADLINE_SECONDS = _env_float("PROVIDER_DEADLINE_SECONDS", 20.0)

    # Reconciliation
    SUBSCRIPTION_LOCK_TTL_SECONDS = _env_int("SUBSCRIPTION_LOCK_TTL_SECONDS", 30)
    SUBSCRIPTION_LOCK_WAIT_SECONDS = _env_int("SUBSCRIPTION_LOCK_WAIT_SECONDS", 10)
    WEBHOOK_DEDUP_WINDOW_DAYS = _env_int("WEBHOOK_DEDUP_WINDOW_DAYS", 30)
    WEBHOOK_ASYNC_PROCESSING = _env_bool("WEBHOOK_ASYNC_PROCESSING")
    LAPSE_SWEEP_LOOKAHEAD_HOURS = _env_float("LAPSE_SWEEP_LOOKAHEAD_HOURS", 1.0)
    REQUIRE_WEBHOOK_SECRETS = _env_bool("REQUIRE_WEBHOOK_SECRETS")

    # Notifications
    PUSH_GATEWAY_URL = os.getenv("PUSH_GATEWAY_URL")

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN")
    METRICS_ENABLED = _env_bool("METRICS_ENABLED", True)

    @classmethod
    def validate(cls):
        return cls
