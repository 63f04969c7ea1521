import os

from .base import BaseConfig, ConfigurationError, _env_bool


class ProductionConfig(BaseConfig):
    """
    Production configuration.
    """

    DEBUG = False

    REQUIRE_REDIS = True
    REQUIRE_WEBHOOK_SECRETS = _env_bool("REQUIRE_WEBHOOK_SECRETS", True)
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 1800,
        "pool_size": int(os.getenv("DB_POOL_SIZE", 10)),
    }

    @classmethod
    def validate(cls):
        missing = [
            key
            for key in ("SECRET_KEY", "JWT_SECRET_KEY", "REDIS_URL")
            if not getattr(cls, key)
        ]
        if not os.getenv("DATABASE_URL"):
            missing.append("DATABASE_URL")

        if cls.REQUIRE_WEBHOOK_SECRETS:
            for key in ("STRIPE_WEBHOOK_SECRET", "REVENUECAT_WEBHOOK_SECRET"):
                if not getattr(cls, key):
                    missing.append(key)

        if missing:
            raise ConfigurationError(
                "Missing required production settings: " + ", ".join(sorted(missing))
            )
        return cls
