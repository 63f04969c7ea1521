"""
ExpenseAI billing service application factory.
"""

import logging
import sys
from typing import Optional

import sentry_sdk
from flask import Flask
from sentry_sdk.integrations.flask import FlaskIntegration

from expenseai_billing.billing.services import init_billing
from expenseai_billing.config import ConfigurationError, get_config
from expenseai_billing.error_handlers import register_error_handlers
from expenseai_billing.extensions import init_extensions
from expenseai_billing.logging_config import setup_logging
from expenseai_billing.middleware.request_id import init_request_id_middleware
from expenseai_billing.observability.metrics import register_metrics
from expenseai_billing.routes import register_blueprints
from expenseai_billing.workers.celery_app import init_celery

__version__ = "1.0.0"


def setup_sentry(app: Flask) -> None:
    sentry_dsn = app.config.get("SENTRY_DSN")
    if not sentry_dsn:
        return
    sentry_sdk.init(
        dsn=sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.1,
        environment=app.config.get("APP_ENV", "production"),
        release=__version__,
        send_default_pii=False,
    )
    app.logger.info("Sentry error tracking initialized")


def create_app(config_name: Optional[str] = None, **billing_overrides) -> Flask:
    """
    Application factory.

    ``billing_overrides`` are passed to ``build_billing_services`` so tests
    and scripts can inject provider clients, the notifier or the clock.
    """
    app = Flask(__name__)

    try:
        config = get_config(config_name)
    except ConfigurationError as e:
        print(f"CRITICAL: Configuration error: {str(e)}", file=sys.stderr)
        raise
    app.config.from_object(config)

    setup_logging(app)
    app.logger = logging.getLogger("expenseai_billing")
    setup_sentry(app)

    init_request_id_middleware(app)
    init_extensions(app)
    init_celery(app)
    register_metrics(app)

    with app.app_context():
        init_billing(app, **billing_overrides)

    register_blueprints(app)
    register_error_handlers(app)

    app.logger.info(f"{app.config['APP_NAME']} started", extra={"config": config.__name__})
    return app
