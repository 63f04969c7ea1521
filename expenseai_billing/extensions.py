"""
Flask extensions initialization module.
"""

import logging
from datetime import timedelta

import redis
from flask_jwt_extended import JWTManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
jwt = JWTManager()
migrate = Migrate()
redis_client = None

logger = logging.getLogger(__name__)


def init_extensions(app):
    """Initialize all Flask extensions."""
    init_redis(app)

    db.init_app(app)
    logger.info("SQLAlchemy initialized")

    migrate.init_app(app, db)
    logger.info("Flask-Migrate initialized")

    configure_jwt(app)
    jwt.init_app(app)
    setup_jwt_callbacks()
    logger.info("JWT Manager initialized")

    if app.config.get("CREATE_TABLES_ON_START", False):
        with app.app_context():
            db.create_all()
            logger.info("Database tables created")

    return app


def configure_jwt(app):
    """Access tokens are issued by the ExpenseAI auth service; this service only verifies them."""
    app.config.setdefault("JWT_ACCESS_TOKEN_EXPIRES", timedelta(minutes=15))
    app.config.setdefault("JWT_TOKEN_LOCATION", ["headers"])
    app.config.setdefault("JWT_HEADER_NAME", "Authorization")
    app.config.setdefault("JWT_HEADER_TYPE", "Bearer")
    app.config.setdefault("JWT_ALGORITHM", "HS256")
    app.config.setdefault("JWT_ERROR_MESSAGE_KEY", "message")


def init_redis(app):
    """
    Connect to Redis when REDIS_URL is configured.

    Redis backs the cross-process subscription lock. Without it the
    service falls back to in-process locking, which is only safe for a
    single worker; production refuses to start without Redis.
    """
    global redis_client

    redis_url = app.config.get("REDIS_URL")
    if not redis_url:
        redis_client = None
        logger.warning("REDIS_URL not set - subscription locks are process-local")
        return None

    try:
        redis_client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        redis_client.ping()
        logger.info("Redis initialized successfully")
    except redis.RedisError as e:
        logger.error(f"Failed to connect to Redis: {e}")
        if app.config.get("REQUIRE_REDIS", False):
            raise
        redis_client = None
    return redis_client


def get_redis():
    return redis_client


def setup_jwt_callbacks():
    from flask import jsonify

    @jwt.unauthorized_loader
    def missing_token_callback(reason):
        return jsonify({
            "error": "AUTH_REQUIRED",
            "message": reason,
        }), 401

    @jwt.invalid_token_loader
    def invalid_token_callback(reason):
        return jsonify({
            "error": "INVALID_TOKEN",
            "message": reason,
        }), 401

    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        return jsonify({
            "error": "TOKEN_EXPIRED",
            "message": "The access token has expired",
        }), 401
