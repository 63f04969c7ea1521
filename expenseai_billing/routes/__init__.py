from .health_routes import bp as health_bp
from .subscription_routes import bp as subscriptions_bp
from .webhook_routes import bp as webhooks_bp


def register_blueprints(app):
    app.register_blueprint(health_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(subscriptions_bp)
