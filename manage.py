"""Management script for database and billing maintenance tasks"""

import json
import os

import click
from dotenv import load_dotenv
from flask.cli import FlaskGroup

load_dotenv()

from expenseai_billing import create_app  # noqa: E402
from expenseai_billing.billing.services import get_billing  # noqa: E402
from expenseai_billing.extensions import db  # noqa: E402


def _create_app():
    return create_app(os.getenv("APP_ENV", "development"))


cli = FlaskGroup(create_app=_create_app)


@cli.command("init-db")
def init_db():
    """Create all database tables"""
    db.create_all()
    click.echo("✅ Database initialized successfully!")


@cli.command("sweep-lapsed")
@click.option("--limit", type=int, default=None, help="Maximum subscriptions to examine")
def sweep_lapsed(limit):
    """Expire or refresh subscriptions whose billing period is ending"""
    report = get_billing().sweeper.run(limit=limit)
    click.echo(json.dumps(report.to_dict(), indent=2))


@cli.command("sync-user")
@click.argument("user_id")
def sync_user(user_id):
    """Pull the latest subscription state for one user from the providers"""
    result = get_billing().sync.sync_now(user_id)
    payload = {
        "subscription": result.subscription.to_dict() if result.subscription else None,
        "stale": result.stale,
    }
    click.echo(json.dumps(payload, indent=2))


@cli.command("purge-events")
@click.option("--days", type=int, default=None, help="Keep processed events newer than this")
def purge_events(days):
    """Delete processed webhook events older than the dedup window"""
    from flask import current_app

    days = days if days is not None else current_app.config["WEBHOOK_DEDUP_WINDOW_DAYS"]
    removed = get_billing().event_log.purge_processed(days)
    click.echo(f"✅ Removed {removed} processed webhook events")


if __name__ == "__main__":
    cli()
