import os
import logging
import uuid

import click
from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from app.config import config_by_name
from app.extensions import db, migrate, limiter, payment_client, fulfillment_client

logger = logging.getLogger(__name__)


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    payment_client.init_app(app)
    fulfillment_client.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from app import models  # noqa: F401

    # --- Register blueprints ---
    from app.blueprints.webhooks import webhooks_bp
    from app.blueprints.orders import orders_bp
    from app.blueprints.health import health_bp

    app.register_blueprint(webhooks_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(health_bp)

    # --- Request IDs ---
    @app.before_request
    def assign_request_id():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

    @app.after_request
    def add_request_id(response):
        response.headers["X-Request-ID"] = g.get("request_id", "")
        response.headers["X-Content-Type-Options"] = "nosniff"
        return response

    # --- Error handlers ---
    # Every request gets an answer, even when a handler blows up.
    @app.errorhandler(HTTPException)
    def http_error(e):
        return jsonify(error=e.name, message=e.description), e.code

    @app.errorhandler(Exception)
    def unhandled_error(e):
        db.session.rollback()
        logger.error(
            f"Unhandled error on {request.method} {request.path} "
            f"(request {g.get('request_id', '-')}): {e}",
            exc_info=True,
        )
        return jsonify(error="Internal Server Error", request_id=g.get("request_id")), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("retry-fulfillment")
    @click.option("--dry-run", is_flag=True, help="List orders that would be submitted without calling Printful.")
    def retry_fulfillment(dry_run):
        """Run one retry pass over paid orders not yet submitted to Printful.

        Usage:
            flask retry-fulfillment
            flask retry-fulfillment --dry-run
        """
        from app.services.retry_worker import run_retry_pass

        summary = run_retry_pass(fulfillment_client, dry_run=dry_run)
        click.echo("")
        click.echo("=" * 60)
        click.echo("Retry pass complete" + (" (dry run)" if dry_run else ""))
        click.echo("=" * 60)
        for key, value in summary.items():
            click.echo(f"  {key:<10} {value}")
        click.echo("=" * 60)

    @app.cli.command("run-retry-worker")
    @click.option("--interval", type=int, default=None, help="Seconds between passes (default RETRY_WORKER_INTERVAL).")
    def run_retry_worker(interval):
        """Run retry passes forever. Stop with Ctrl+C."""
        from app.services.retry_worker import run_forever

        try:
            run_forever(app, fulfillment_client, interval=interval)
        except KeyboardInterrupt:
            click.echo("Retry worker stopped.")

    @app.cli.command("confirm-fulfillment")
    @click.argument("order_id")
    def confirm_fulfillment(order_id):
        """Confirm a submitted order's Printful draft."""
        from app.services import order_service

        try:
            order = order_service.get_order(order_id)
        except order_service.OrderNotFound:
            raise click.ClickException(f"Order {order_id} not found.")

        if order_service.confirm_order(order_id, fulfillment_client):
            click.echo(f"Order {order_id} confirmed (Printful order {order.fulfillment_order_id}).")
        else:
            raise click.ClickException(
                f"Order {order_id} not confirmed (status={order.status}). See logs."
            )

    @app.cli.command("reset-fulfillment-retries")
    @click.argument("order_id")
    def reset_fulfillment_retries(order_id):
        """Put a paid order flagged for manual review back in the retry pool."""
        from app.services import order_service

        if order_service.reset_for_retry(order_id):
            click.echo(f"Order {order_id} reset; the next retry pass will submit it.")
        else:
            raise click.ClickException(f"Order {order_id} is not a paid order awaiting submission.")

    @app.cli.command("fulfillment-webhook")
    @click.argument("action", type=click.Choice(["setup", "show", "disable"]))
    @click.option("--url", default=None, help="Public webhook URL (default APP_BASE_URL + secret path).")
    def fulfillment_webhook(action, url):
        """Manage the Printful webhook registration.

        Usage:
            flask fulfillment-webhook setup
            flask fulfillment-webhook show
            flask fulfillment-webhook disable
        """
        from app.services.provider_errors import ProviderError

        try:
            if action == "setup":
                secret = app.config.get("PRINTFUL_WEBHOOK_SECRET")
                if not url and not secret:
                    raise click.ClickException("PRINTFUL_WEBHOOK_SECRET is not set.")
                url = url or f"{app.config['APP_BASE_URL'].rstrip('/')}/webhooks/fulfillment/{secret}"
                result = fulfillment_client.setup_webhook(url)
                click.echo(f"Printful webhook registered: {(result or {}).get('url', url)}")
            elif action == "show":
                result = fulfillment_client.get_webhook() or {}
                click.echo(f"  URL:    {result.get('url') or '(not set)'}")
                click.echo(f"  Types:  {', '.join(result.get('types') or []) or '-'}")
            else:
                fulfillment_client.disable_webhook()
                click.echo("Printful webhook disabled.")
        except ProviderError as e:
            raise click.ClickException(str(e))
