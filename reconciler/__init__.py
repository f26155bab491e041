import os
import logging
from datetime import datetime, timezone
from decimal import Decimal

import click
from flask import Flask, jsonify

from reconciler.config import GatewayConfig, config_by_name
from reconciler.extensions import db, migrate, limiter


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

    # --- Gateway credentials, resolved once ---
    app.extensions["gateway_config"] = GatewayConfig.from_app_config(app.config)

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from reconciler import models  # noqa: F401

    # --- Register blueprints ---
    from reconciler.blueprints.webhooks import webhooks_bp
    from reconciler.blueprints.checkout import checkout_bp

    app.register_blueprint(webhooks_bp)
    app.register_blueprint(checkout_bp)

    # --- Health check ---
    @app.route("/health")
    def health():
        return jsonify(status="ok")

    # --- Error handlers ---
    # Callers are payment providers and the storefront's JS, so errors are JSON.
    @app.errorhandler(404)
    def not_found(e):
        return jsonify(error="not_found"), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify(error="method_not_allowed"), 405

    @app.errorhandler(500)
    def server_error(e):
        return jsonify(error="server_error"), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        # Nothing here is meant to render in a browser
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-order")
    @click.option("--invoice", required=True, help="Order invoice number")
    @click.option("--amount", required=True, help="Order amount (VND)")
    @click.option("--description", default=None, help="Order description")
    def seed_order(invoice, amount, description):
        """Create a pending order so a SePay IPN can be tested end to end.

        Usage:
            flask seed-order --invoice INV-0001 --amount 299000
        """
        from reconciler.models.order import Order

        existing = Order.query.filter_by(invoice_number=invoice).first()
        if existing:
            click.echo(f"Order already exists: {existing.invoice_number} ({existing.status})")
            return

        order = Order(
            invoice_number=invoice,
            amount=Decimal(amount),
            description=description,
            status="pending",
        )
        db.session.add(order)
        db.session.commit()
        click.echo(f"Created pending order {order.invoice_number} for {amount} {order.currency}")

    @app.cli.command("prune-ledger")
    @click.option("--days", type=int, default=None,
                  help="Retention window in days (default: LEDGER_RETENTION_DAYS).")
    @click.option("--dry-run", is_flag=True, help="Count entries without deleting them.")
    def prune_ledger(days, dry_run):
        """Delete applied-event ledger entries older than the retention window.

        Usage:
            flask prune-ledger
            flask prune-ledger --days 30 --dry-run
        """
        from reconciler.services.ledger import prune_applied_events

        retention_days = days or app.config["LEDGER_RETENTION_DAYS"]
        count = prune_applied_events(
            retention_days, now=datetime.now(timezone.utc), dry_run=dry_run
        )
        verb = "Would delete" if dry_run else "Deleted"
        click.echo(f"{verb} {count} ledger entries older than {retention_days} days")

    @app.cli.command("verify-gateway-config")
    def verify_gateway_config():
        """Report which payment gateway settings are present.

        Values are never printed, only whether each one is set.
        """
        gateway_config = app.extensions["gateway_config"]
        settings = [
            ("SEPAY_MERCHANT_ID", gateway_config.merchant_id),
            ("SEPAY_SECRET_KEY", gateway_config.secret_key),
            ("STRIPE_WEBHOOK_SECRET", gateway_config.signing_secret),
            ("STRIPE_SECRET_KEY", app.config.get("STRIPE_SECRET_KEY")),
            ("STRIPE_PREMIUM_PRICE_ID", app.config.get("STRIPE_PREMIUM_PRICE_ID")),
        ]

        click.echo(f"SePay environment: {gateway_config.environment}")
        for name, value in settings:
            click.echo(f"  {name}: {'set' if value else '(not set)'}")

        api_key = app.config.get("STRIPE_SECRET_KEY") or ""
        if api_key:
            key_mode = "Live" if api_key.startswith("sk_live_") else "Test"
            click.echo(f"Stripe key mode: {key_mode}")
            if key_mode == "Live" and gateway_config.environment != "production":
                click.echo("  WARNING: Stripe key is Live but SePay is in sandbox.")
