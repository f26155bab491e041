"""Shared test fixtures for the payment reconciler test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, fixed secrets)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: a pending order and subscriptions in each lifecycle state
- sepay_post / stripe_post: helpers that send correctly authenticated
  notifications to the webhook endpoints
"""

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from reconciler import create_app
from reconciler.extensions import db as _db
from reconciler.models.order import Order
from reconciler.models.subscription import Subscription

SEPAY_SECRET = "sepay_test_secret"
STRIPE_WEBHOOK_SECRET = "whsec_test_fake"


def sign_stripe_payload(payload, secret=STRIPE_WEBHOOK_SECRET, timestamp=None):
    """Build a Stripe-Signature header value for payload (str)."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event_body(event_id, event_type, obj):
    """Serialize a minimal Stripe event envelope."""
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    })


def sepay_ipn_body(invoice_number, notification_type="ORDER_PAID", amount="299000"):
    """Serialize a minimal SePay IPN body."""
    return json.dumps({
        "timestamp": 1760000000,
        "notification_type": notification_type,
        "order": {
            "order_id": "e2c195be-c721-47eb-b323-99ab24e52d85",
            "order_invoice_number": invoice_number,
            "order_status": "CAPTURED",
            "order_amount": amount,
            "order_currency": "VND",
        },
        "transaction": {"transaction_status": "APPROVED"},
    })


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def sepay_post(client):
    """POST a body to /sepay/ipn with the correct secret header by default."""

    def _post(body, secret=SEPAY_SECRET):
        headers = {}
        if secret is not None:
            headers["X-Secret-Key"] = secret
        return client.post(
            "/sepay/ipn",
            data=body,
            content_type="application/json",
            headers=headers,
        )

    return _post


@pytest.fixture
def stripe_post(client):
    """POST a body to /stripe/webhooks, signed with the test secret by default."""

    def _post(body, signature=None):
        return client.post(
            "/stripe/webhooks",
            data=body,
            content_type="application/json",
            headers={"Stripe-Signature": signature or sign_stripe_payload(body)},
        )

    return _post


@pytest.fixture
def seed_data(app, db_session):
    """Seed a pending order and one subscription per lifecycle state.

    Subscriptions are keyed by Stripe customer ID:
      cus_incomplete, cus_active, cus_past_due, cus_canceled
    """
    order = Order(
        invoice_number="INV-0001",
        amount=Decimal("299000"),
        currency="VND",
        description="Premium course bundle",
        status="pending",
    )
    _db.session.add(order)

    period_end = datetime(2026, 11, 1, tzinfo=timezone.utc)
    for status in ("incomplete", "active", "past_due", "canceled"):
        _db.session.add(Subscription(
            customer_ref=f"cus_{status}",
            stripe_subscription_id=f"sub_{status}",
            email=f"{status}@example.com",
            plan="premium",
            status=status,
            current_period_end=None if status == "incomplete" else period_end,
        ))

    _db.session.commit()

    return {
        "invoice_number": order.invoice_number,
        "order_id": order.id,
        "period_end": period_end,
    }
