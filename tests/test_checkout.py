"""Tests for the checkout blueprint.

Covers:
- SePay checkout: missing params, invalid amount, new pending order with
  signed form, reuse of a pending order, paid order conflict,
  unconfigured gateway, CORS preflight
- SePay plan checkout: unknown plan, server-side price and invoice
  number, return URLs from the calling origin, paid through the IPN
- Payment status lookup: unknown invoice, pending, paid
- Subscription checkout: missing email, new Stripe customer + incomplete
  subscription, incomplete customer reused, active / canceled customer
  refused, Stripe API failure
"""

from decimal import Decimal
from unittest.mock import MagicMock, patch

import stripe

from conftest import sepay_ipn_body
from reconciler.config import GatewayConfig
from reconciler.extensions import db
from reconciler.models.order import Order
from reconciler.models.subscription import Subscription
from reconciler.services.sepay_service import sign_fields


def _checkout_body(**overrides):
    body = {
        "order_invoice_number": "INV-2001",
        "order_amount": "150000",
        "order_description": "Khoa hoc co ban",
        "success_url": "https://shop.example.com/thanh-cong",
        "error_url": "https://shop.example.com/loi",
        "cancel_url": "https://shop.example.com/huy",
    }
    body.update(overrides)
    return body


class TestSepayCheckout:
    """POST /api/sepay-checkout."""

    def test_missing_parameters_returns_400(self, client):
        resp = client.post("/api/sepay-checkout", json={"order_amount": "1000"})
        assert resp.status_code == 400
        data = resp.get_json()
        assert data["error"] == "Missing parameters"
        assert "order_invoice_number" in data["required"]

    def test_invalid_amount_returns_400(self, client):
        resp = client.post("/api/sepay-checkout", json=_checkout_body(order_amount="-5"))
        assert resp.status_code == 400
        assert Order.query.count() == 0

    def test_creates_pending_order_and_signed_form(self, client):
        resp = client.post("/api/sepay-checkout", json=_checkout_body())

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["checkoutURL"] == "https://pay-sandbox.sepay.vn/v1/checkout/init"

        fields = data["formFields"]
        assert fields["merchant"] == "MERCHANT_TEST"
        assert fields["order_amount"] == "150000"
        assert fields["order_invoice_number"] == "INV-2001"
        assert fields["signature"] == sign_fields(fields, "sepay_test_secret")
        assert resp.headers["Access-Control-Allow-Origin"] == "*"

        order = Order.query.filter_by(invoice_number="INV-2001").first()
        assert order.status == "pending"
        assert Decimal(order.amount) == Decimal("150000")

    def test_default_description(self, client):
        resp = client.post("/api/sepay-checkout", json=_checkout_body(order_description=""))
        fields = resp.get_json()["formFields"]
        assert fields["order_description"] == "Thanh toan don hang INV-2001"

    def test_reuses_pending_order(self, client, seed_data):
        resp = client.post(
            "/api/sepay-checkout",
            json=_checkout_body(order_invoice_number="INV-0001", order_amount="299000"),
        )
        assert resp.status_code == 200
        assert Order.query.filter_by(invoice_number="INV-0001").count() == 1

    def test_paid_order_returns_409(self, client, seed_data):
        order = Order.query.filter_by(invoice_number="INV-0001").first()
        order.status = "paid"
        db.session.commit()

        resp = client.post(
            "/api/sepay-checkout",
            json=_checkout_body(order_invoice_number="INV-0001", order_amount="299000"),
        )
        assert resp.status_code == 409
        assert "paid" in resp.get_json()["error"]

    def test_different_amount_returns_409(self, client, seed_data):
        resp = client.post(
            "/api/sepay-checkout",
            json=_checkout_body(order_invoice_number="INV-0001", order_amount="1000"),
        )
        assert resp.status_code == 409

    def test_unconfigured_gateway_returns_500(self, app, client):
        original = app.extensions["gateway_config"]
        app.extensions["gateway_config"] = GatewayConfig()
        try:
            resp = client.post("/api/sepay-checkout", json=_checkout_body())
        finally:
            app.extensions["gateway_config"] = original

        assert resp.status_code == 500
        assert Order.query.count() == 0

    def test_cors_preflight(self, client):
        resp = client.options("/api/sepay-checkout")
        assert resp.status_code == 200
        assert "POST" in resp.headers["Access-Control-Allow-Methods"]


class TestSubscriptionCheckout:
    """POST /api/subscription-checkout."""

    def test_missing_email_returns_400(self, client):
        resp = client.post("/api/subscription-checkout", json={})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Missing email"

    @patch("reconciler.services.stripe_service.stripe")
    def test_creates_customer_and_incomplete_subscription(self, mock_stripe, client):
        mock_stripe.Customer.list.return_value = MagicMock(data=[])
        mock_stripe.Customer.create.return_value = MagicMock(id="cus_checkout_new")
        mock_stripe.checkout.Session.create.return_value = MagicMock(
            url="https://checkout.stripe.com/c/pay/cs_test_123", id="cs_test_123"
        )

        resp = client.post(
            "/api/subscription-checkout",
            json={"email": "  Learner@Example.com ", "fullName": "Nguyen Van A"},
        )

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["checkoutUrl"] == "https://checkout.stripe.com/c/pay/cs_test_123"
        assert data["sessionId"] == "cs_test_123"

        mock_stripe.Customer.create.assert_called_once_with(
            email="learner@example.com", name="Nguyen Van A"
        )
        session_kwargs = mock_stripe.checkout.Session.create.call_args.kwargs
        assert session_kwargs["mode"] == "subscription"
        assert session_kwargs["customer"] == "cus_checkout_new"
        assert session_kwargs["line_items"] == [{"price": "price_premium_test", "quantity": 1}]
        assert session_kwargs["success_url"] == "http://localhost:3000/thanh-cong/premium"
        assert session_kwargs["metadata"] == {"plan": "premium"}

        sub = Subscription.query.filter_by(customer_ref="cus_checkout_new").first()
        assert sub.status == "incomplete"
        assert sub.email == "learner@example.com"
        assert sub.plan == "premium"

    @patch("reconciler.services.stripe_service.stripe")
    def test_returning_incomplete_customer_reused(self, mock_stripe, client, seed_data):
        """An abandoned checkout can be retried with the same customer."""
        mock_stripe.Customer.list.return_value = MagicMock(data=[MagicMock(id="cus_incomplete")])
        mock_stripe.checkout.Session.create.return_value = MagicMock(url="https://x", id="cs_2")

        resp = client.post(
            "/api/subscription-checkout",
            json={"email": "incomplete@example.com", "cancelPath": "/pricing"},
        )

        assert resp.status_code == 200
        mock_stripe.Customer.create.assert_not_called()
        session_kwargs = mock_stripe.checkout.Session.create.call_args.kwargs
        assert session_kwargs["cancel_url"] == "http://localhost:3000/pricing"
        assert Subscription.query.filter_by(customer_ref="cus_incomplete").count() == 1

    @patch("reconciler.services.stripe_service.stripe")
    def test_active_customer_returns_409(self, mock_stripe, client, seed_data):
        """A second subscription for a subscribed customer is never started."""
        mock_stripe.Customer.list.return_value = MagicMock(data=[MagicMock(id="cus_active")])

        resp = client.post("/api/subscription-checkout", json={"email": "active@example.com"})

        assert resp.status_code == 409
        assert "active" in resp.get_json()["error"]
        mock_stripe.checkout.Session.create.assert_not_called()
        assert Subscription.query.filter_by(customer_ref="cus_active").first().status == "active"

    @patch("reconciler.services.stripe_service.stripe")
    def test_canceled_customer_returns_409(self, mock_stripe, client, seed_data):
        """A canceled customer cannot be charged for a subscription that
        the webhook would then refuse to activate."""
        mock_stripe.Customer.list.return_value = MagicMock(data=[MagicMock(id="cus_canceled")])

        resp = client.post("/api/subscription-checkout", json={"email": "canceled@example.com"})

        assert resp.status_code == 409
        assert "canceled" in resp.get_json()["error"]
        mock_stripe.checkout.Session.create.assert_not_called()
        assert Subscription.query.filter_by(customer_ref="cus_canceled").first().status == "canceled"

    @patch("reconciler.services.stripe_service.stripe")
    def test_stripe_failure_returns_502(self, mock_stripe, client):
        mock_stripe.Customer.list.side_effect = stripe.APIConnectionError("network down")

        resp = client.post("/api/subscription-checkout", json={"email": "a@example.com"})

        assert resp.status_code == 502
        assert resp.get_json()["error"] == "Could not start checkout"
        assert Subscription.query.count() == 0


class TestSepayPlanCheckout:
    """POST /api/sepay-subscription-checkout."""

    def test_unknown_plan_returns_400(self, client):
        resp = client.post("/api/sepay-subscription-checkout", json={"plan": "gold"})
        assert resp.status_code == 400
        assert resp.get_json()["allowed"] == ["partner", "premium"]
        assert Order.query.count() == 0

    def test_amount_decided_server_side(self, client):
        """Client-sent amounts are ignored; the plan sets the price."""
        resp = client.post(
            "/api/sepay-subscription-checkout",
            json={"plan": "Premium", "order_amount": "1000"},
            headers={"Origin": "https://shop.example.com"},
        )

        assert resp.status_code == 200
        data = resp.get_json()
        fields = data["formFields"]
        assert data["invoiceNumber"].startswith("SUB_PREMIUM_")
        assert fields["order_invoice_number"] == data["invoiceNumber"]
        assert fields["order_amount"] == "299000"
        assert fields["success_url"] == "https://shop.example.com/thanh-cong/premium"
        assert fields["cancel_url"] == "https://shop.example.com/goi-dich-vu?status=cancel"
        assert fields["signature"] == sign_fields(fields, "sepay_test_secret")

        order = Order.query.filter_by(invoice_number=data["invoiceNumber"]).first()
        assert order.status == "pending"
        assert Decimal(order.amount) == Decimal("299000")

    def test_each_checkout_gets_a_new_invoice(self, client):
        first = client.post("/api/sepay-subscription-checkout", json={"plan": "partner"})
        second = client.post("/api/sepay-subscription-checkout", json={"plan": "partner"})

        assert first.get_json()["invoiceNumber"] != second.get_json()["invoiceNumber"]
        assert first.get_json()["formFields"]["order_amount"] == "199000"
        assert Order.query.count() == 2

    def test_plan_order_paid_by_ipn(self, client, sepay_post):
        resp = client.post("/api/sepay-subscription-checkout", json={"plan": "partner"})
        invoice_number = resp.get_json()["invoiceNumber"]

        ipn = sepay_post(sepay_ipn_body(invoice_number, amount="199000"))

        assert ipn.get_json()["status"] == "processed"
        db.session.expire_all()
        assert Order.query.filter_by(invoice_number=invoice_number).first().status == "paid"

    def test_unconfigured_gateway_returns_500(self, app, client):
        original = app.extensions["gateway_config"]
        app.extensions["gateway_config"] = GatewayConfig()
        try:
            resp = client.post("/api/sepay-subscription-checkout", json={"plan": "premium"})
        finally:
            app.extensions["gateway_config"] = original

        assert resp.status_code == 500
        assert Order.query.count() == 0


class TestPaymentStatus:
    """GET /api/payment/status/<invoice_number>."""

    def test_unknown_invoice_returns_404(self, client):
        resp = client.get("/api/payment/status/INV-404")
        assert resp.status_code == 404
        assert resp.get_json() == {"error": "Order not found"}

    def test_pending_order(self, client, seed_data):
        resp = client.get("/api/payment/status/INV-0001")

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["invoiceNumber"] == "INV-0001"
        assert data["status"] == "pending"
        assert data["paidAt"] is None
        assert Decimal(data["amount"]) == Decimal("299000")

    def test_reflects_ipn(self, client, sepay_post, seed_data):
        sepay_post(sepay_ipn_body("INV-0001"))

        data = client.get("/api/payment/status/INV-0001").get_json()
        assert data["status"] == "paid"
        assert data["paidAt"] is not None
