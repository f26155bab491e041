"""SePay service — bank-transfer (QR) checkout.

Responsible for:
- Creating (or reusing) the pending Order for an invoice number
- Creating the pending Order for a plan purchase at the server-side price
- Building the signed one-time payment form the browser posts to SePay

Payment confirmation arrives later through the IPN endpoint; nothing here
marks an order paid.
"""

import base64
import hashlib
import hmac
import logging
import secrets
import time
from decimal import Decimal, InvalidOperation

from reconciler.extensions import db
from reconciler.models.order import Order

logger = logging.getLogger(__name__)

CHECKOUT_URLS = {
    "sandbox": "https://pay-sandbox.sepay.vn/v1/checkout/init",
    "production": "https://pay.sepay.vn/v1/checkout/init",
}

# Field order is significant: the signature covers these, in this order,
# for whichever of them are present.
SIGNED_FIELDS = [
    "merchant",
    "operation",
    "payment_method",
    "order_amount",
    "currency",
    "order_invoice_number",
    "order_description",
    "customer_id",
    "success_url",
    "error_url",
    "cancel_url",
]

REQUIRED_CHECKOUT_PARAMS = [
    "order_invoice_number",
    "order_amount",
    "success_url",
    "error_url",
    "cancel_url",
]

# Plan prices are decided here, never by the client.
PLAN_AMOUNTS = {
    "premium": Decimal("299000"),
    "partner": Decimal("199000"),
}

PLAN_DESCRIPTIONS = {
    "premium": "Dang ky goi Hoi vien Premium - 1 thang",
    "partner": "Dang ky goi Doi tac - 1 thang",
}


class OrderConflict(Exception):
    """An order with this invoice number exists and is no longer pending."""


def sign_fields(fields, secret_key):
    """Return the base64 HMAC-SHA256 signature for a checkout form."""
    message = ",".join(
        f"{name}={fields[name]}" for name in SIGNED_FIELDS if fields.get(name) not in (None, "")
    )
    digest = hmac.new(
        secret_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def parse_amount(value):
    """Parse an order amount. Returns a positive Decimal or None."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount


def format_amount(amount):
    """Render an amount the way SePay expects: no trailing .00 for whole VND."""
    amount = Decimal(amount)
    if amount == amount.to_integral_value():
        return str(amount.quantize(Decimal(1)))
    return str(amount)


def get_or_create_pending_order(invoice_number, amount, description=None, currency="VND"):
    """Get the pending Order for invoice_number, creating it if needed.

    Raises OrderConflict if the order exists but has already moved past
    pending, or exists with a different amount.
    Returns the Order instance (committed).
    """
    order = Order.query.filter_by(invoice_number=invoice_number).first()

    if order:
        if order.status != "pending":
            raise OrderConflict(f"Order {invoice_number} is already {order.status}")
        if Decimal(order.amount) != amount:
            raise OrderConflict(f"Order {invoice_number} exists with a different amount")
        return order

    order = Order(
        invoice_number=invoice_number,
        amount=amount,
        currency=currency,
        description=description,
        status="pending",
    )
    db.session.add(order)
    db.session.commit()
    logger.info(f"Created pending order {invoice_number}")
    return order


def generate_plan_invoice_number(plan):
    """Return a fresh invoice number like SUB_PREMIUM_1760000000000_9f3a1c2b."""
    return f"SUB_{plan.upper()}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def create_plan_order(plan):
    """Create the pending Order for a plan purchase.

    Raises KeyError for an unknown plan. Returns the Order (committed).
    """
    return get_or_create_pending_order(
        invoice_number=generate_plan_invoice_number(plan),
        amount=PLAN_AMOUNTS[plan],
        description=PLAN_DESCRIPTIONS[plan],
    )


def build_checkout_form(gateway_config, order, success_url, error_url, cancel_url):
    """Build the SePay checkout URL and signed form fields for an order.

    Returns (checkout_url, form_fields).
    """
    fields = {
        "merchant": gateway_config.merchant_id,
        "operation": "PURCHASE",
        "payment_method": "BANK_TRANSFER",
        "order_amount": format_amount(order.amount),
        "currency": order.currency,
        "order_invoice_number": order.invoice_number,
        "order_description": order.description or f"Thanh toan don hang {order.invoice_number}",
        "success_url": success_url,
        "error_url": error_url,
        "cancel_url": cancel_url,
    }
    fields["signature"] = sign_fields(fields, gateway_config.secret_key)
    return CHECKOUT_URLS[gateway_config.environment], fields
