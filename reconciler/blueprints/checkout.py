"""Checkout blueprint — /api/*

Public JSON API called by the storefront to start a payment.

Route Map:
  POST    /api/sepay-checkout          — pending order + signed SePay form
  OPTIONS /api/sepay-checkout          — CORS preflight
  POST    /api/sepay-subscription-checkout — plan order at server price + signed form
  OPTIONS /api/sepay-subscription-checkout — CORS preflight
  GET     /api/payment/status/<invoice>  — order payment status (storefront polling)
  POST    /api/subscription-checkout   — Stripe Checkout Session (subscription)
"""

import logging

import stripe
from flask import Blueprint, current_app, jsonify, make_response, request

from reconciler.extensions import limiter
from reconciler.models.order import Order
from reconciler.services.sepay_service import (
    PLAN_AMOUNTS,
    REQUIRED_CHECKOUT_PARAMS,
    OrderConflict,
    build_checkout_form,
    create_plan_order,
    get_or_create_pending_order,
    parse_amount,
)
from reconciler.services.stripe_service import (
    SubscriptionConflict,
    create_subscription_checkout,
)

checkout_bp = Blueprint("checkout", __name__, url_prefix="/api")

logger = logging.getLogger(__name__)


def _cors_response(response):
    """Add CORS headers so the storefront can call the API cross-origin."""
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return response


@checkout_bp.route("/sepay-checkout", methods=["OPTIONS"])
def sepay_checkout_preflight():
    """Handle CORS preflight requests."""
    return _cors_response(make_response("", 200))


@checkout_bp.route("/sepay-checkout", methods=["POST"])
@limiter.limit("30 per minute")
def sepay_checkout():
    """Create a pending order and the signed SePay QR checkout form.

    Body: { order_invoice_number, order_amount, order_description?,
            success_url, error_url, cancel_url }
    Returns: { checkoutURL, formFields }
    """
    data = request.get_json(silent=True) or {}

    missing = [p for p in REQUIRED_CHECKOUT_PARAMS if data.get(p) in (None, "")]
    if missing:
        return _cors_response(jsonify(
            error="Missing parameters", required=REQUIRED_CHECKOUT_PARAMS
        )), 400

    amount = parse_amount(data["order_amount"])
    if amount is None:
        return _cors_response(jsonify(error="Invalid order_amount")), 400

    gateway_config = current_app.extensions["gateway_config"]
    if not gateway_config.bank_transfer_configured:
        logger.error("SePay checkout requested but SEPAY_MERCHANT_ID / SEPAY_SECRET_KEY are not set")
        return _cors_response(jsonify(
            error="SePay is not configured (SEPAY_MERCHANT_ID, SEPAY_SECRET_KEY)"
        )), 500

    invoice_number = str(data["order_invoice_number"]).strip()

    try:
        order = get_or_create_pending_order(
            invoice_number=invoice_number,
            amount=amount,
            description=(data.get("order_description") or "").strip() or None,
        )
    except OrderConflict as e:
        logger.info(f"SePay checkout refused: {e}")
        return _cors_response(jsonify(error=str(e))), 409

    checkout_url, form_fields = build_checkout_form(
        gateway_config,
        order,
        success_url=data["success_url"],
        error_url=data["error_url"],
        cancel_url=data["cancel_url"],
    )

    return _cors_response(jsonify(checkoutURL=checkout_url, formFields=form_fields)), 200


def _request_origin():
    """Origin the storefront is served from, for building return URLs."""
    origin = request.headers.get("Origin")
    if origin:
        return origin.rstrip("/")
    return request.host_url.rstrip("/")


@checkout_bp.route("/sepay-subscription-checkout", methods=["OPTIONS"])
def sepay_subscription_checkout_preflight():
    """Handle CORS preflight requests."""
    return _cors_response(make_response("", 200))


@checkout_bp.route("/sepay-subscription-checkout", methods=["POST"])
@limiter.limit("30 per minute")
def sepay_subscription_checkout():
    """Start a plan purchase paid by bank transfer.

    The client only chooses the plan; amount, description and invoice
    number are decided here, and the return URLs point back at the
    calling origin.

    Body: { plan: "premium" | "partner" }
    Returns: { checkoutURL, formFields, invoiceNumber }
    """
    data = request.get_json(silent=True) or {}
    plan = data.get("plan")
    plan = plan.strip().lower() if isinstance(plan, str) else ""
    if plan not in PLAN_AMOUNTS:
        return _cors_response(jsonify(
            error="Invalid plan", allowed=sorted(PLAN_AMOUNTS)
        )), 400

    gateway_config = current_app.extensions["gateway_config"]
    if not gateway_config.bank_transfer_configured:
        logger.error("SePay plan checkout requested but SEPAY_MERCHANT_ID / SEPAY_SECRET_KEY are not set")
        return _cors_response(jsonify(
            error="SePay is not configured (SEPAY_MERCHANT_ID, SEPAY_SECRET_KEY)"
        )), 500

    order = create_plan_order(plan)
    origin = _request_origin()

    checkout_url, form_fields = build_checkout_form(
        gateway_config,
        order,
        success_url=f"{origin}/thanh-cong/{plan}",
        error_url=f"{origin}/goi-dich-vu?status=error",
        cancel_url=f"{origin}/goi-dich-vu?status=cancel",
    )

    return _cors_response(jsonify(
        checkoutURL=checkout_url,
        formFields=form_fields,
        invoiceNumber=order.invoice_number,
    )), 200


@checkout_bp.route("/payment/status/<invoice_number>", methods=["GET"])
@limiter.limit("120 per minute")
def payment_status(invoice_number):
    """Report an order's payment status; polled by the storefront after checkout."""
    order = Order.query.filter_by(invoice_number=invoice_number).first()
    if not order:
        return _cors_response(jsonify(error="Order not found")), 404

    return _cors_response(jsonify(
        invoiceNumber=order.invoice_number,
        status=order.status,
        amount=str(order.amount),
        currency=order.currency,
        paidAt=order.paid_at.isoformat() if order.paid_at else None,
    )), 200


@checkout_bp.route("/subscription-checkout", methods=["POST"])
@limiter.limit("10 per minute")
def subscription_checkout():
    """Start a Stripe subscription checkout.

    Body: { email, fullName?, successPath?, cancelPath? }
    Returns: { checkoutUrl, sessionId }
    """
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    if not email:
        return jsonify(error="Missing email"), 400

    try:
        checkout_url, session_id = create_subscription_checkout(
            email=email,
            full_name=(data.get("fullName") or "").strip() or None,
            success_path=data.get("successPath"),
            cancel_path=data.get("cancelPath"),
        )
    except SubscriptionConflict as e:
        logger.info(f"Subscription checkout refused: {e}")
        return jsonify(error=str(e)), 409
    except stripe.StripeError as e:
        logger.error(f"Subscription checkout error: {e}", exc_info=True)
        return jsonify(error="Could not start checkout"), 502

    return jsonify(checkoutUrl=checkout_url, sessionId=session_id), 200
