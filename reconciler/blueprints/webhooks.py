"""Webhooks blueprint — inbound payment notifications.

Routes:
- POST /sepay/ipn        — SePay IPN (bank transfer), X-Secret-Key header
- POST /stripe/webhooks  — Stripe events (subscriptions), Stripe-Signature header

Raw bodies are read and verified before anything parses them. Apart from
authentication failures and storage outages every request is acknowledged
with a 2xx; the providers retry anything else and retrying cannot fix an
unknown or inapplicable event.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from reconciler.errors import MalformedPayload, StorageUnavailable, Unauthorized
from reconciler.services.normalizer import normalize_bank_transfer, normalize_stripe_event
from reconciler.services.reconcile_service import reconcile
from reconciler.services.verification import STRIPE_SIGNATURE_HEADER, NotificationVerifier

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__)


def _verifier():
    return NotificationVerifier(current_app.extensions["gateway_config"])


# ──────────────────────────────────────────────
# POST /sepay/ipn
# ──────────────────────────────────────────────

@webhooks_bp.route("/sepay/ipn", methods=["POST"])
def sepay_ipn():
    """Receive a SePay IPN.

    1. Check the X-Secret-Key header (401 on failure)
    2. Normalize the JSON body (empty or garbled body -> no event)
    3. Reconcile (idempotent via applied_events)
    4. Return {"success": true}; SePay keeps retrying anything else
    """
    try:
        _verifier().verify_bank_transfer(request.headers)
    except Unauthorized as e:
        logger.warning(f"SePay IPN rejected from {request.remote_addr}: {e}")
        return jsonify({"success": False}), 401

    payload = request.get_data()

    try:
        event = normalize_bank_transfer(payload)
    except MalformedPayload as e:
        logger.warning(f"SePay IPN with unreadable body acknowledged: {e}")
        event = None

    if event is not None and event.subject_ref:
        logger.info(f"[SePay IPN] {event.event_type} {event.subject_ref}")

    try:
        status = reconcile(event)
    except StorageUnavailable:
        return jsonify({"success": False, "error": "storage_unavailable"}), 500

    return jsonify({"success": True, "status": status}), 200


# ──────────────────────────────────────────────
# POST /stripe/webhooks
# ──────────────────────────────────────────────

@webhooks_bp.route("/stripe/webhooks", methods=["POST"])
def stripe_webhook():
    """Receive and process Stripe webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature with STRIPE_WEBHOOK_SECRET (400 on failure)
    3. Normalize and reconcile (idempotent via applied_events)
    4. Return 200 to acknowledge receipt
    """
    payload = request.get_data()
    sig_header = request.headers.get(STRIPE_SIGNATURE_HEADER)

    if not sig_header:
        logger.warning("Webhook received without Stripe-Signature header")
        return jsonify({"error": "Missing signature"}), 400

    # --- Verify signature ---
    try:
        _verifier().verify_card_signature(payload, sig_header)
    except Unauthorized as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        return jsonify({"error": "Invalid signature"}), 400

    try:
        event = normalize_stripe_event(payload)
    except MalformedPayload as e:
        logger.warning(f"Signed Stripe webhook with unreadable body acknowledged: {e}")
        event = None

    # --- Process event (idempotent) ---
    try:
        status = reconcile(event)
    except StorageUnavailable as e:
        logger.error(f"Webhook processing failed: {e}")
        return jsonify({"error": "storage_unavailable"}), 500

    return jsonify({"status": status}), 200
