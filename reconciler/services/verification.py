"""Verification of inbound payment notifications.

- Bank transfer (SePay IPN): shared secret in the X-Secret-Key header,
  compared in constant time.
- Card subscription (Stripe): Stripe-Signature HMAC over the raw body,
  checked by the Stripe SDK.

Both checks run on the raw request before anything looks at the body.
Secret values are never logged.
"""

import hmac
import logging

import stripe

from reconciler.errors import Unauthorized

logger = logging.getLogger(__name__)

SEPAY_SECRET_HEADER = "X-Secret-Key"
STRIPE_SIGNATURE_HEADER = "Stripe-Signature"


class NotificationVerifier:
    """Authenticates notifications against an explicit GatewayConfig."""

    def __init__(self, gateway_config, tolerance=stripe.Webhook.DEFAULT_TOLERANCE):
        self.gateway_config = gateway_config
        self.tolerance = tolerance

    def verify_bank_transfer(self, headers):
        """Check the SePay secret header.

        Raises Unauthorized if the configured secret is unset, the header is
        missing or empty, or the values differ.
        """
        expected = (self.gateway_config.secret_key or "").encode("utf-8")
        if not expected:
            logger.error("SePay IPN received but SEPAY_SECRET_KEY is not configured")
            raise Unauthorized("bank-transfer secret not configured")

        provided = (headers.get(SEPAY_SECRET_HEADER) or "").encode("utf-8")
        if not provided:
            raise Unauthorized(f"missing {SEPAY_SECRET_HEADER} header")

        # Unequal lengths compare False.
        if not hmac.compare_digest(provided, expected):
            raise Unauthorized("bank-transfer secret mismatch")

    def verify_card_signature(self, payload, sig_header):
        """Check a Stripe-Signature header against the raw body bytes.

        Returns nothing; raises Unauthorized on any failure, including a
        body that is not valid UTF-8 (it cannot have been signed by Stripe).
        """
        secret = self.gateway_config.signing_secret
        if not secret:
            logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not configured")
            raise Unauthorized("card signing secret not configured")
        if not sig_header:
            raise Unauthorized(f"missing {STRIPE_SIGNATURE_HEADER} header")

        try:
            if isinstance(payload, bytes):
                payload = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, sig_header, secret, self.tolerance
            )
        except UnicodeDecodeError as e:
            raise Unauthorized("body is not valid UTF-8") from e
        except stripe.SignatureVerificationError as e:
            raise Unauthorized(f"signature verification failed: {e}") from e
