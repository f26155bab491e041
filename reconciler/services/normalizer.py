"""Event normalizer — provider payloads to one PaymentEvent shape.

Each known provider type string maps explicitly to a PaymentEventKind.
Anything else (unknown type, missing invoice number, missing customer)
becomes PaymentEventKind.UNHANDLED instead of raising, so the endpoint can
still acknowledge it.
"""

import enum
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from reconciler.errors import MalformedPayload

logger = logging.getLogger(__name__)


class Provider(str, enum.Enum):
    BANK_TRANSFER = "bank_transfer"          # SePay QR checkout
    CARD_SUBSCRIPTION = "card_subscription"  # Stripe billing


class PaymentEventKind(str, enum.Enum):
    ORDER_PAID = "ORDER_PAID"
    CHECKOUT_COMPLETED = "CHECKOUT_COMPLETED"
    INVOICE_PAID = "INVOICE_PAID"
    INVOICE_PAYMENT_FAILED = "INVOICE_PAYMENT_FAILED"
    SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"
    UNHANDLED = "UNHANDLED"


SEPAY_NOTIFICATION_KINDS = {
    "ORDER_PAID": PaymentEventKind.ORDER_PAID,
}

STRIPE_EVENT_KINDS = {
    "checkout.session.completed": PaymentEventKind.CHECKOUT_COMPLETED,
    "invoice.paid": PaymentEventKind.INVOICE_PAID,
    "invoice.payment_succeeded": PaymentEventKind.INVOICE_PAID,
    "invoice.payment_failed": PaymentEventKind.INVOICE_PAYMENT_FAILED,
    "customer.subscription.deleted": PaymentEventKind.SUBSCRIPTION_CANCELED,
}


@dataclass
class PaymentEvent:
    provider: Provider
    event_id: str
    kind: PaymentEventKind
    subject_ref: str | None
    raw_payload: bytes = field(repr=False)
    received_at: datetime
    event_type: str | None = None
    amount: Decimal | None = None
    period_end: datetime | None = None
    plan: str | None = None
    subscription_ref: str | None = None

    @property
    def handled(self):
        return self.kind is not PaymentEventKind.UNHANDLED


def _now():
    return datetime.now(timezone.utc)


def _parse_json_object(raw_body):
    """Parse a raw body into a dict.

    Returns None for an empty body. Raises MalformedPayload if the body is
    not a JSON object.
    """
    if raw_body is None:
        return None
    if isinstance(raw_body, bytes):
        try:
            text = raw_body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedPayload("body is not valid UTF-8") from e
    else:
        text = raw_body
    if not text.strip():
        return None
    try:
        body = json.loads(text)
    except ValueError as e:
        raise MalformedPayload(f"body is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise MalformedPayload("body is not a JSON object")
    return body


def _as_dict(value):
    return value if isinstance(value, dict) else {}


def _as_str(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _as_decimal(value):
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _as_datetime(ts):
    if not ts:
        return None
    try:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


# ──────────────────────────────────────────────
# Bank transfer (SePay IPN)
# ──────────────────────────────────────────────

def normalize_bank_transfer(raw_body, received_at=None):
    """Normalize a SePay IPN body.

    Body shape: {"notification_type": "ORDER_PAID",
                 "order": {"order_invoice_number": "...", "order_amount": "...",
                           "order_status": "..."}}

    The gateway has no native event id, so the idempotency key is
    "<order_invoice_number>:<notification_type>".

    Returns a PaymentEvent, or None for an empty body (dashboard test pings).
    """
    body = _parse_json_object(raw_body)
    if body is None:
        return None

    notification_type = _as_str(body.get("notification_type"))
    order = _as_dict(body.get("order"))
    invoice_number = _as_str(order.get("order_invoice_number"))

    kind = SEPAY_NOTIFICATION_KINDS.get(notification_type, PaymentEventKind.UNHANDLED)
    if invoice_number is None:
        kind = PaymentEventKind.UNHANDLED

    return PaymentEvent(
        provider=Provider.BANK_TRANSFER,
        event_id=f"{invoice_number or '-'}:{notification_type or '-'}",
        kind=kind,
        subject_ref=invoice_number,
        raw_payload=raw_body if isinstance(raw_body, bytes) else raw_body.encode("utf-8"),
        received_at=received_at or _now(),
        event_type=notification_type,
        amount=_as_decimal(order.get("order_amount")),
    )


# ──────────────────────────────────────────────
# Card subscription (Stripe)
# ──────────────────────────────────────────────

def _extract_period_end(obj):
    """Extract the paid-through timestamp from a Stripe invoice/subscription.

    Invoices carry the subscription period on lines.data[0].period.end;
    subscription objects carry current_period_end at the top level (older
    API versions) or on items.data[0] (newer ones). Checks all of them.

    Returns a timezone-aware datetime or None.
    """
    for container in ("lines", "items"):
        data = _as_dict(obj.get(container)).get("data")
        if isinstance(data, list) and data:
            first = _as_dict(data[0])
            ts = _as_dict(first.get("period")).get("end") or first.get("current_period_end")
            if ts:
                return _as_datetime(ts)
    return _as_datetime(obj.get("current_period_end"))


def _invoice_subscription_ref(invoice):
    # Newer API versions moved the subscription id under parent.subscription_details.
    ref = invoice.get("subscription")
    if not ref:
        details = _as_dict(_as_dict(invoice.get("parent")).get("subscription_details"))
        ref = details.get("subscription")
    return _as_str(ref)


def normalize_stripe_event(raw_body, received_at=None):
    """Normalize a verified Stripe webhook body.

    The subject of every subscription event is the Stripe customer ID.
    Returns a PaymentEvent, or None for an empty body. Raises
    MalformedPayload if the body is not a JSON object with an event id.
    """
    body = _parse_json_object(raw_body)
    if body is None:
        return None

    event_id = _as_str(body.get("id"))
    if event_id is None:
        raise MalformedPayload("Stripe event has no id")

    event_type = _as_str(body.get("type"))
    obj = _as_dict(_as_dict(body.get("data")).get("object"))
    kind = STRIPE_EVENT_KINDS.get(event_type, PaymentEventKind.UNHANDLED)

    customer_ref = _as_str(obj.get("customer"))
    subscription_ref = None
    period_end = None
    plan = None

    if kind is PaymentEventKind.CHECKOUT_COMPLETED:
        if obj.get("mode") not in (None, "subscription"):
            # One-off card payments don't drive subscription state.
            kind = PaymentEventKind.UNHANDLED
        subscription_ref = _as_str(obj.get("subscription"))
        plan = _as_str(_as_dict(obj.get("metadata")).get("plan"))
    elif kind in (PaymentEventKind.INVOICE_PAID, PaymentEventKind.INVOICE_PAYMENT_FAILED):
        subscription_ref = _invoice_subscription_ref(obj)
        period_end = _extract_period_end(obj)
    elif kind is PaymentEventKind.SUBSCRIPTION_CANCELED:
        subscription_ref = _as_str(obj.get("id"))

    if customer_ref is None:
        kind = PaymentEventKind.UNHANDLED

    return PaymentEvent(
        provider=Provider.CARD_SUBSCRIPTION,
        event_id=event_id,
        kind=kind,
        subject_ref=customer_ref,
        raw_payload=raw_body if isinstance(raw_body, bytes) else raw_body.encode("utf-8"),
        received_at=received_at or _now(),
        event_type=event_type,
        period_end=period_end,
        plan=plan,
        subscription_ref=subscription_ref,
    )
