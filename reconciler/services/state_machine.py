"""Order / subscription state machine.

The transition tables are the whole contract: a (status, kind) pair that
is not listed is an IllegalTransition. plan_transition() reads the current
row (locked FOR UPDATE where the database supports it) and works out what
would change; Transition.apply() performs the one write.

The write is conditional on the row still being in the status it was
planned from. If another notification for the same subject got there
first, apply() raises StaleTransition and the caller plans again from the
new state, so a canceled subscription can never be written back to active.
"""

import logging
from dataclasses import dataclass, field
from datetime import timezone

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from reconciler.errors import IllegalTransition, StaleTransition
from reconciler.extensions import db
from reconciler.models.order import Order
from reconciler.models.subscription import Subscription
from reconciler.services.normalizer import PaymentEventKind, Provider

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS = {
    ("pending", PaymentEventKind.ORDER_PAID): "paid",
    ("paid", PaymentEventKind.ORDER_PAID): "paid",
}

SUBSCRIPTION_TRANSITIONS = {
    ("incomplete", PaymentEventKind.CHECKOUT_COMPLETED): "active",
    ("incomplete", PaymentEventKind.INVOICE_PAID): "active",
    ("incomplete", PaymentEventKind.SUBSCRIPTION_CANCELED): "canceled",
    ("active", PaymentEventKind.INVOICE_PAID): "active",
    ("active", PaymentEventKind.INVOICE_PAYMENT_FAILED): "past_due",
    ("active", PaymentEventKind.SUBSCRIPTION_CANCELED): "canceled",
    ("past_due", PaymentEventKind.INVOICE_PAID): "active",
    ("past_due", PaymentEventKind.SUBSCRIPTION_CANCELED): "canceled",
}

# Kinds that may create the subscription row when Stripe delivers them
# before our own checkout record exists.
SUBSCRIPTION_CREATING_KINDS = (
    PaymentEventKind.CHECKOUT_COMPLETED,
    PaymentEventKind.INVOICE_PAID,
)


def next_order_status(status, kind):
    """Return the order status after applying kind, or raise IllegalTransition."""
    try:
        return ORDER_TRANSITIONS[(status, kind)]
    except KeyError:
        raise IllegalTransition("order", status, kind.value) from None


def next_subscription_status(status, kind):
    """Return the subscription status after applying kind, or raise IllegalTransition.

    canceled never appears on the left of the table, so it is terminal.
    """
    try:
        return SUBSCRIPTION_TRANSITIONS[(status, kind)]
    except KeyError:
        raise IllegalTransition("subscription", status, kind.value) from None


def _as_utc(dt):
    # SQLite hands back naive datetimes even for timezone=True columns.
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class Transition:
    """A computed state change for one order or subscription row."""

    entity: str                 # "order" | "subscription"
    subject_ref: str
    from_status: str | None
    to_status: str
    target: object | None       # existing row, None when the row is created
    changes: dict = field(default_factory=dict)

    @property
    def is_noop(self):
        return self.target is not None and not self.changes

    def apply(self):
        """Write the change: one insert or one conditional update.

        Raises StaleTransition, writing nothing, if the row left from_status
        (or was created) after planning. Flushes, does not commit.
        """
        if self.is_noop:
            return self.target

        if self.target is None:
            row = Subscription(customer_ref=self.subject_ref, **self.changes)
            db.session.add(row)
            try:
                db.session.flush()
            except IntegrityError as e:
                raise StaleTransition(self.entity, self.subject_ref, None) from e
        else:
            row = self.target
            model = type(row)
            result = db.session.execute(
                update(model)
                .where(model.id == row.id, model.status == self.from_status)
                .values(**self.changes)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise StaleTransition(self.entity, self.subject_ref, self.from_status)
            db.session.expire(row)

        logger.info(
            f"{self.entity} {self.subject_ref}: {self.from_status} -> {self.to_status}"
        )
        return row


def plan_order_transition(event):
    order = (
        Order.query.filter_by(invoice_number=event.subject_ref)
        .with_for_update()
        .first()
    )
    if not order:
        raise IllegalTransition("order", None, event.kind.value, "unknown invoice number")

    to_status = next_order_status(order.status, event.kind)

    changes = {}
    if to_status != order.status:
        if event.amount is not None and event.amount != order.amount:
            raise IllegalTransition(
                "order", order.status, event.kind.value,
                f"amount mismatch: expected {order.amount}, notified {event.amount}",
            )
        changes = {"status": to_status, "paid_at": event.received_at}

    return Transition(
        entity="order",
        subject_ref=order.invoice_number,
        from_status=order.status,
        to_status=to_status,
        target=order,
        changes=changes,
    )


def plan_subscription_transition(event):
    sub = (
        Subscription.query.filter_by(customer_ref=event.subject_ref)
        .with_for_update()
        .first()
    )

    if sub is None:
        if event.kind not in SUBSCRIPTION_CREATING_KINDS:
            raise IllegalTransition(
                "subscription", None, event.kind.value, "unknown customer"
            )
        changes = {
            "status": next_subscription_status("incomplete", event.kind),
            "stripe_subscription_id": event.subscription_ref,
            "plan": event.plan,
            "current_period_end": event.period_end,
        }
        return Transition(
            entity="subscription",
            subject_ref=event.subject_ref,
            from_status=None,
            to_status=changes["status"],
            target=None,
            changes=changes,
        )

    to_status = next_subscription_status(sub.status, event.kind)

    changes = {}
    if to_status != sub.status:
        changes["status"] = to_status
    if to_status == "active" and event.period_end is not None:
        current = _as_utc(sub.current_period_end)
        if current is None or event.period_end > current:
            changes["current_period_end"] = event.period_end
    if event.subscription_ref and not sub.stripe_subscription_id:
        changes["stripe_subscription_id"] = event.subscription_ref
    if event.plan and not sub.plan:
        changes["plan"] = event.plan

    return Transition(
        entity="subscription",
        subject_ref=sub.customer_ref,
        from_status=sub.status,
        to_status=to_status,
        target=sub,
        changes=changes,
    )


def plan_transition(event):
    """Work out the state change for a handled PaymentEvent.

    Raises IllegalTransition when the event cannot apply to the subject's
    current state (including an unknown subject).
    """
    if event.provider is Provider.BANK_TRANSFER:
        return plan_order_transition(event)
    return plan_subscription_transition(event)
