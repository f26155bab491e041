"""Applied event model (idempotency ledger).

Every decided notification is recorded by (provider, event_id) in the same
transaction as the state change it caused. The unique constraint is what
rejects a concurrent duplicate, so a row existing here means the side
effect is already durable.
"""

import uuid

from reconciler.extensions import db


class AppliedEvent(db.Model):
    __tablename__ = "applied_events"
    __table_args__ = (
        db.UniqueConstraint(
            "provider", "event_id", name="uq_applied_events_provider_event_id"
        ),
    )

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    provider = db.Column(
        db.String(50), nullable=False
    )  # bank_transfer | card_subscription
    event_id = db.Column(
        db.String(255), nullable=False
    )  # "evt_1Abc..." or "INV-0001:ORDER_PAID"
    event_type = db.Column(
        db.String(255), nullable=True
    )  # e.g. "invoice.paid"
    subject_ref = db.Column(db.String(255), nullable=True)
    outcome = db.Column(
        db.String(50), nullable=False
    )  # processed | noop | rejected
    applied_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now(), index=True
    )

    def __repr__(self):
        return f"<AppliedEvent {self.provider}:{self.event_id} ({self.outcome})>"
