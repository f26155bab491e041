"""Order model.

One row per bank-transfer checkout, keyed by the invoice number sent to
the gateway. orders.status changes only through verified IPN events.
"""

import uuid

from reconciler.extensions import db


class Order(db.Model):
    __tablename__ = "orders"

    # -- Valid statuses --
    STATUSES = [
        "pending",
        "paid",
        "failed",
        "canceled",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    invoice_number = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "INV-20261018-0001"
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="VND")
    description = db.Column(db.String(255), nullable=True)
    status = db.Column(
        db.String(50), nullable=False, default="pending"
    )  # pending | paid | failed | canceled
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self):
        return f"<Order {self.invoice_number} ({self.status})>"
