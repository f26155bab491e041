"""Subscription model.

Tracks subscription state synced from Stripe webhooks, keyed by the Stripe
customer ID. subscriptions.status is the source of truth for entitlement
gating. Rows are never deleted, only marked canceled.
"""

import uuid

from reconciler.extensions import db


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    # -- Valid statuses --
    STATUSES = [
        "incomplete",
        "active",
        "past_due",
        "canceled",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    customer_ref = db.Column(
        db.String(255), unique=True, nullable=False
    )  # Stripe customer ID, e.g. "cus_..."
    stripe_subscription_id = db.Column(
        db.String(255), unique=True, nullable=True
    )
    email = db.Column(db.String(255), nullable=True)
    plan = db.Column(db.String(50), nullable=True)  # premium
    status = db.Column(
        db.String(50), nullable=False, default="incomplete"
    )  # incomplete | active | past_due | canceled
    current_period_end = db.Column(
        db.DateTime(timezone=True), nullable=True
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self):
        return f"<Subscription {self.customer_ref} {self.plan} ({self.status})>"
