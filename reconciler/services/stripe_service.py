"""Stripe service — subscription checkout.

Responsible for:
- Finding or creating the Stripe Customer for an email address
- Recording the incomplete Subscription row for that customer
- Creating the Stripe Checkout Session (subscription mode)

Activation happens later, when checkout.session.completed / invoice.paid
arrive at the webhook endpoint.
"""

import logging

import stripe
from flask import current_app

from reconciler.extensions import db
from reconciler.models.subscription import Subscription

logger = logging.getLogger(__name__)

PREMIUM_PLAN = "premium"


class SubscriptionConflict(Exception):
    """The customer already has a subscription that checkout must not replace."""


def get_or_create_stripe_customer(email, full_name=None):
    """Return the Stripe customer ID for email, creating the customer if absent."""
    existing = stripe.Customer.list(email=email, limit=1)
    if existing.data:
        return existing.data[0].id

    customer_params = {"email": email}
    if full_name:
        customer_params["name"] = full_name
    customer = stripe.Customer.create(**customer_params)
    logger.info(f"Created Stripe customer {customer.id}")
    return customer.id


def record_incomplete_subscription(customer_ref, email, plan):
    """Get or create the incomplete Subscription row for a customer starting checkout.

    Raises SubscriptionConflict if the customer's row is active, past_due
    or canceled: a second Stripe subscription would be charged but its
    events could never be applied to that row.
    Returns the Subscription instance (committed).
    """
    sub = Subscription.query.filter_by(customer_ref=customer_ref).first()
    if sub:
        if sub.status != "incomplete":
            raise SubscriptionConflict(
                f"Customer {customer_ref} already has a {sub.status} subscription"
            )
        if not sub.email:
            sub.email = email
            db.session.commit()
        return sub

    sub = Subscription(
        customer_ref=customer_ref,
        email=email,
        plan=plan,
        status="incomplete",
    )
    db.session.add(sub)
    db.session.commit()
    return sub


def create_subscription_checkout(email, full_name=None, success_path=None, cancel_path=None):
    """Create a Stripe Checkout Session for the premium subscription.

    Returns (checkout_url, session_id).
    Raises SubscriptionConflict before any session is created if the
    customer is already subscribed, stripe.StripeError on API failures.
    """
    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]
    app_base_url = current_app.config["APP_BASE_URL"]
    price_id = current_app.config["STRIPE_PREMIUM_PRICE_ID"]

    customer_id = get_or_create_stripe_customer(email, full_name)
    record_incomplete_subscription(customer_id, email, PREMIUM_PLAN)

    session = stripe.checkout.Session.create(
        mode="subscription",
        customer=customer_id,
        line_items=[{"price": price_id, "quantity": 1}],
        success_url=f"{app_base_url}{success_path or '/thanh-cong/premium'}",
        cancel_url=f"{app_base_url}{cancel_path or '/goi-dich-vu'}",
        allow_promotion_codes=True,
        metadata={"plan": PREMIUM_PLAN},
    )

    return session.url, session.id
