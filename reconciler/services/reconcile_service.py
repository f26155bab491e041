"""Reconcile service — apply a PaymentEvent exactly once.

Order of work inside one transaction:
    1. fast-path ledger lookup (duplicate -> already_processed)
    2. plan the transition from current persisted state
    3. insert the ledger row (unique constraint arbitrates races)
    4. write the order/subscription row and audit trail
    5. commit

Any database failure rolls the whole transaction back and surfaces as
StorageUnavailable, so a ledger row is never committed without its state
change. If the subject row changed between planning and writing (another
notification for the same order or subscription committed first), the
transaction is rolled back and the event is planned again from the new
state, up to MAX_ATTEMPTS times.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from reconciler.errors import (
    AlreadyApplied,
    IllegalTransition,
    StaleTransition,
    StorageUnavailable,
)
from reconciler.extensions import db
from reconciler.models.audit import AuditEvent
from reconciler.services.ledger import has_applied, mark_applied
from reconciler.services.state_machine import plan_transition

logger = logging.getLogger(__name__)

# Outcomes reported back to the endpoint.
IGNORED = "ignored"
ALREADY_PROCESSED = "already_processed"
PROCESSED = "processed"
NOOP = "noop"
REJECTED = "rejected"

MAX_ATTEMPTS = 3


def log_reconcile_audit(event, action, metadata=None):
    """Add an audit row for a reconciliation decision (flushed, not committed)."""
    db.session.add(AuditEvent(
        provider=event.provider.value,
        subject_ref=event.subject_ref,
        action=action,
        metadata_={
            "event_id": event.event_id,
            "event_type": event.event_type,
            **(metadata or {}),
        },
    ))
    db.session.flush()


def _apply_once(event, key):
    """One attempt: plan, record, write, commit. Returns the outcome."""
    if has_applied(event.provider, event.event_id):
        logger.info(f"Duplicate event {key}, skipping")
        return ALREADY_PROCESSED

    rejection = None
    try:
        transition = plan_transition(event)
    except IllegalTransition as e:
        transition = None
        rejection = e

    if rejection is not None:
        outcome = REJECTED
    elif transition.is_noop:
        outcome = NOOP
    else:
        outcome = PROCESSED

    mark_applied(event, outcome)

    if rejection is not None:
        logger.warning(f"Event {key} rejected: {rejection}")
        log_reconcile_audit(event, "transition.rejected", {
            "status": rejection.status,
            "kind": rejection.kind,
            "reason": rejection.reason,
        })
    elif outcome == PROCESSED:
        transition.apply()
        log_reconcile_audit(event, f"{transition.entity}.{transition.to_status}", {
            "from_status": transition.from_status,
            "to_status": transition.to_status,
        })
    else:
        logger.info(f"Event {key} leaves {transition.entity} {transition.subject_ref} unchanged")

    db.session.commit()
    return outcome


def reconcile(event):
    """Apply a normalized event to the store.

    Returns one of IGNORED, ALREADY_PROCESSED, PROCESSED, NOOP, REJECTED.
    Raises StorageUnavailable if the transaction could not be committed.
    """
    if event is None or not event.handled:
        logger.info(
            f"Ignoring unhandled {getattr(event, 'provider', None)} "
            f"event {getattr(event, 'event_type', None)}"
        )
        return IGNORED

    key = f"{event.provider.value}:{event.event_id}"

    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            return _apply_once(event, key)
        except AlreadyApplied:
            # Lost the race to a concurrent delivery of the same event.
            return ALREADY_PROCESSED
        except StaleTransition as e:
            db.session.rollback()
            logger.info(f"Event {key}: {e}, planning again (attempt {attempt})")
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Storage failure while reconciling {key}: {e}", exc_info=True)
            raise StorageUnavailable(str(e)) from e

    logger.error(f"Event {key} still conflicting after {MAX_ATTEMPTS} attempts")
    raise StorageUnavailable(f"{key} conflicted {MAX_ATTEMPTS} times")
