"""Idempotency ledger — which (provider, event_id) pairs are already applied.

mark_applied() adds the ledger row and flushes immediately, as the first
write of the reconciliation transaction. A duplicate (sequential retry or
concurrent delivery) fails on the unique constraint and surfaces as
AlreadyApplied; the caller's transaction is rolled back so nothing else
from that request is written.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from reconciler.errors import AlreadyApplied
from reconciler.extensions import db
from reconciler.models.applied_event import AppliedEvent

logger = logging.getLogger(__name__)


def has_applied(provider, event_id):
    """Return True if (provider, event_id) is already in the ledger."""
    existing = AppliedEvent.query.filter_by(
        provider=getattr(provider, "value", provider),
        event_id=event_id,
    ).first()
    return existing is not None


def mark_applied(event, outcome):
    """Insert the ledger row for a PaymentEvent inside the open transaction.

    Does not commit. Raises AlreadyApplied (after rolling the session back)
    if another request already recorded the same key.
    """
    entry = AppliedEvent(
        provider=event.provider.value,
        event_id=event.event_id,
        event_type=event.event_type,
        subject_ref=event.subject_ref,
        outcome=outcome,
    )
    db.session.add(entry)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        logger.info(f"Ledger rejected duplicate {event.provider.value}:{event.event_id}")
        raise AlreadyApplied(event.provider.value, event.event_id)
    return entry


def prune_applied_events(retention_days, now=None, dry_run=False):
    """Delete ledger rows older than the retention window.

    Providers stop retrying long before the window ends, so pruned keys
    can no longer be redelivered. Returns the number of rows affected
    (or that would be, with dry_run).
    """
    if retention_days < 1:
        raise ValueError("retention_days must be at least 1")

    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)
    query = AppliedEvent.query.filter(AppliedEvent.applied_at < cutoff)

    if dry_run:
        return query.count()

    deleted = query.delete(synchronize_session=False)
    db.session.commit()
    logger.info(f"Pruned {deleted} ledger entries older than {cutoff.isoformat()}")
    return deleted
