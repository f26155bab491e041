"""Exception taxonomy for inbound payment notifications.

Only StorageUnavailable turns into a 5xx. Everything else is answered with
a success acknowledgment (or 401/400 for authentication failures) so the
provider does not retry conditions that retrying cannot fix.
"""


class ReconcilerError(Exception):
    """Base class for notification handling errors."""


class Unauthorized(ReconcilerError):
    """The notification did not prove it came from the provider."""


class MalformedPayload(ReconcilerError):
    """The (authentic) body could not be parsed into an event."""


class AlreadyApplied(ReconcilerError):
    """The (provider, event_id) pair is already in the ledger."""

    def __init__(self, provider, event_id):
        super().__init__(f"{provider}:{event_id} already applied")
        self.provider = provider
        self.event_id = event_id


class IllegalTransition(ReconcilerError):
    """The event kind is not valid for the entity's current state."""

    def __init__(self, entity, status, kind, reason=None):
        message = f"{entity} in status {status!r} cannot apply {kind}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.entity = entity
        self.status = status
        self.kind = kind
        self.reason = reason


class StorageUnavailable(ReconcilerError):
    """The store could not be reached or the transaction failed."""


class StaleTransition(ReconcilerError):
    """The row changed between planning and writing; plan again."""

    def __init__(self, entity, subject_ref, from_status):
        super().__init__(
            f"{entity} {subject_ref} is no longer in status {from_status!r}"
        )
        self.entity = entity
        self.subject_ref = subject_ref
        self.from_status = from_status
