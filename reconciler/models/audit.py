"""Audit event model.

Records every decision the reconciler makes about a notification
(transition applied, transition rejected) for debugging and support.
"""

import uuid

from reconciler.extensions import db


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    provider = db.Column(db.String(50), nullable=True)
    subject_ref = db.Column(db.String(255), nullable=True)
    action = db.Column(db.String(255), nullable=False)  # e.g. "order.paid"
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid clashing with Model.metadata
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<AuditEvent {self.action}>"
