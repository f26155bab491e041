# Models package: import all models here so Alembic can discover them.

from reconciler.models.order import Order  # noqa: F401
from reconciler.models.subscription import Subscription  # noqa: F401
from reconciler.models.applied_event import AppliedEvent  # noqa: F401
from reconciler.models.audit import AuditEvent  # noqa: F401
