"""SQLAlchemy ORM models for the allow-list gate."""

from gatekeeper.models.base import Base  # noqa: F401
from gatekeeper.models.allowlist_entry import AllowListEntry, Role  # noqa: F401
from gatekeeper.models.audit_log import AuditEventType, AuditLogEntry  # noqa: F401
