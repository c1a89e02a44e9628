"""Append-only audit trail of authorization and administrative events."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import CheckConstraint, Index, String, event
from sqlalchemy import Enum as SqlEnum
from sqlalchemy.orm import Mapped, mapped_column

from gatekeeper.models.base import Base, utcnow
from gatekeeper.models.types import BigIntegerPK, JSONType, UTCDateTime


class AuditEventType(str, Enum):
    LOGIN_ALLOW = "login_allow"
    LOGIN_DENY = "login_deny"
    API_ALLOW = "api_allow"
    API_DENY = "api_deny"
    ADMIN_ADD_USER = "admin_add_user"
    ADMIN_REMOVE_USER = "admin_remove_user"
    ADMIN_TOGGLE_USER = "admin_toggle_user"
    SESSION_CREATED = "session_created"
    SESSION_EXPIRED = "session_expired"
    SESSION_INVALIDATED = "session_invalidated"


AUTH_EVENTS = frozenset(
    {
        AuditEventType.LOGIN_ALLOW,
        AuditEventType.LOGIN_DENY,
        AuditEventType.API_ALLOW,
        AuditEventType.API_DENY,
    }
)
ADMIN_EVENTS = frozenset(
    {
        AuditEventType.ADMIN_ADD_USER,
        AuditEventType.ADMIN_REMOVE_USER,
        AuditEventType.ADMIN_TOGGLE_USER,
    }
)
SESSION_EVENTS = frozenset(
    {
        AuditEventType.SESSION_CREATED,
        AuditEventType.SESSION_EXPIRED,
        AuditEventType.SESSION_INVALIDATED,
    }
)
DENIAL_EVENTS = frozenset({AuditEventType.LOGIN_DENY, AuditEventType.API_DENY})

EVENT_VALUES = tuple(item.value for item in AuditEventType)


class AuditLogImmutableError(RuntimeError):
    """Raised when code attempts to modify or delete a persisted audit row."""


class AuditLogEntry(Base):
    """Immutable audit entries; ``ts`` is assigned by the server at write time."""

    __tablename__ = "auth_audit_log"
    __table_args__ = (
        CheckConstraint(
            "event IN ({})".format(", ".join(f"'{value}'" for value in EVENT_VALUES)),
            name="ck_auth_audit_log_event",
        ),
        Index("ix_auth_audit_log_email", "email"),
        Index("ix_auth_audit_log_event", "event"),
        Index("ix_auth_audit_log_ts", "ts"),
    )

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    email: Mapped[Optional[str]] = mapped_column(String(length=320), nullable=True)
    event: Mapped[AuditEventType] = mapped_column(
        SqlEnum(
            AuditEventType,
            name="audit_event_type",
            native_enum=False,
            length=32,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    path: Mapped[Optional[str]] = mapped_column(String(length=2048), nullable=True)
    ip: Mapped[Optional[str]] = mapped_column(String(length=64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(length=512), nullable=True)
    ts: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)


@event.listens_for(AuditLogEntry, "before_update")
def _reject_update(mapper, connection, target) -> None:  # noqa: ANN001
    raise AuditLogImmutableError(f"Audit log entry {target.id} cannot be modified")


@event.listens_for(AuditLogEntry, "before_delete")
def _reject_delete(mapper, connection, target) -> None:  # noqa: ANN001
    raise AuditLogImmutableError(f"Audit log entry {target.id} cannot be deleted")
