"""Allow-list entries: the email identities permitted to use the application."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, Index, String, true
from sqlalchemy import Enum as SqlEnum
from sqlalchemy.orm import Mapped, mapped_column

from gatekeeper.models.base import Base, TimestampMixin


class Role(str, Enum):
    ADMIN = "admin"
    VIEWER = "viewer"
    QA = "qa"


ROLE_VALUES = tuple(role.value for role in Role)


class AllowListEntry(TimestampMixin, Base):
    """One approved identity keyed by canonical email.

    ``active=False`` revokes access while keeping the row for audit continuity.
    """

    __tablename__ = "auth_allowed_emails"
    __table_args__ = (
        CheckConstraint(
            "role IN ({})".format(", ".join(f"'{value}'" for value in ROLE_VALUES)),
            name="ck_auth_allowed_emails_role",
        ),
        Index("ix_auth_allowed_emails_active", "active"),
    )

    email: Mapped[str] = mapped_column(String(length=320), primary_key=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(length=255), nullable=True)
    role: Mapped[Role] = mapped_column(
        SqlEnum(
            Role,
            name="allowlist_role",
            native_enum=False,
            length=16,
            values_callable=lambda x: [e.value for e in x],
        ),
        default=Role.VIEWER,
        nullable=False,
    )
    invited_by: Mapped[Optional[str]] = mapped_column(String(length=320), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=true(), nullable=False)
