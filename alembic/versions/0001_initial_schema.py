"""Initial schema for the allow list and the audit log."""

from __future__ import annotations
from typing import Union, Sequence

from alembic import op
import sqlalchemy as sa
from gatekeeper.models.types import BigIntegerPK, JSONType

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ROLES = ("admin", "viewer", "qa")
EVENTS = (
    "login_allow",
    "login_deny",
    "api_allow",
    "api_deny",
    "admin_add_user",
    "admin_remove_user",
    "admin_toggle_user",
    "session_created",
    "session_expired",
    "session_invalidated",
)


def _in_list(column: str, values: Sequence[str]) -> str:
    return "{} IN ({})".format(column, ", ".join(f"'{value}'" for value in values))


def upgrade() -> None:
    """Initial schema for the allow list and the audit log."""
    op.create_table(
        "auth_allowed_emails",
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="viewer"),
        sa.Column("invited_by", sa.String(length=320), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint(_in_list("role", ROLES), name="ck_auth_allowed_emails_role"),
        sa.PrimaryKeyConstraint("email", name=op.f("pk_auth_allowed_emails")),
    )
    op.create_index("ix_auth_allowed_emails_active", "auth_allowed_emails", ["active"], unique=False)

    op.create_table(
        "auth_audit_log",
        sa.Column("id", BigIntegerPK, autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("event", sa.String(length=32), nullable=False),
        sa.Column("path", sa.String(length=2048), nullable=True),
        sa.Column("ip", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("ts", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("details", JSONType(), nullable=True),
        sa.CheckConstraint(_in_list("event", EVENTS), name="ck_auth_audit_log_event"),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_auth_audit_log")),
    )
    op.create_index("ix_auth_audit_log_email", "auth_audit_log", ["email"], unique=False)
    op.create_index("ix_auth_audit_log_event", "auth_audit_log", ["event"], unique=False)
    op.create_index("ix_auth_audit_log_ts", "auth_audit_log", ["ts"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_auth_audit_log_ts", table_name="auth_audit_log")
    op.drop_index("ix_auth_audit_log_event", table_name="auth_audit_log")
    op.drop_index("ix_auth_audit_log_email", table_name="auth_audit_log")
    op.drop_table("auth_audit_log")
    op.drop_index("ix_auth_allowed_emails_active", table_name="auth_allowed_emails")
    op.drop_table("auth_allowed_emails")
