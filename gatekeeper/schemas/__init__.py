"""Pydantic schemas for API payloads and audit events."""

from gatekeeper.schemas.allowlist import (
    AddUserRequest,
    AllowListRecord,
    MutationResponse,
    ProfileResponse,
    ToggleResponse,
    UserListResponse,
)
from gatekeeper.schemas.audit import (
    AccessDeniedDetails,
    AccessGrantedDetails,
    AuditEventCreate,
    AuditLogListResponse,
    AuditLogQuery,
    AuditLogResponse,
    AuditStats,
    AuditStatsResponse,
    RecentDenialsResponse,
    SessionDetails,
    UserAddedDetails,
    UserRemovedDetails,
    UserToggledDetails,
)

__all__ = [
    "AccessDeniedDetails",
    "AccessGrantedDetails",
    "AddUserRequest",
    "AllowListRecord",
    "AuditEventCreate",
    "AuditLogListResponse",
    "AuditLogQuery",
    "AuditLogResponse",
    "AuditStats",
    "AuditStatsResponse",
    "MutationResponse",
    "ProfileResponse",
    "RecentDenialsResponse",
    "SessionDetails",
    "ToggleResponse",
    "UserAddedDetails",
    "UserListResponse",
    "UserRemovedDetails",
    "UserToggledDetails",
]
