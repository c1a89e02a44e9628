"""Audit event schemas.

Each event family carries its own details model. The union is only a typing
boundary: persisted details are a plain JSON object so older rows and newer
fields can coexist.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gatekeeper.core.identity import normalize_email
from gatekeeper.models.audit_log import AuditEventType


class _Details(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class AccessGrantedDetails(_Details):
    role: str
    session_id: Optional[str] = None


class AccessDeniedDetails(_Details):
    reason: str
    active: Optional[bool] = None
    error: Optional[str] = None
    required_role: Optional[str] = None
    user_role: Optional[str] = None


class UserAddedDetails(_Details):
    added_email: str
    role: str
    display_name: Optional[str] = None


class UserRemovedDetails(_Details):
    removed_email: str
    existed: bool


class UserToggledDetails(_Details):
    toggled_email: str
    new_status: bool


class SessionDetails(_Details):
    session_id: Optional[str] = None
    reason: Optional[str] = None


AuditDetails = Union[
    AccessGrantedDetails,
    AccessDeniedDetails,
    UserAddedDetails,
    UserRemovedDetails,
    UserToggledDetails,
    SessionDetails,
]

EVENT_DETAIL_TYPES: Dict[AuditEventType, type[_Details]] = {
    AuditEventType.LOGIN_ALLOW: AccessGrantedDetails,
    AuditEventType.API_ALLOW: AccessGrantedDetails,
    AuditEventType.LOGIN_DENY: AccessDeniedDetails,
    AuditEventType.API_DENY: AccessDeniedDetails,
    AuditEventType.ADMIN_ADD_USER: UserAddedDetails,
    AuditEventType.ADMIN_REMOVE_USER: UserRemovedDetails,
    AuditEventType.ADMIN_TOGGLE_USER: UserToggledDetails,
    AuditEventType.SESSION_CREATED: SessionDetails,
    AuditEventType.SESSION_EXPIRED: SessionDetails,
    AuditEventType.SESSION_INVALIDATED: SessionDetails,
}


class AuditEventCreate(BaseModel):
    """An audit event as produced by the guard, admin API, or login flow."""

    email: Optional[str] = None
    event: AuditEventType
    path: Optional[str] = Field(default=None, max_length=2048)
    ip: Optional[str] = Field(default=None, max_length=64)
    user_agent: Optional[str] = None
    details: Optional[AuditDetails] = None

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return normalize_email(value) or None

    @field_validator("user_agent")
    @classmethod
    def _truncate_user_agent(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value[:512]

    @model_validator(mode="after")
    def _details_match_event(self) -> "AuditEventCreate":
        if self.details is None:
            return self
        expected = EVENT_DETAIL_TYPES[self.event]
        if not isinstance(self.details, expected):
            raise ValueError(
                f"{type(self.details).__name__} cannot describe a {self.event.value} event"
            )
        return self

    def serialized_details(self) -> Optional[Dict[str, Any]]:
        if self.details is None:
            return None
        return self.details.model_dump(mode="json", exclude_none=True)


class AuditLogQuery(BaseModel):
    """Conjunctive filters plus limit/offset pagination for audit queries."""

    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = None
    event: Optional[AuditEventType] = None
    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    end_date: Optional[datetime] = Field(default=None, alias="endDate")
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return normalize_email(value) or None

    @field_validator("start_date", "end_date")
    @classmethod
    def _enforce_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: Optional[str] = None
    event: AuditEventType
    path: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    ts: datetime
    details: Optional[Dict[str, Any]] = None


class Pagination(BaseModel):
    limit: int
    offset: int
    total: int
    pages: int


class AuditLogListResponse(BaseModel):
    logs: List[AuditLogResponse]
    total: int
    pagination: Pagination


class EventTypeStats(BaseModel):
    count: int
    unique_emails: int
    unique_ips: int


class AuditStats(BaseModel):
    total_events: int
    events_by_type: Dict[str, EventTypeStats]
    period_days: int


class AuditStatsResponse(BaseModel):
    stats: AuditStats


class RecentDenialsResponse(BaseModel):
    denials: List[AuditLogResponse]
