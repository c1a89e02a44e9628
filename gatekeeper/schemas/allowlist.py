"""Allow-list schemas."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from gatekeeper.core.sanitization import sanitize_display_name, sanitize_email, sanitize_role
from gatekeeper.models.allowlist_entry import Role


class AllowListRecord(BaseModel):
    """Detached snapshot of an allow-list row, safe to cache and share across threads."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    email: str
    display_name: Optional[str] = None
    role: Role = Role.VIEWER
    invited_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    active: bool


class AddUserRequest(BaseModel):
    email: EmailStr
    display_name: Optional[str] = Field(default=None)
    role: Role = Field(default=Role.VIEWER)

    @field_validator("email", mode="before")
    @classmethod
    def _sanitize_email(cls, value: object) -> object:
        if isinstance(value, str):
            return sanitize_email(value)
        return value

    @field_validator("display_name", mode="before")
    @classmethod
    def _sanitize_display_name(cls, value: object) -> object:
        if value is None or isinstance(value, str):
            return sanitize_display_name(value)
        return value

    @field_validator("role", mode="before")
    @classmethod
    def _sanitize_role(cls, value: object) -> object:
        if value is None or value == "":
            return Role.VIEWER
        if isinstance(value, str):
            return sanitize_role(value)
        return value


class UserListResponse(BaseModel):
    users: List[AllowListRecord]


class MutationResponse(BaseModel):
    success: bool
    message: str


class ToggleResponse(MutationResponse):
    newStatus: bool


class ProfileResponse(BaseModel):
    email: str
    display_name: Optional[str] = None
    role: Role
