"""Administrative allow-list mutations with audit trail."""

from __future__ import annotations

import logging
from typing import Optional

from gatekeeper.core.identity import normalize_email
from gatekeeper.models.audit_log import AuditEventType
from gatekeeper.schemas.allowlist import AddUserRequest
from gatekeeper.schemas.audit import UserAddedDetails, UserRemovedDetails, UserToggledDetails
from gatekeeper.services.allowlist import AllowListService, EntryListResult, MutationResult
from gatekeeper.services.audit import AuditLogger
from gatekeeper.services.guard import AuthenticatedUser, RequestInfo


class AdminUserService:
    """Runs admin mutations and records an ``admin_*`` audit entry for each one that succeeds."""

    def __init__(self, allowlist: AllowListService, audit: AuditLogger) -> None:
        self._allowlist = allowlist
        self._audit = audit
        self._logger = logging.getLogger("gatekeeper.services.admin")

    def list_users(self, search: Optional[str] = None) -> EntryListResult:
        if search and search.strip():
            return self._allowlist.search_users(search)
        return self._allowlist.get_all_users()

    def add_user(self, actor: AuthenticatedUser, payload: AddUserRequest, request: RequestInfo) -> MutationResult:
        result = self._allowlist.add_user(
            str(payload.email),
            payload.display_name,
            payload.role,
            invited_by=actor.email,
        )
        if result.success:
            self._audit.log_admin_event(
                actor.email,
                AuditEventType.ADMIN_ADD_USER,
                path=request.path,
                ip=request.ip,
                user_agent=request.user_agent,
                details=UserAddedDetails(
                    added_email=normalize_email(str(payload.email)),
                    role=payload.role.value,
                    display_name=payload.display_name,
                ),
            )
            self._logger.info(
                "admin_user_added",
                extra={"actor": actor.email, "target": normalize_email(str(payload.email)), "role": payload.role.value},
            )
        return result

    def remove_user(self, actor: AuthenticatedUser, email: str, request: RequestInfo) -> MutationResult:
        target = normalize_email(email)
        result = self._allowlist.remove_user(target)
        if result.success:
            self._audit.log_admin_event(
                actor.email,
                AuditEventType.ADMIN_REMOVE_USER,
                path=request.path,
                ip=request.ip,
                user_agent=request.user_agent,
                details=UserRemovedDetails(removed_email=target, existed=bool(result.removed)),
            )
            self._logger.info("admin_user_removed", extra={"actor": actor.email, "target": target})
        return result

    def toggle_user(self, actor: AuthenticatedUser, email: str, request: RequestInfo) -> MutationResult:
        target = normalize_email(email)
        result = self._allowlist.toggle_user_status(target)
        if result.success and result.new_status is not None:
            self._audit.log_admin_event(
                actor.email,
                AuditEventType.ADMIN_TOGGLE_USER,
                path=request.path,
                ip=request.ip,
                user_agent=request.user_agent,
                details=UserToggledDetails(toggled_email=target, new_status=result.new_status),
            )
            self._logger.info(
                "admin_user_toggled",
                extra={"actor": actor.email, "target": target, "active": result.new_status},
            )
        return result
