"""Authorization guard evaluated at the API boundary."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from gatekeeper.core.identity import normalize_email
from gatekeeper.models.allowlist_entry import Role
from gatekeeper.models.audit_log import AuditEventType
from gatekeeper.schemas.audit import AccessDeniedDetails, AccessGrantedDetails
from gatekeeper.services.allowlist import AllowListService
from gatekeeper.services.audit import AuditLogger
from gatekeeper.services.identity_provider import (
    IdentityProvider,
    SessionCredentials,
    VerifiedIdentity,
    resolve_identity_email,
)


class AccessDecision(str, Enum):
    ALLOW = "allow"
    DENY_UNAUTHENTICATED = "deny_unauthenticated"
    DENY_FORBIDDEN = "deny_forbidden"
    DENY_ERROR = "deny_error"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]


_STATUS_CODES = {
    AccessDecision.ALLOW: 200,
    AccessDecision.DENY_UNAUTHENTICATED: 401,
    AccessDecision.DENY_FORBIDDEN: 403,
    AccessDecision.DENY_ERROR: 500,
}


class AccessContext(str, Enum):
    """Selects which audit events an evaluation writes."""

    API = "api"
    LOGIN = "login"

    @property
    def allow_event(self) -> AuditEventType:
        return AuditEventType.LOGIN_ALLOW if self is AccessContext.LOGIN else AuditEventType.API_ALLOW

    @property
    def deny_event(self) -> AuditEventType:
        return AuditEventType.LOGIN_DENY if self is AccessContext.LOGIN else AuditEventType.API_DENY


@dataclass(frozen=True)
class RequestInfo:
    path: str
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    credentials: Optional[SessionCredentials] = None


@dataclass(frozen=True)
class AuthenticatedUser:
    email: str
    role: Role
    display_name: Optional[str] = None
    session_id: Optional[str] = None


@dataclass(frozen=True)
class GuardOutcome:
    decision: AccessDecision
    user: Optional[AuthenticatedUser] = None
    email: Optional[str] = None
    reason: Optional[str] = None
    detail: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.decision is AccessDecision.ALLOW

    @property
    def status_code(self) -> int:
        return self.decision.status_code


class RoleGuard:
    """Requires an exact role on top of allow-list membership."""

    def __init__(self, required_role: Role) -> None:
        self.required_role = Role(required_role)

    def check(self, user: AuthenticatedUser) -> Optional[AccessDeniedDetails]:
        if user.role == self.required_role:
            return None
        return AccessDeniedDetails(
            reason="insufficient_permissions",
            required_role=self.required_role.value,
            user_role=Role(user.role).value,
        )


class AuthorizationGuard:
    """Turns a request into exactly one access decision and exactly one audit entry."""

    def __init__(
        self,
        allowlist: AllowListService,
        audit: AuditLogger,
        identity_provider: IdentityProvider,
    ) -> None:
        self._allowlist = allowlist
        self._audit = audit
        self._identity_provider = identity_provider
        self._logger = logging.getLogger("gatekeeper.services.guard")

    def evaluate(
        self,
        request: RequestInfo,
        *,
        context: AccessContext = AccessContext.API,
        role_guard: Optional[RoleGuard] = None,
    ) -> GuardOutcome:
        email: Optional[str] = None
        try:
            identity = self._verified_identity(request)
            if identity is None:
                return self._deny(
                    request, context, AccessDecision.DENY_UNAUTHENTICATED, None,
                    AccessDeniedDetails(reason="no_session"), "Unauthorized",
                )

            raw_email = resolve_identity_email(self._identity_provider, identity)
            email = normalize_email(raw_email) if raw_email else None
            if not email:
                return self._deny(
                    request, context, AccessDecision.DENY_UNAUTHENTICATED, None,
                    AccessDeniedDetails(reason="no_email_in_session"), "No email found in session",
                )

            result = self._allowlist.is_email_allowed(email)
            if result.store_error:
                return self._deny(
                    request, context, AccessDecision.DENY_ERROR, email,
                    AccessDeniedDetails(reason="allowlist_unavailable", error=result.error),
                    "Authorization check failed",
                )
            if not result.allowed or result.entry is None:
                return self._deny(
                    request, context, AccessDecision.DENY_FORBIDDEN, email,
                    AccessDeniedDetails(
                        reason="not_in_allowlist",
                        active=result.entry.active if result.entry is not None else None,
                        error=result.error,
                    ),
                    "Access denied: Email not in allow list",
                )

            user = AuthenticatedUser(
                email=result.entry.email,
                role=result.entry.role,
                display_name=result.entry.display_name,
                session_id=identity.session_id,
            )
            if role_guard is not None:
                denial = role_guard.check(user)
                if denial is not None:
                    return self._deny(
                        request, context, AccessDecision.DENY_FORBIDDEN, email, denial,
                        "Insufficient permissions",
                    )
        except Exception as exc:  # noqa: BLE001
            self._logger.exception("guard_evaluation_failed", extra={"path": request.path, "email": email})
            return self._deny(
                request, context, AccessDecision.DENY_ERROR, email,
                AccessDeniedDetails(reason="internal_error", error=str(exc)),
                "Authorization check failed",
            )

        try:
            self._audit.log_auth_event(
                user.email,
                context.allow_event,
                path=request.path,
                ip=request.ip,
                user_agent=request.user_agent,
                details=AccessGrantedDetails(role=Role(user.role).value, session_id=user.session_id),
            )
        except Exception:  # noqa: BLE001
            self._logger.exception("audit_write_failed", extra={"path": request.path, "email": user.email})
        self._logger.info(
            "guard_allowed",
            extra={"email": user.email, "role": Role(user.role).value, "path": request.path, "context": context.value},
        )
        return GuardOutcome(decision=AccessDecision.ALLOW, user=user, email=user.email)

    def _verified_identity(self, request: RequestInfo) -> Optional[VerifiedIdentity]:
        try:
            return self._identity_provider.get_verified_identity(request.credentials)
        except Exception:  # noqa: BLE001
            self._logger.warning("guard_identity_provider_failed", extra={"path": request.path}, exc_info=True)
            return None

    def _deny(
        self,
        request: RequestInfo,
        context: AccessContext,
        decision: AccessDecision,
        email: Optional[str],
        details: AccessDeniedDetails,
        detail: str,
    ) -> GuardOutcome:
        try:
            self._audit.log_auth_event(
                email,
                context.deny_event,
                path=request.path,
                ip=request.ip,
                user_agent=request.user_agent,
                details=details,
            )
        except Exception:  # noqa: BLE001
            self._logger.exception("audit_write_failed", extra={"path": request.path, "email": email})

        self._logger.warning(
            "guard_denied",
            extra={
                "email": email,
                "path": request.path,
                "reason": details.reason,
                "decision": decision.value,
                "context": context.value,
            },
        )
        return GuardOutcome(decision=decision, email=email, reason=details.reason, detail=detail)
