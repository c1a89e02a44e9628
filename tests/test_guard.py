from __future__ import annotations

from dataclasses import replace
from typing import List

import httpx
import pytest
from sqlalchemy import select

from gatekeeper.models.allowlist_entry import Role
from gatekeeper.models.audit_log import AuditEventType, AuditLogEntry
from gatekeeper.services.allowlist import AllowListService
from gatekeeper.services.audit import AuditLogger
from gatekeeper.services.guard import (
    AccessContext,
    AccessDecision,
    AuthenticatedUser,
    AuthorizationGuard,
    RequestInfo,
    RoleGuard,
)
from gatekeeper.services.identity_provider import HttpIdentityProvider, SessionCredentials


@pytest.fixture()
def guard(allowlist: AllowListService, audit_logger: AuditLogger, identity_provider) -> AuthorizationGuard:
    return AuthorizationGuard(allowlist, audit_logger, identity_provider)


def _request(token: str | None, path: str = "/user/profile") -> RequestInfo:
    credentials = SessionCredentials(token=token) if token else None
    return RequestInfo(path=path, ip="198.51.100.7", user_agent="pytest", credentials=credentials)


def _audit_rows(session) -> List[AuditLogEntry]:
    session.expire_all()
    return list(session.scalars(select(AuditLogEntry).order_by(AuditLogEntry.id)))


def test_allow_writes_single_allow_entry(guard, allowlist, identity_provider, session) -> None:
    allowlist.add_user("member@example.com", "Member", Role.QA)
    token = identity_provider.sign_in("Member@Example.com")

    outcome = guard.evaluate(_request(token))

    assert outcome.decision is AccessDecision.ALLOW
    assert outcome.user == AuthenticatedUser(
        email="member@example.com",
        role=Role.QA,
        display_name="Member",
        session_id=identity_provider.sessions[token].session_id,
    )
    rows = _audit_rows(session)
    assert len(rows) == 1
    assert rows[0].event is AuditEventType.API_ALLOW
    assert rows[0].details["role"] == "qa"


def test_missing_session_is_unauthenticated(guard, session) -> None:
    outcome = guard.evaluate(_request(None))

    assert outcome.decision is AccessDecision.DENY_UNAUTHENTICATED
    assert outcome.status_code == 401
    rows = _audit_rows(session)
    assert len(rows) == 1
    assert rows[0].email is None
    assert rows[0].details == {"reason": "no_session"}


def test_identity_provider_failure_is_unauthenticated(guard, identity_provider, session) -> None:
    identity_provider.failing = True

    outcome = guard.evaluate(_request("whatever"))

    assert outcome.decision is AccessDecision.DENY_UNAUTHENTICATED
    assert len(_audit_rows(session)) == 1


def test_session_without_email_is_unauthenticated(guard, identity_provider, session) -> None:
    token = identity_provider.sign_in(None)

    outcome = guard.evaluate(_request(token))

    assert outcome.decision is AccessDecision.DENY_UNAUTHENTICATED
    assert _audit_rows(session)[0].details == {"reason": "no_email_in_session"}


def test_email_from_secondary_lookup(guard, allowlist, identity_provider) -> None:
    allowlist.add_user("lookup@example.com", None)
    token = identity_provider.sign_in("lookup@example.com", claim_email=False)

    outcome = guard.evaluate(_request(token))

    assert outcome.allowed
    assert outcome.user.email == "lookup@example.com"


def test_not_listed_is_forbidden(guard, identity_provider, session) -> None:
    token = identity_provider.sign_in("stranger@example.com")

    outcome = guard.evaluate(_request(token))

    assert outcome.decision is AccessDecision.DENY_FORBIDDEN
    rows = _audit_rows(session)
    assert len(rows) == 1
    assert rows[0].email == "stranger@example.com"
    assert rows[0].details["reason"] == "not_in_allowlist"


def test_inactive_is_forbidden_with_flag(guard, allowlist, identity_provider, session) -> None:
    allowlist.add_user("paused@example.com", None)
    allowlist.toggle_user_status("paused@example.com")
    token = identity_provider.sign_in("paused@example.com")

    outcome = guard.evaluate(_request(token))

    assert outcome.decision is AccessDecision.DENY_FORBIDDEN
    assert _audit_rows(session)[0].details["active"] is False


def test_store_error_is_deny_error(guard, identity_provider, session, monkeypatch) -> None:
    from sqlalchemy.exc import OperationalError

    token = identity_provider.sign_in("someone@example.com")

    def broken_get(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    monkeypatch.setattr(session, "get", broken_get)

    outcome = guard.evaluate(_request(token))

    assert outcome.decision is AccessDecision.DENY_ERROR
    assert outcome.status_code == 500
    monkeypatch.undo()
    rows = _audit_rows(session)
    assert len(rows) == 1
    assert rows[0].details["reason"] == "allowlist_unavailable"
    assert "connection refused" in rows[0].details["error"]


def test_unexpected_exception_is_deny_error(guard, allowlist, identity_provider, session, monkeypatch) -> None:
    token = identity_provider.sign_in("boom@example.com")

    def explode(email):
        raise RuntimeError("kaboom")

    monkeypatch.setattr(allowlist, "is_email_allowed", explode)

    outcome = guard.evaluate(_request(token))

    assert outcome.decision is AccessDecision.DENY_ERROR
    rows = _audit_rows(session)
    assert len(rows) == 1
    assert rows[0].email == "boom@example.com"
    assert rows[0].details == {"reason": "internal_error", "error": "kaboom"}


def test_role_guard_denial_is_single_entry(guard, allowlist, identity_provider, session) -> None:
    allowlist.add_user("viewer@example.com", None, Role.VIEWER)
    token = identity_provider.sign_in("viewer@example.com")

    outcome = guard.evaluate(_request(token, "/admin/users"), role_guard=RoleGuard(Role.ADMIN))

    assert outcome.decision is AccessDecision.DENY_FORBIDDEN
    rows = _audit_rows(session)
    assert len(rows) == 1
    assert rows[0].event is AuditEventType.API_DENY
    assert rows[0].details == {
        "reason": "insufficient_permissions",
        "required_role": "admin",
        "user_role": "viewer",
    }


def test_login_context_uses_login_events(guard, allowlist, identity_provider, session) -> None:
    allowlist.add_user("login@example.com", None)
    allowed = guard.evaluate(_request(identity_provider.sign_in("login@example.com")), context=AccessContext.LOGIN)
    denied = guard.evaluate(_request(identity_provider.sign_in("nope@example.com")), context=AccessContext.LOGIN)

    assert allowed.allowed and not denied.allowed
    assert [row.event for row in _audit_rows(session)] == [AuditEventType.LOGIN_ALLOW, AuditEventType.LOGIN_DENY]


def test_role_guard_is_exact_match() -> None:
    guard = RoleGuard(Role.ADMIN)
    admin = AuthenticatedUser(email="a@example.com", role=Role.ADMIN)
    qa = AuthenticatedUser(email="q@example.com", role=Role.QA)

    assert guard.check(admin) is None
    denial = guard.check(qa)
    assert denial is not None
    assert denial.user_role == "qa"


def test_oversized_client_ip_is_cut_not_dropped(guard, allowlist, identity_provider, session) -> None:
    allowlist.add_user("member@example.com", None, Role.VIEWER)
    token = identity_provider.sign_in("member@example.com")
    request = RequestInfo(
        path="/user/profile",
        ip="a" * 80,
        user_agent="pytest",
        credentials=SessionCredentials(token=token),
    )

    assert guard.evaluate(request).decision is AccessDecision.ALLOW
    assert guard.evaluate(replace(request, credentials=None)).decision is AccessDecision.DENY_UNAUTHENTICATED

    rows = _audit_rows(session)
    assert [row.event for row in rows] == [AuditEventType.API_ALLOW, AuditEventType.API_DENY]
    assert all(row.ip == "a" * 64 for row in rows)


def test_malformed_profile_reply_is_unauthenticated(allowlist, audit_logger, session) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/sessions/verify"):
            return httpx.Response(200, json={"session_id": "sess_1", "user_id": "u1", "claims": {}})
        return httpx.Response(200, json={"email_addresses": {"id": "x"}})

    provider = HttpIdentityProvider(
        base_url="https://idp.example.com",
        secret_key="sk_test",
        transport=httpx.MockTransport(handler),
    )
    guard = AuthorizationGuard(allowlist, audit_logger, provider)

    outcome = guard.evaluate(_request("tok"))

    assert outcome.decision is AccessDecision.DENY_UNAUTHENTICATED
    assert outcome.reason == "no_email_in_session"
    assert len(_audit_rows(session)) == 1


def test_unexpected_provider_exception_is_unauthenticated(allowlist, audit_logger, identity_provider, session) -> None:
    def broken(credentials):
        raise KeyError("sid")

    identity_provider.get_verified_identity = broken
    guard = AuthorizationGuard(allowlist, audit_logger, identity_provider)

    outcome = guard.evaluate(_request("tok"))

    assert outcome.decision is AccessDecision.DENY_UNAUTHENTICATED
    assert outcome.status_code == 401
    assert _audit_rows(session)[0].details == {"reason": "no_session"}


def test_allow_decision_stands_when_audit_write_raises(allowlist, identity_provider, session_factory) -> None:
    class ExplodingAuditLogger(AuditLogger):
        def log_auth_event(self, *args, **kwargs):  # noqa: ANN002, ANN003
            raise RuntimeError("audit store gone")

    allowlist.add_user("member@example.com", None, Role.VIEWER)
    token = identity_provider.sign_in("member@example.com")
    guard = AuthorizationGuard(allowlist, ExplodingAuditLogger(session_factory), identity_provider)

    outcome = guard.evaluate(_request(token))

    assert outcome.decision is AccessDecision.ALLOW
    assert outcome.user is not None and outcome.user.email == "member@example.com"
