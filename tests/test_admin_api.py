from __future__ import annotations

from fastapi.testclient import TestClient
from sqlalchemy import select

from gatekeeper.core.database import session_scope
from gatekeeper.models.allowlist_entry import Role
from gatekeeper.models.audit_log import AuditEventType, AuditLogEntry


def _audit_events(services, event: AuditEventType):
    with session_scope(services.session_factory) as session:
        return [
            (row.email, row.details)
            for row in session.scalars(select(AuditLogEntry).where(AuditLogEntry.event == event))
        ]


def test_admin_can_list_users(client: TestClient, seed_user, login) -> None:
    seed_user("admin@example.com", Role.ADMIN, display_name="Admin")
    seed_user("viewer@example.com", Role.VIEWER)

    response = client.get("/admin/users", headers=login("admin@example.com"))

    response.raise_for_status()
    emails = {user["email"] for user in response.json()["users"]}
    assert emails == {"admin@example.com", "viewer@example.com"}


def test_admin_search_users(client: TestClient, seed_user, login) -> None:
    seed_user("admin@example.com", Role.ADMIN)
    seed_user("alice@example.com", Role.QA, display_name="Alice")

    response = client.get("/admin/users", params={"search": "alic"}, headers=login("admin@example.com"))

    response.raise_for_status()
    assert [user["email"] for user in response.json()["users"]] == ["alice@example.com"]


def test_admin_add_user_then_new_user_is_allowed(client: TestClient, services, seed_user, login, csrf) -> None:
    seed_user("admin@example.com", Role.ADMIN)

    response = client.post(
        "/admin/users",
        json={"email": "New@Example.com", "display_name": "New Person", "role": "viewer"},
        headers={**login("admin@example.com"), **csrf},
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "User added successfully"}

    profile = client.get("/user/profile", headers=login("NEW@EXAMPLE.COM "))
    profile.raise_for_status()
    assert profile.json() == {"email": "new@example.com", "display_name": "New Person", "role": "viewer"}

    events = _audit_events(services, AuditEventType.ADMIN_ADD_USER)
    assert events == [
        ("admin@example.com", {"added_email": "new@example.com", "role": "viewer", "display_name": "New Person"})
    ]


def test_add_user_requires_email(client: TestClient, seed_user, login, csrf) -> None:
    seed_user("admin@example.com", Role.ADMIN)

    response = client.post("/admin/users", json={"display_name": "Nobody"}, headers={**login("admin@example.com"), **csrf})

    assert response.status_code == 400
    assert response.json()["detail"] == "Email is required"


def test_add_user_rejects_invalid_role(client: TestClient, seed_user, login, csrf) -> None:
    seed_user("admin@example.com", Role.ADMIN)

    response = client.post(
        "/admin/users",
        json={"email": "x@example.com", "role": "editor"},
        headers={**login("admin@example.com"), **csrf},
    )

    assert response.status_code == 400


def test_add_user_rejects_injection_in_display_name(client: TestClient, services, seed_user, login, csrf) -> None:
    seed_user("admin@example.com", Role.ADMIN)

    response = client.post(
        "/admin/users",
        json={"email": "x@example.com", "display_name": "<script>alert(1)</script>"},
        headers={**login("admin@example.com"), **csrf},
    )

    assert response.status_code == 400
    assert _audit_events(services, AuditEventType.ADMIN_ADD_USER) == []


def test_mutation_without_csrf_token_is_rejected(client: TestClient, seed_user, login) -> None:
    seed_user("admin@example.com", Role.ADMIN)

    response = client.post("/admin/users", json={"email": "x@example.com"}, headers=login("admin@example.com"))

    assert response.status_code == 403
    assert response.json()["detail"] == "CSRF token validation failed"


def test_toggle_user_round_trip(client: TestClient, services, seed_user, login, csrf) -> None:
    seed_user("admin@example.com", Role.ADMIN)
    seed_user("user1@example.com", Role.VIEWER)
    admin_headers = {**login("admin@example.com"), **csrf}

    first = client.patch("/admin/users/user1@example.com/toggle", headers=admin_headers)
    assert first.status_code == 200
    assert first.json() == {"success": True, "message": "User status updated successfully", "newStatus": False}

    blocked = client.get("/user/profile", headers=login("user1@example.com"))
    assert blocked.status_code == 403

    deny_events = _audit_events(services, AuditEventType.API_DENY)
    assert ("user1@example.com", {"reason": "not_in_allowlist", "active": False}) in deny_events

    second = client.patch("/admin/users/USER1@example.com/toggle", headers=admin_headers)
    assert second.json()["newStatus"] is True
    assert client.get("/user/profile", headers=login("user1@example.com")).status_code == 200


def test_toggle_unknown_user_is_bad_request(client: TestClient, seed_user, login, csrf) -> None:
    seed_user("admin@example.com", Role.ADMIN)

    response = client.patch("/admin/users/ghost@example.com/toggle", headers={**login("admin@example.com"), **csrf})

    assert response.status_code == 400
    assert response.json()["detail"] == "User not found"


def test_remove_user(client: TestClient, services, seed_user, login, csrf) -> None:
    seed_user("admin@example.com", Role.ADMIN)
    seed_user("leaving@example.com")

    response = client.delete("/admin/users/leaving@example.com", headers={**login("admin@example.com"), **csrf})

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "User removed successfully"}
    assert client.get("/user/profile", headers=login("leaving@example.com")).status_code == 403
    assert _audit_events(services, AuditEventType.ADMIN_REMOVE_USER) == [
        ("admin@example.com", {"removed_email": "leaving@example.com", "existed": True})
    ]


def test_viewer_cannot_reach_admin_endpoints(client: TestClient, services, seed_user, login) -> None:
    seed_user("viewer@example.com", Role.VIEWER)

    response = client.get("/admin/users", headers=login("viewer@example.com"))

    assert response.status_code == 403
    assert _audit_events(services, AuditEventType.API_DENY) == [
        ("viewer@example.com", {"reason": "insufficient_permissions", "required_role": "admin", "user_role": "viewer"})
    ]


def test_unlisted_identity_is_forbidden(client: TestClient, login) -> None:
    assert client.get("/user/profile", headers=login("stranger@example.com")).status_code == 403


def test_missing_session_is_unauthorized(client: TestClient) -> None:
    response = client.get("/admin/users")
    assert response.status_code == 401


def test_store_failure_returns_server_error(client: TestClient, services, seed_user, login, monkeypatch) -> None:
    from gatekeeper.services.allowlist import AllowListResult, AllowListService

    seed_user("admin@example.com", Role.ADMIN)
    headers = login("admin@example.com")
    services.allowlist_cache.clear()

    def unavailable(self, email):
        return AllowListResult(allowed=False, error="connection refused", store_error=True)

    monkeypatch.setattr(AllowListService, "is_email_allowed", unavailable)

    response = client.get("/admin/users", headers=headers)
    assert response.status_code == 500


def test_audit_query_endpoint(client: TestClient, seed_user, login) -> None:
    seed_user("admin@example.com", Role.ADMIN)
    headers = login("admin@example.com")
    client.get("/user/profile", headers=login("stranger@example.com"))
    client.get("/admin/users", headers=headers)

    response = client.get("/admin/audit", params={"event": "api_deny", "limit": 1}, headers=headers)

    response.raise_for_status()
    body = response.json()
    assert body["total"] == 1
    assert body["logs"][0]["email"] == "stranger@example.com"
    assert body["pagination"] == {"limit": 1, "offset": 0, "total": 1, "pages": 1}


def test_audit_query_rejects_bad_params(client: TestClient, seed_user, login) -> None:
    seed_user("admin@example.com", Role.ADMIN)

    response = client.get("/admin/audit", params={"limit": 5000}, headers=login("admin@example.com"))

    assert response.status_code == 400


def test_audit_stats_and_denials(client: TestClient, seed_user, login) -> None:
    seed_user("admin@example.com", Role.ADMIN)
    headers = login("admin@example.com")
    client.get("/user/profile", headers=login("stranger@example.com"))

    stats = client.get("/admin/audit/stats", params={"days": 1}, headers=headers)
    stats.raise_for_status()
    assert stats.json()["stats"]["period_days"] == 1
    assert stats.json()["stats"]["events_by_type"]["api_deny"]["count"] == 1

    denials = client.get("/admin/audit/denials", headers=headers)
    denials.raise_for_status()
    assert [entry["email"] for entry in denials.json()["denials"]] == ["stranger@example.com"]


def test_health_endpoints_are_public(client: TestClient) -> None:
    for path in ("/healthz", "/api/health"):
        response = client.get(path)
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["environment"] == "test"
