from __future__ import annotations

from fastapi.testclient import TestClient

from gatekeeper.api.middleware import PublicPathMatcher, is_static_asset
from gatekeeper.models.allowlist_entry import Role
from gatekeeper.schemas.audit import AuditLogQuery
from gatekeeper.services.allowlist import AllowListResult, AllowListService

BROWSER = {"Accept": "text/html,application/xhtml+xml"}


def test_public_path_matcher() -> None:
    matcher = PublicPathMatcher(["/", "/auth*", "/not-invited"])

    assert matcher.matches("/")
    assert matcher.matches("/auth/login")
    assert matcher.matches("/not-invited")
    assert not matcher.matches("/dashboard")
    assert not matcher.matches("/not-invited/extra")


def test_static_assets_are_recognized() -> None:
    assert is_static_asset("/assets/app.js")
    assert is_static_asset("/logo.PNG")
    assert not is_static_asset("/api/data.json")
    assert not is_static_asset("/dashboard")


def test_browser_without_session_is_sent_to_login(client: TestClient) -> None:
    response = client.get("/dashboard", headers=BROWSER, follow_redirects=False)

    assert response.status_code == 307
    assert response.headers["location"].startswith("/auth/login?redirect_url=")


def test_api_client_without_session_gets_json_401(client: TestClient) -> None:
    response = client.get("/user/profile")

    assert response.status_code == 401
    assert response.json() == {"detail": "Unauthorized"}


def test_public_paths_bypass_checks(client: TestClient) -> None:
    response = client.get("/not-invited", headers=BROWSER, follow_redirects=False)
    assert response.status_code == 404


def test_browser_not_invited_is_redirected(client: TestClient, login) -> None:
    response = client.get("/dashboard", headers={**BROWSER, **login("stranger@example.com")}, follow_redirects=False)

    assert response.status_code == 307
    assert response.headers["location"] == "/not-invited"


def test_browser_store_error_goes_to_unavailable(client: TestClient, login, monkeypatch) -> None:
    def unavailable(self, email):
        return AllowListResult(allowed=False, error="timeout", store_error=True)

    monkeypatch.setattr(AllowListService, "is_email_allowed", unavailable)

    response = client.get("/dashboard", headers={**BROWSER, **login("someone@example.com")}, follow_redirects=False)

    assert response.status_code == 307
    assert response.headers["location"] == "/unavailable"


def test_browser_allowed_identity_passes_through(client: TestClient, seed_user, login) -> None:
    seed_user("member@example.com", Role.VIEWER)

    response = client.get("/user/profile", headers={**BROWSER, **login("member@example.com")}, follow_redirects=False)

    assert response.status_code == 200
    assert response.json()["email"] == "member@example.com"


def test_login_callback_redirects_by_decision(client: TestClient, seed_user, login) -> None:
    seed_user("member@example.com", Role.VIEWER)

    allowed = client.get("/auth/callback", headers=login("member@example.com"), follow_redirects=False)
    denied = client.get("/auth/callback", headers=login("stranger@example.com"), follow_redirects=False)
    anonymous = client.get("/auth/callback", follow_redirects=False)

    assert allowed.headers["location"] == "/dashboard"
    assert denied.headers["location"] == "/not-invited"
    assert anonymous.headers["location"] == "/auth/login"


def test_login_callback_records_login_and_session_events(client: TestClient, services, seed_user, login) -> None:
    seed_user("member@example.com", Role.VIEWER)
    client.get("/auth/callback", headers=login("member@example.com"), follow_redirects=False)

    page = services.audit.get_audit_logs(AuditLogQuery())
    events = sorted(entry.event.value for entry in page.entries)
    assert events == ["login_allow", "session_created"]


def test_browser_with_broken_profile_lookup_is_sent_to_login(
    client: TestClient, identity_provider, monkeypatch
) -> None:
    token = identity_provider.sign_in("member@example.com", claim_email=False)

    def malformed_profile(user_id):
        raise KeyError(0)

    monkeypatch.setattr(identity_provider, "fetch_primary_email", malformed_profile)

    response = client.get("/dashboard", headers={**BROWSER, "Authorization": f"Bearer {token}"}, follow_redirects=False)

    assert response.status_code == 307
    assert response.headers["location"] == "/auth/login"


def test_unexpected_provider_error_counts_as_no_session(client: TestClient, identity_provider, monkeypatch) -> None:
    def broken(credentials):
        raise KeyError("sid")

    monkeypatch.setattr(identity_provider, "get_verified_identity", broken)

    browser = client.get("/dashboard", headers={**BROWSER, "Authorization": "Bearer x"}, follow_redirects=False)
    api = client.get("/user/profile", headers={"Authorization": "Bearer x"})

    assert browser.status_code == 307
    assert browser.headers["location"].startswith("/auth/login?redirect_url=")
    assert api.status_code == 401
