import os
import secrets
import sys
from pathlib import Path
from typing import Callable, Dict, Optional

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("GATE_ENVIRONMENT", "test")
os.environ.setdefault("GATE_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("GATE_AUTO_CREATE_SCHEMA", "true")
os.environ.setdefault("GATE_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("GATE_REDIS_URL", "")
os.environ.setdefault("GATE_REDIS_TOKEN", "")
os.environ.setdefault("GATE_IDP_BASE_URL", "")
os.environ.setdefault("GATE_BOOTSTRAP_ADMIN_EMAIL", "")

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

from gatekeeper.core.config import AppSettings, get_settings

get_settings.cache_clear()

from gatekeeper.core.database import build_session_factory, create_engine_from_settings, session_scope  # noqa: E402
from gatekeeper.main import create_app  # noqa: E402
from gatekeeper.models import Base  # noqa: E402
from gatekeeper.models.allowlist_entry import Role  # noqa: E402
from gatekeeper.services.allowlist import AllowListService  # noqa: E402
from gatekeeper.services.audit import AuditLogger  # noqa: E402
from gatekeeper.services.cache import InMemoryAllowListCache  # noqa: E402
from gatekeeper.services.identity_provider import (  # noqa: E402
    IdentityProviderError,
    SessionCredentials,
    VerifiedIdentity,
)


class FakeIdentityProvider:
    """Maps opaque session tokens to identities without any network calls."""

    def __init__(self) -> None:
        self.sessions: Dict[str, VerifiedIdentity] = {}
        self.profiles: Dict[str, str] = {}
        self.failing = False
        self.closed = False

    def sign_in(self, email: Optional[str], *, claim_email: bool = True, user_id: Optional[str] = None) -> str:
        token = secrets.token_hex(16)
        user_id = user_id or f"user_{token[:8]}"
        if email is not None and not claim_email:
            self.profiles[user_id] = email
        self.sessions[token] = VerifiedIdentity(
            session_id=f"sess_{token[:8]}",
            user_id=user_id,
            email=email if claim_email else None,
        )
        return token

    def get_verified_identity(self, credentials: Optional[SessionCredentials]) -> Optional[VerifiedIdentity]:
        if self.failing:
            raise IdentityProviderError("identity provider unavailable")
        if credentials is None:
            return None
        return self.sessions.get(credentials.token)

    def fetch_primary_email(self, user_id: str) -> Optional[str]:
        return self.profiles.get(user_id)

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def settings() -> AppSettings:
    return AppSettings()


@pytest.fixture()
def engine(settings: AppSettings):
    engine = create_engine_from_settings(settings)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture()
def session(session_factory):
    db_session = session_factory()
    try:
        yield db_session
    finally:
        db_session.close()


@pytest.fixture()
def cache() -> InMemoryAllowListCache:
    return InMemoryAllowListCache(ttl_seconds=300)


@pytest.fixture()
def allowlist(session, cache) -> AllowListService:
    return AllowListService(session, cache)


@pytest.fixture()
def audit_logger(session_factory) -> AuditLogger:
    return AuditLogger(session_factory)


@pytest.fixture()
def identity_provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture()
def app(settings: AppSettings, identity_provider: FakeIdentityProvider, cache: InMemoryAllowListCache):
    return create_app(settings, identity_provider=identity_provider, allowlist_cache=cache)


@pytest.fixture()
def client(app) -> TestClient:  # noqa: ANN001
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def services(app, client):  # noqa: ANN001
    return app.state.services


@pytest.fixture()
def seed_user(services) -> Callable[..., None]:  # noqa: ANN001
    def _seed(
        email: str,
        role: Role = Role.VIEWER,
        *,
        active: bool = True,
        display_name: Optional[str] = None,
    ) -> None:
        with session_scope(services.session_factory) as db_session:
            service = services.allowlist_service(db_session)
            assert service.add_user(email, display_name, role, invited_by="seed@example.com").success
            if not active:
                assert service.toggle_user_status(email).new_status is False

    return _seed


@pytest.fixture()
def login(identity_provider: FakeIdentityProvider) -> Callable[[str], Dict[str, str]]:
    def _login(email: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {identity_provider.sign_in(email)}"}

    return _login


@pytest.fixture()
def csrf(client: TestClient) -> Dict[str, str]:
    token = secrets.token_hex(32)
    client.cookies.set("csrf-token", token)
    return {"x-csrf-token": token}
