"""Process-wide collaborators, built once at startup and shared by requests."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from gatekeeper.core.config import AppSettings
from gatekeeper.core.database import build_session_factory, create_engine_from_settings
from gatekeeper.services.admin import AdminUserService
from gatekeeper.services.allowlist import AllowListService
from gatekeeper.services.audit import AuditLogger
from gatekeeper.services.cache import AllowListCache, build_allowlist_cache
from gatekeeper.services.guard import AuthorizationGuard
from gatekeeper.services.identity_provider import IdentityProvider, build_identity_provider
from gatekeeper.services.rate_limit import RateLimiter, build_rate_limiter


@dataclass
class ServiceContainer:
    settings: AppSettings
    engine: Engine
    session_factory: sessionmaker[Session]
    allowlist_cache: AllowListCache
    audit: AuditLogger
    identity_provider: IdentityProvider
    rate_limiter: RateLimiter

    @classmethod
    def build(
        cls,
        settings: AppSettings,
        *,
        identity_provider: Optional[IdentityProvider] = None,
        allowlist_cache: Optional[AllowListCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> "ServiceContainer":
        engine = create_engine_from_settings(settings)
        session_factory = build_session_factory(engine)
        return cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            allowlist_cache=allowlist_cache or build_allowlist_cache(settings),
            audit=AuditLogger(session_factory),
            identity_provider=identity_provider or build_identity_provider(settings),
            rate_limiter=rate_limiter or build_rate_limiter(settings),
        )

    def allowlist_service(self, session: Session) -> AllowListService:
        return AllowListService(session, self.allowlist_cache)

    def authorization_guard(self, session: Session) -> AuthorizationGuard:
        return AuthorizationGuard(self.allowlist_service(session), self.audit, self.identity_provider)

    def admin_service(self, session: Session) -> AdminUserService:
        return AdminUserService(self.allowlist_service(session), self.audit)

    def close(self) -> None:
        logger = logging.getLogger("gatekeeper.core.container")
        resources = (
            ("identity_provider", self.identity_provider),
            ("allowlist_cache", self.allowlist_cache),
            ("rate_limiter", self.rate_limiter),
        )
        for name, resource in resources:
            try:
                resource.close()
            except Exception:  # noqa: BLE001
                logger.warning("service_close_failed", extra={"resource": name}, exc_info=True)
        self.engine.dispose()
