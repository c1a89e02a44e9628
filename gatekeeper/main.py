"""FastAPI application factory."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from gatekeeper.api.error_handlers import register_exception_handlers
from gatekeeper.api.middleware import EdgeEnforcementMiddleware
from gatekeeper.api.routers import get_api_router
from gatekeeper.core.config import AppSettings, get_settings
from gatekeeper.core.container import ServiceContainer
from gatekeeper.core.database import session_scope
from gatekeeper.core.logging import configure_logging
from gatekeeper.models import Base
from gatekeeper.services.cache import AllowListCache
from gatekeeper.services.identity_provider import IdentityProvider
from gatekeeper.services.rate_limit import RateLimiter

logger = logging.getLogger("gatekeeper.main")


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: D401
    """Application lifespan context for startup/shutdown hooks."""

    services: ServiceContainer = app.state.services
    settings = services.settings
    if settings.auto_create_schema:
        Base.metadata.create_all(bind=services.engine)

    if settings.bootstrap_admin_email:
        with session_scope(services.session_factory) as session:
            services.allowlist_service(session).ensure_bootstrap_admin(
                settings.bootstrap_admin_email, settings.bootstrap_admin_name
            )

    logger.info("application_started", extra={"environment": settings.environment})
    try:
        yield
    finally:
        services.close()


def create_app(
    settings: AppSettings | None = None,
    *,
    identity_provider: Optional[IdentityProvider] = None,
    allowlist_cache: Optional[AllowListCache] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """Application factory."""

    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="Allow-List Gate",
        version=settings.version,
        lifespan=lifespan,
    )
    app.state.services = ServiceContainer.build(
        settings,
        identity_provider=identity_provider,
        allowlist_cache=allowlist_cache,
        rate_limiter=rate_limiter,
    )

    register_exception_handlers(app)
    app.add_middleware(EdgeEnforcementMiddleware)
    app.include_router(get_api_router())
    return app


app = create_app()
