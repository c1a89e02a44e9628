"""Edge enforcement: coarse identity check for every non-public request.

This layer is not authoritative. Protected API routes run the full
authorization guard again, so a request that slips past here is still
evaluated and audited downstream.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional
from urllib.parse import urlencode

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from gatekeeper.api.filters import session_credentials
from gatekeeper.core.container import ServiceContainer
from gatekeeper.core.database import session_scope
from gatekeeper.core.identity import normalize_email
from gatekeeper.services.identity_provider import resolve_identity_email

logger = logging.getLogger("gatekeeper.api.middleware")

STATIC_ASSET_PATTERN = re.compile(
    r"\.(?:html?|css|js|jpe?g|webp|png|gif|svg|ttf|woff2?|ico|csv|docx?|xlsx?|zip|webmanifest)$",
    re.IGNORECASE,
)


class PublicPathMatcher:
    """Exact paths, or prefixes when the configured entry ends with ``*``."""

    def __init__(self, patterns: Iterable[str]) -> None:
        self._exact = set()
        self._prefixes: List[str] = []
        for pattern in patterns:
            if pattern.endswith("*"):
                self._prefixes.append(pattern[:-1])
            else:
                self._exact.add(pattern)

    def matches(self, path: str) -> bool:
        if path in self._exact:
            return True
        return any(path.startswith(prefix) for prefix in self._prefixes)


def is_static_asset(path: str) -> bool:
    return bool(STATIC_ASSET_PATTERN.search(path))


def wants_html(request: Request) -> bool:
    return "text/html" in request.headers.get("accept", "")


class EdgeEnforcementMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, public_paths: Optional[Iterable[str]] = None) -> None:  # noqa: ANN001
        super().__init__(app)
        self._configured_paths = list(public_paths) if public_paths is not None else None
        self._matcher: Optional[PublicPathMatcher] = None

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        services: ServiceContainer = request.app.state.services
        path = request.url.path
        if self._is_public(path, services) or is_static_asset(path):
            return await call_next(request)

        rejection = await run_in_threadpool(self._check, request, services)
        if rejection is not None:
            return rejection
        return await call_next(request)

    def _is_public(self, path: str, services: ServiceContainer) -> bool:
        if self._matcher is None:
            patterns = self._configured_paths
            if patterns is None:
                patterns = services.settings.public_paths
            self._matcher = PublicPathMatcher(patterns)
        return self._matcher.matches(path)

    def _check(self, request: Request, services: ServiceContainer) -> Optional[Response]:
        settings = services.settings
        provider = services.identity_provider
        browser = wants_html(request)
        path = request.url.path

        try:
            identity = provider.get_verified_identity(session_credentials(request, settings))
        except Exception:  # noqa: BLE001
            logger.warning("edge_identity_provider_failed", extra={"path": path}, exc_info=True)
            identity = None

        if identity is None:
            if browser:
                logger.info("edge_redirect_login", extra={"path": path})
                query = urlencode({"redirect_url": str(request.url)})
                return RedirectResponse(url=f"{settings.login_path}?{query}", status_code=307)
            logger.info("edge_unauthenticated", extra={"path": path})
            return JSONResponse(status_code=401, content={"detail": "Unauthorized"})

        if not browser or not settings.edge_allowlist_precheck:
            return None

        raw_email = resolve_identity_email(provider, identity)
        email = normalize_email(raw_email) if raw_email else ""
        if not email:
            logger.info("edge_redirect_login", extra={"path": path, "reason": "no_email_in_session"})
            return RedirectResponse(url=settings.login_path, status_code=307)

        with session_scope(services.session_factory) as session:
            result = services.allowlist_service(session).is_email_allowed(email)
        if result.store_error:
            logger.warning("edge_redirect_unavailable", extra={"path": path, "email": email})
            return RedirectResponse(url=settings.unavailable_path, status_code=307)
        if not result.allowed:
            logger.info("edge_redirect_not_invited", extra={"path": path, "email": email})
            return RedirectResponse(url=settings.not_invited_path, status_code=307)
        return None
