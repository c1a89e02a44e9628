"""Pre-filters that run ahead of the authorization guard.

None of these take part in the allow/deny decision itself; they only shed
abusive or malformed traffic before it reaches the guard.
"""

from __future__ import annotations

import hmac
import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional

from starlette.requests import Request

from gatekeeper.api.pipeline import NamedStage, PipelineContext, Rejection, StageResult
from gatekeeper.core.config import AppSettings
from gatekeeper.services.guard import RequestInfo
from gatekeeper.services.identity_provider import SessionCredentials

logger = logging.getLogger("gatekeeper.api.filters")

UNKNOWN_CLIENT = "unknown"
STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
CSRF_TOKEN_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


def client_ip(request: Request) -> str:
    """First hop of ``x-forwarded-for``, else ``x-real-ip``, else ``unknown``."""

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return UNKNOWN_CLIENT


def client_identifier(request: Request) -> str:
    user_agent = request.headers.get("user-agent") or UNKNOWN_CLIENT
    return f"{client_ip(request)}-{user_agent[:50]}"


def session_credentials(request: Request, settings: AppSettings) -> Optional[SessionCredentials]:
    authorization = request.headers.get("authorization")
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return SessionCredentials(token=token.strip(), source="header")
    cookie = request.cookies.get(settings.session_cookie_name)
    if cookie:
        return SessionCredentials(token=cookie, source="cookie")
    return None


def request_info_from(request: Request, settings: AppSettings) -> RequestInfo:
    return RequestInfo(
        path=request.url.path,
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        credentials=session_credentials(request, settings),
    )


def rate_limit_stage(kind: str) -> NamedStage:
    def run(context: PipelineContext) -> StageResult:
        limiter = context.rate_limiter
        if limiter is None or not context.settings.rate_limit_enabled:
            return context
        result = limiter.hit(kind, client_identifier(context.request))
        if result.success:
            return context
        logger.warning(
            "rate_limit_exceeded",
            extra={"policy": kind, "path": context.request_info.path, "ip": context.request_info.ip},
        )
        return Rejection(
            status_code=429,
            detail="Too many requests",
            headers={
                "Retry-After": str(result.retry_after),
                "X-RateLimit-Limit": str(result.limit),
                "X-RateLimit-Remaining": str(result.remaining),
                "X-RateLimit-Reset": str(int(result.reset)),
            },
        )

    return NamedStage(name=f"rate_limit:{kind}", run=run)


@dataclass(frozen=True)
class RequestLimits:
    max_body_size: int
    max_url_length: int
    max_headers_size: int


REQUEST_LIMIT_PROFILES: Dict[str, RequestLimits] = {
    "api": RequestLimits(max_body_size=1024 * 1024, max_url_length=2048, max_headers_size=8192),
    "auth": RequestLimits(max_body_size=512 * 1024, max_url_length=1024, max_headers_size=4096),
    "admin": RequestLimits(max_body_size=2 * 1024 * 1024, max_url_length=4096, max_headers_size=16384),
}


def check_request_limits(request: Request, limits: RequestLimits) -> Optional[Rejection]:
    if len(str(request.url)) > limits.max_url_length:
        return Rejection(status_code=414, detail="Request URL too long")

    headers_size = sum(len(key) + len(value) + 4 for key, value in request.headers.items())
    if headers_size > limits.max_headers_size:
        return Rejection(status_code=413, detail="Request headers too large")

    if request.method in BODY_METHODS:
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                declared = int(content_length)
            except ValueError:
                return Rejection(status_code=400, detail="Invalid Content-Length header")
            if declared > limits.max_body_size:
                return Rejection(
                    status_code=413,
                    detail="Request body too large",
                    headers={"Retry-After": "60"},
                )
    return None


def request_limits_stage(profile: str) -> NamedStage:
    limits = REQUEST_LIMIT_PROFILES[profile]

    def run(context: PipelineContext) -> StageResult:
        rejection = check_request_limits(context.request, limits)
        if rejection is not None:
            logger.warning(
                "request_limit_exceeded",
                extra={"profile": profile, "path": context.request_info.path, "status_code": rejection.status_code},
            )
            return rejection
        return context

    return NamedStage(name=f"request_limits:{profile}", run=run)


def csrf_token_valid(header_token: Optional[str], cookie_token: Optional[str]) -> bool:
    if not header_token or not cookie_token:
        return False
    if not CSRF_TOKEN_PATTERN.match(header_token) or not CSRF_TOKEN_PATTERN.match(cookie_token):
        return False
    return hmac.compare_digest(header_token, cookie_token)


def csrf_stage() -> NamedStage:
    """Double-submit check: the header token must equal the cookie token."""

    def run(context: PipelineContext) -> StageResult:
        settings = context.settings
        request = context.request
        if not settings.csrf_enabled or request.method not in STATE_CHANGING_METHODS:
            return context
        header_token = request.headers.get(settings.csrf_header_name)
        cookie_token = request.cookies.get(settings.csrf_cookie_name)
        if csrf_token_valid(header_token, cookie_token):
            return context
        logger.warning(
            "csrf_validation_failed",
            extra={
                "path": context.request_info.path,
                "header_present": bool(header_token),
                "cookie_present": bool(cookie_token),
            },
        )
        return Rejection(status_code=403, detail="CSRF token validation failed")

    return NamedStage(name="csrf", run=run)
