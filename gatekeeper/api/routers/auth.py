"""Login callback: the first authorization decision of a browser session."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from gatekeeper.api.dependencies import get_db_session, get_request_info, get_services
from gatekeeper.api.filters import rate_limit_stage, request_limits_stage
from gatekeeper.api.pipeline import PipelineContext, RequestPipeline
from gatekeeper.core.container import ServiceContainer
from gatekeeper.models.audit_log import AuditEventType
from gatekeeper.schemas.audit import SessionDetails
from gatekeeper.services.guard import AccessContext, AccessDecision, RequestInfo

router = APIRouter()
logger = logging.getLogger("gatekeeper.api.auth")

CALLBACK_PIPELINE = RequestPipeline(
    [rate_limit_stage("auth"), rate_limit_stage("login"), request_limits_stage("auth")]
)


@router.get("/callback", response_class=RedirectResponse, status_code=307)
def login_callback(
    request: Request,
    request_info: RequestInfo = Depends(get_request_info),
    services: ServiceContainer = Depends(get_services),
    session: Session = Depends(get_db_session),
) -> RedirectResponse:
    settings = services.settings
    guard = services.authorization_guard(session)
    CALLBACK_PIPELINE.run(
        PipelineContext(
            request=request,
            request_info=request_info,
            settings=settings,
            guard=guard,
            rate_limiter=services.rate_limiter,
        )
    )

    outcome = guard.evaluate(request_info, context=AccessContext.LOGIN)
    if outcome.decision is AccessDecision.ALLOW and outcome.user is not None:
        services.audit.log_session_event(
            outcome.user.email,
            AuditEventType.SESSION_CREATED,
            path=request_info.path,
            ip=request_info.ip,
            user_agent=request_info.user_agent,
            details=SessionDetails(session_id=outcome.user.session_id, reason="login"),
        )
        target = settings.post_login_path
    elif outcome.decision is AccessDecision.DENY_FORBIDDEN:
        target = settings.not_invited_path
    elif outcome.decision is AccessDecision.DENY_ERROR:
        target = settings.unavailable_path
    else:
        target = settings.login_path

    logger.info("login_callback_redirect", extra={"decision": outcome.decision.value, "target": target})
    return RedirectResponse(url=target, status_code=307)
