"""Dependency injection helpers for FastAPI routes."""

from __future__ import annotations

from typing import Iterator

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from gatekeeper.api.filters import csrf_stage, rate_limit_stage, request_info_from, request_limits_stage
from gatekeeper.api.pipeline import PipelineContext, RequestPipeline, guard_stage
from gatekeeper.core.container import ServiceContainer
from gatekeeper.core.database import get_session
from gatekeeper.models.allowlist_entry import Role
from gatekeeper.services.admin import AdminUserService
from gatekeeper.services.allowlist import AllowListService
from gatekeeper.services.audit import AuditLogger
from gatekeeper.services.guard import AuthenticatedUser, RequestInfo

USER_PIPELINE = RequestPipeline(
    [
        rate_limit_stage("api"),
        request_limits_stage("api"),
        guard_stage(),
    ]
)

ADMIN_PIPELINE = RequestPipeline(
    [
        rate_limit_stage("admin"),
        request_limits_stage("admin"),
        csrf_stage(),
        guard_stage(Role.ADMIN),
    ]
)


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_db_session(services: ServiceContainer = Depends(get_services)) -> Iterator[Session]:
    yield from get_session(services.session_factory)


def get_request_info(request: Request, services: ServiceContainer = Depends(get_services)) -> RequestInfo:
    return request_info_from(request, services.settings)


def get_allowlist_service(
    services: ServiceContainer = Depends(get_services),
    session: Session = Depends(get_db_session),
) -> AllowListService:
    return services.allowlist_service(session)


def get_admin_service(
    services: ServiceContainer = Depends(get_services),
    session: Session = Depends(get_db_session),
) -> AdminUserService:
    return services.admin_service(session)


def get_audit_logger(services: ServiceContainer = Depends(get_services)) -> AuditLogger:
    return services.audit


def _run_pipeline(
    pipeline: RequestPipeline,
    request: Request,
    request_info: RequestInfo,
    services: ServiceContainer,
    session: Session,
) -> AuthenticatedUser:
    context = PipelineContext(
        request=request,
        request_info=request_info,
        settings=services.settings,
        guard=services.authorization_guard(session),
        rate_limiter=services.rate_limiter,
    )
    context = pipeline.run(context)
    if context.user is None:
        raise RuntimeError(f"Pipeline {pipeline.stage_names} finished without an authenticated user")
    return context.user


def require_user(
    request: Request,
    request_info: RequestInfo = Depends(get_request_info),
    services: ServiceContainer = Depends(get_services),
    session: Session = Depends(get_db_session),
) -> AuthenticatedUser:
    return _run_pipeline(USER_PIPELINE, request, request_info, services, session)


def require_admin(
    request: Request,
    request_info: RequestInfo = Depends(get_request_info),
    services: ServiceContainer = Depends(get_services),
    session: Session = Depends(get_db_session),
) -> AuthenticatedUser:
    return _run_pipeline(ADMIN_PIPELINE, request, request_info, services, session)
