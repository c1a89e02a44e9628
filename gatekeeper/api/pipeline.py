"""Ordered request pipeline run in front of protected handlers.

Each stage receives the current context and either returns it (possibly
enriched) or returns a ``Rejection``. The first rejection stops the pipeline
and is raised as ``PipelineRejectedError`` so the exception handlers can render
it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, List, Optional, Union

from starlette.requests import Request

from gatekeeper.core.config import AppSettings
from gatekeeper.models.allowlist_entry import Role
from gatekeeper.services.guard import (
    AccessContext,
    AuthenticatedUser,
    AuthorizationGuard,
    RequestInfo,
    RoleGuard,
)
from gatekeeper.services.rate_limit import RateLimiter

logger = logging.getLogger("gatekeeper.api.pipeline")


@dataclass(frozen=True)
class Rejection:
    status_code: int
    detail: str
    headers: Dict[str, str] = field(default_factory=dict)


class PipelineRejectedError(Exception):
    """Raised when a pipeline stage short-circuits the request."""

    def __init__(self, stage: str, rejection: Rejection) -> None:
        super().__init__(rejection.detail)
        self.stage = stage
        self.rejection = rejection


@dataclass(frozen=True)
class PipelineContext:
    request: Request
    request_info: RequestInfo
    settings: AppSettings
    guard: AuthorizationGuard
    rate_limiter: Optional[RateLimiter] = None
    user: Optional[AuthenticatedUser] = None


StageResult = Union[PipelineContext, Rejection]


@dataclass(frozen=True)
class NamedStage:
    name: str
    run: Callable[[PipelineContext], StageResult]


class RequestPipeline:
    def __init__(self, stages: Iterable[NamedStage]) -> None:
        self._stages: List[NamedStage] = list(stages)

    @property
    def stage_names(self) -> List[str]:
        return [stage.name for stage in self._stages]

    def run(self, context: PipelineContext) -> PipelineContext:
        for stage in self._stages:
            result = stage.run(context)
            if isinstance(result, Rejection):
                logger.info(
                    "pipeline_rejected",
                    extra={
                        "stage": stage.name,
                        "status_code": result.status_code,
                        "path": context.request_info.path,
                    },
                )
                raise PipelineRejectedError(stage.name, result)
            context = result
        return context


def guard_stage(required_role: Optional[Role] = None) -> NamedStage:
    """Authorization guard, optionally composed with a role requirement."""

    role_guard = RoleGuard(required_role) if required_role is not None else None

    def run(context: PipelineContext) -> StageResult:
        outcome = context.guard.evaluate(
            context.request_info,
            context=AccessContext.API,
            role_guard=role_guard,
        )
        if not outcome.allowed:
            return Rejection(status_code=outcome.status_code, detail=outcome.detail or "Forbidden")
        return replace(context, user=outcome.user)

    name = "role_guard" if role_guard is not None else "auth_guard"
    return NamedStage(name=name, run=run)
