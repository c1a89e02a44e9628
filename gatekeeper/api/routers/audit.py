"""Audit log query endpoints for administrators."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from gatekeeper.api.dependencies import get_audit_logger, require_admin
from gatekeeper.models.audit_log import AuditEventType
from gatekeeper.schemas.audit import (
    AuditLogListResponse,
    AuditLogQuery,
    AuditStatsResponse,
    Pagination,
    RecentDenialsResponse,
)
from gatekeeper.services.audit import AuditLogger
from gatekeeper.services.guard import AuthenticatedUser

router = APIRouter()


@router.get("", response_model=AuditLogListResponse)
def query_audit_logs(
    email: Optional[str] = Query(default=None, max_length=320),
    event: Optional[AuditEventType] = Query(default=None),
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    admin: AuthenticatedUser = Depends(require_admin),
    audit: AuditLogger = Depends(get_audit_logger),
) -> AuditLogListResponse:
    query = AuditLogQuery(
        email=email,
        event=event,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    page = audit.get_audit_logs(query)
    if page.error:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=page.error)
    return AuditLogListResponse(
        logs=page.entries,
        total=page.total,
        pagination=Pagination(
            limit=query.limit,
            offset=query.offset,
            total=page.total,
            pages=math.ceil(page.total / query.limit),
        ),
    )


@router.get("/stats", response_model=AuditStatsResponse)
def audit_stats(
    days: int = Query(default=7, ge=1, le=365),
    admin: AuthenticatedUser = Depends(require_admin),
    audit: AuditLogger = Depends(get_audit_logger),
) -> AuditStatsResponse:
    result = audit.get_audit_stats(days)
    if result.error or result.stats is None:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result.error)
    return AuditStatsResponse(stats=result.stats)


@router.get("/denials", response_model=RecentDenialsResponse)
def recent_denials(
    hours: int = Query(default=24, ge=1, le=24 * 30),
    admin: AuthenticatedUser = Depends(require_admin),
    audit: AuditLogger = Depends(get_audit_logger),
) -> RecentDenialsResponse:
    page = audit.get_recent_denials(hours)
    if page.error:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=page.error)
    return RecentDenialsResponse(denials=page.entries)
