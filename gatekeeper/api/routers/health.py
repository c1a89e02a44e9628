"""Health check endpoints."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from gatekeeper.api.dependencies import get_services
from gatekeeper.core.container import ServiceContainer

router = APIRouter()


@router.get("/healthz", summary="Liveness probe")
@router.get("/api/health", summary="Liveness probe")
def health_check(services: ServiceContainer = Depends(get_services)) -> dict[str, str]:
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": services.settings.version,
        "environment": services.settings.environment,
    }
