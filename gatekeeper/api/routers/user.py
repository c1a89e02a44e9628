"""Endpoints for any allow-listed identity."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from gatekeeper.api.dependencies import require_user
from gatekeeper.schemas.allowlist import ProfileResponse
from gatekeeper.services.guard import AuthenticatedUser

router = APIRouter()


@router.get("/profile", response_model=ProfileResponse)
def get_profile(user: AuthenticatedUser = Depends(require_user)) -> ProfileResponse:
    return ProfileResponse(email=user.email, display_name=user.display_name, role=user.role)
