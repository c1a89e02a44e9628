"""Allow-list administration endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from gatekeeper.api.dependencies import get_admin_service, get_request_info, require_admin
from gatekeeper.schemas.allowlist import AddUserRequest, MutationResponse, ToggleResponse, UserListResponse
from gatekeeper.services.admin import AdminUserService
from gatekeeper.services.guard import AuthenticatedUser, RequestInfo

router = APIRouter()


@router.get("", response_model=UserListResponse)
def list_users(
    search: Optional[str] = Query(default=None, max_length=255),
    admin: AuthenticatedUser = Depends(require_admin),
    service: AdminUserService = Depends(get_admin_service),
) -> UserListResponse:
    result = service.list_users(search)
    if result.error:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result.error)
    return UserListResponse(users=result.entries)


@router.post("", response_model=MutationResponse)
def add_user(
    payload: AddUserRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    service: AdminUserService = Depends(get_admin_service),
    request_info: RequestInfo = Depends(get_request_info),
) -> MutationResponse:
    result = service.add_user(admin, payload, request_info)
    if not result.success:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result.error)
    return MutationResponse(success=True, message="User added successfully")


@router.patch("/{email}/toggle", response_model=ToggleResponse)
def toggle_user(
    email: str,
    admin: AuthenticatedUser = Depends(require_admin),
    service: AdminUserService = Depends(get_admin_service),
    request_info: RequestInfo = Depends(get_request_info),
) -> ToggleResponse:
    result = service.toggle_user(admin, email, request_info)
    if result.not_found:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.error)
    if not result.success or result.new_status is None:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result.error)
    return ToggleResponse(success=True, message="User status updated successfully", newStatus=result.new_status)


@router.delete("/{email}", response_model=MutationResponse)
def remove_user(
    email: str,
    admin: AuthenticatedUser = Depends(require_admin),
    service: AdminUserService = Depends(get_admin_service),
    request_info: RequestInfo = Depends(get_request_info),
) -> MutationResponse:
    result = service.remove_user(admin, email, request_info)
    if not result.success:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result.error)
    return MutationResponse(success=True, message="User removed successfully")
