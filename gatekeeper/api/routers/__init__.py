"""Router registrations."""

from fastapi import APIRouter

from gatekeeper.api.routers import admin_users, audit, auth, health, user


def get_api_router() -> APIRouter:
    router = APIRouter()
    router.include_router(health.router, tags=["health"])
    router.include_router(admin_users.router, prefix="/admin/users", tags=["admin"])
    router.include_router(audit.router, prefix="/admin/audit", tags=["audit"])
    router.include_router(user.router, prefix="/user", tags=["user"])
    router.include_router(auth.router, prefix="/auth", tags=["auth"])
    return router
