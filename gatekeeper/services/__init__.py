"""Business logic service layer."""

from gatekeeper.services.admin import AdminUserService  # noqa: F401
from gatekeeper.services.allowlist import AllowListService  # noqa: F401
from gatekeeper.services.audit import AuditLogger  # noqa: F401
from gatekeeper.services.guard import AuthorizationGuard, RoleGuard  # noqa: F401
