"""Allow-list store access with a read-through, explicitly invalidated cache."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import delete, not_, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gatekeeper.core.identity import normalize_email
from gatekeeper.models.allowlist_entry import AllowListEntry, Role
from gatekeeper.models.base import utcnow
from gatekeeper.schemas.allowlist import AllowListRecord
from gatekeeper.services.cache import AllowListCache, AllowListCacheError

NOT_FOUND_ERROR = "Email not found in allow list"
USER_NOT_FOUND_ERROR = "User not found"
EMAIL_REQUIRED_ERROR = "Email is required"


@dataclass(frozen=True)
class AllowListResult:
    """Outcome of an allow-list check.

    ``entry`` is set whenever a row exists, so an inactive identity can be told
    apart from an unknown one. ``store_error`` marks a backing-store failure as
    opposed to a normal negative answer.
    """

    allowed: bool
    entry: Optional[AllowListRecord] = None
    error: Optional[str] = None
    store_error: bool = False


@dataclass(frozen=True)
class MutationResult:
    success: bool
    error: Optional[str] = None
    new_status: Optional[bool] = None
    not_found: bool = False
    removed: Optional[bool] = None


@dataclass(frozen=True)
class EntryListResult:
    entries: List[AllowListRecord] = field(default_factory=list)
    error: Optional[str] = None


class AllowListService:
    """Sole reader and writer of ``auth_allowed_emails``.

    Writes commit before the cache entry for the affected email is dropped.
    """

    def __init__(self, session: Session, cache: AllowListCache) -> None:
        self._session = session
        self._cache = cache
        self._logger = logging.getLogger("gatekeeper.services.allowlist")

    def is_email_allowed(self, email: str) -> AllowListResult:
        normalized = normalize_email(email)
        if not normalized:
            return AllowListResult(allowed=False, error=EMAIL_REQUIRED_ERROR)

        cached = self._cache_get(normalized)
        if cached is not None:
            self._logger.debug("allowlist_cache_hit", extra={"email": normalized, "active": cached.active})
            return AllowListResult(allowed=cached.active, entry=cached)

        try:
            row = self._session.get(AllowListEntry, normalized, populate_existing=True)
            record = AllowListRecord.model_validate(row) if row is not None else None
        except SQLAlchemyError as exc:
            return AllowListResult(allowed=False, error=self._store_failure("is_email_allowed", normalized, exc), store_error=True)

        if record is None:
            return AllowListResult(allowed=False, error=NOT_FOUND_ERROR)

        self._cache_set(normalized, record)
        return AllowListResult(allowed=record.active, entry=record)

    def add_user(
        self,
        email: str,
        display_name: Optional[str],
        role: Role = Role.VIEWER,
        invited_by: str = "system",
    ) -> MutationResult:
        """Create the entry, or overwrite name/role/inviter of an existing one."""

        normalized = normalize_email(email)
        if not normalized:
            return MutationResult(success=False, error=EMAIL_REQUIRED_ERROR)

        values = {
            "email": normalized,
            "display_name": display_name or None,
            "role": Role(role),
            "invited_by": normalize_email(invited_by) if invited_by else None,
        }
        try:
            self._upsert(values)
            self._session.commit()
        except SQLAlchemyError as exc:
            return MutationResult(success=False, error=self._store_failure("add_user", normalized, exc))

        self._logger.info(
            "allowlist_user_upserted",
            extra={"email": normalized, "role": values["role"].value, "invited_by": values["invited_by"]},
        )
        self._cache_invalidate(normalized)
        return MutationResult(success=True)

    def remove_user(self, email: str) -> MutationResult:
        normalized = normalize_email(email)
        if not normalized:
            return MutationResult(success=False, error=EMAIL_REQUIRED_ERROR)

        try:
            result = self._session.execute(
                delete(AllowListEntry).where(AllowListEntry.email == normalized)
            )
            self._session.commit()
        except SQLAlchemyError as exc:
            return MutationResult(success=False, error=self._store_failure("remove_user", normalized, exc))

        removed = bool(result.rowcount)
        self._logger.info("allowlist_user_removed", extra={"email": normalized, "removed": removed})
        self._cache_invalidate(normalized)
        return MutationResult(success=True, removed=removed)

    def toggle_user_status(self, email: str) -> MutationResult:
        """Flip ``active`` in one conditional UPDATE and report the stored value."""

        normalized = normalize_email(email)
        if not normalized:
            return MutationResult(success=False, error=EMAIL_REQUIRED_ERROR)

        stmt = (
            update(AllowListEntry)
            .where(AllowListEntry.email == normalized)
            .values(active=not_(AllowListEntry.active), updated_at=utcnow())
            .returning(AllowListEntry.active)
            .execution_options(synchronize_session=False)
        )
        try:
            new_status = self._session.execute(stmt).scalar_one_or_none()
            self._session.commit()
        except SQLAlchemyError as exc:
            return MutationResult(success=False, error=self._store_failure("toggle_user_status", normalized, exc))

        if new_status is None:
            return MutationResult(success=False, error=USER_NOT_FOUND_ERROR, not_found=True)

        self._logger.info("allowlist_user_toggled", extra={"email": normalized, "active": bool(new_status)})
        self._cache_invalidate(normalized)
        return MutationResult(success=True, new_status=bool(new_status))

    def get_all_users(self) -> EntryListResult:
        stmt = select(AllowListEntry).order_by(AllowListEntry.created_at.desc(), AllowListEntry.email)
        return self._list("get_all_users", stmt)

    def search_users(self, term: str) -> EntryListResult:
        """Case-insensitive substring match on email or display name."""

        pattern = f"%{_escape_like(term.strip())}%"
        stmt = (
            select(AllowListEntry)
            .where(
                or_(
                    AllowListEntry.email.ilike(pattern, escape="\\"),
                    AllowListEntry.display_name.ilike(pattern, escape="\\"),
                )
            )
            .order_by(AllowListEntry.created_at.desc(), AllowListEntry.email)
        )
        return self._list("search_users", stmt)

    def ensure_bootstrap_admin(self, email: str, display_name: Optional[str]) -> bool:
        """Insert an active admin row unless the email is already listed."""

        normalized = normalize_email(email)
        if not normalized or self._session.get(AllowListEntry, normalized) is not None:
            return False
        self._session.add(
            AllowListEntry(
                email=normalized,
                display_name=display_name,
                role=Role.ADMIN,
                invited_by="system",
                active=True,
            )
        )
        self._session.commit()
        self._cache_invalidate(normalized)
        self._logger.info("allowlist_bootstrap_admin_created", extra={"email": normalized})
        return True

    def _upsert(self, values: dict) -> None:
        dialect = self._session.get_bind().dialect.name
        updates = {
            "display_name": values["display_name"],
            "role": values["role"],
            "invited_by": values["invited_by"],
            "updated_at": utcnow(),
        }
        if dialect in ("postgresql", "sqlite"):
            insert = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert(AllowListEntry).values(**values, active=True)
            stmt = stmt.on_conflict_do_update(index_elements=[AllowListEntry.email], set_=updates)
            self._session.execute(stmt)
            return

        existing = self._session.scalar(
            select(AllowListEntry).where(AllowListEntry.email == values["email"]).with_for_update()
        )
        if existing is None:
            self._session.add(AllowListEntry(**values, active=True))
        else:
            for key, value in updates.items():
                setattr(existing, key, value)
        self._session.flush()

    def _list(self, operation: str, stmt) -> EntryListResult:  # noqa: ANN001
        try:
            rows = list(self._session.scalars(stmt))
            return EntryListResult(entries=[AllowListRecord.model_validate(row) for row in rows])
        except SQLAlchemyError as exc:
            return EntryListResult(error=self._store_failure(operation, None, exc))

    def _store_failure(self, operation: str, email: Optional[str], exc: SQLAlchemyError) -> str:
        self._session.rollback()
        self._logger.exception(
            "allowlist_store_error",
            extra={"operation": operation, "email": email},
        )
        return str(exc.orig) if getattr(exc, "orig", None) is not None else str(exc)

    def _cache_get(self, email: str) -> Optional[AllowListRecord]:
        try:
            return self._cache.get(email)
        except AllowListCacheError:
            self._logger.warning("allowlist_cache_read_failed", extra={"email": email}, exc_info=True)
            return None

    def _cache_set(self, email: str, record: AllowListRecord) -> None:
        try:
            self._cache.set(email, record)
        except AllowListCacheError:
            self._logger.warning("allowlist_cache_write_failed", extra={"email": email}, exc_info=True)

    def _cache_invalidate(self, email: str) -> None:
        try:
            self._cache.invalidate(email)
        except AllowListCacheError:
            # The stale snapshot expires with the TTL.
            self._logger.error("allowlist_cache_invalidate_failed", extra={"email": email}, exc_info=True)


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
