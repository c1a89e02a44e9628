"""Audit logging service."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy import distinct, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from gatekeeper.models.audit_log import (
    ADMIN_EVENTS,
    AUTH_EVENTS,
    DENIAL_EVENTS,
    SESSION_EVENTS,
    AuditEventType,
    AuditLogEntry,
)
from gatekeeper.models.base import utcnow
from gatekeeper.schemas.audit import (
    AuditDetails,
    AuditEventCreate,
    AuditLogQuery,
    AuditLogResponse,
    AuditStats,
    EventTypeStats,
)

RECENT_DENIALS_LIMIT = 50
MAX_PATH_LENGTH = 2048
MAX_IP_LENGTH = 64


@dataclass(frozen=True)
class AuditWriteResult:
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class AuditLogPage:
    entries: List[AuditLogResponse] = field(default_factory=list)
    total: int = 0
    error: Optional[str] = None


@dataclass(frozen=True)
class AuditStatsResult:
    stats: Optional[AuditStats] = None
    error: Optional[str] = None


class AuditLogger:
    """Persists audit entries and mirrors them to structured logs.

    Each write runs in its own session, so an audit row survives a rolled back
    request transaction and an audit failure never aborts the request.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory
        self._logger = logging.getLogger("gatekeeper.audit")

    def log_event(self, event: AuditEventCreate) -> AuditWriteResult:
        entry = AuditLogEntry(
            email=event.email,
            event=event.event,
            path=event.path,
            ip=event.ip,
            user_agent=event.user_agent,
            ts=utcnow(),
            details=event.serialized_details(),
        )
        session = self._session_factory()
        try:
            session.add(entry)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            self._logger.error(
                "audit_write_failed",
                extra={"event": event.event.value, "email": event.email, "error": str(exc)},
            )
            return AuditWriteResult(success=False, error=str(exc))
        finally:
            session.close()

        self._logger.info(
            "audit_event",
            extra={"audit_id": entry.id, "event": event.event.value, "email": event.email, "path": event.path},
        )
        return AuditWriteResult(success=True)

    def log_auth_event(
        self,
        email: Optional[str],
        event: AuditEventType,
        *,
        path: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[AuditDetails] = None,
    ) -> AuditWriteResult:
        _require_family(event, AUTH_EVENTS, "authorization")
        return self._log(email, event, path, ip, user_agent, details)

    def log_admin_event(
        self,
        email: Optional[str],
        event: AuditEventType,
        *,
        path: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[AuditDetails] = None,
    ) -> AuditWriteResult:
        _require_family(event, ADMIN_EVENTS, "admin")
        return self._log(email, event, path, ip, user_agent, details)

    def log_session_event(
        self,
        email: Optional[str],
        event: AuditEventType,
        *,
        path: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[AuditDetails] = None,
    ) -> AuditWriteResult:
        _require_family(event, SESSION_EVENTS, "session")
        return self._log(email, event, path, ip, user_agent, details)

    def get_audit_logs(self, query: AuditLogQuery) -> AuditLogPage:
        """Return one page of matching entries, newest first, and the total match count."""

        conditions = []
        if query.email:
            conditions.append(AuditLogEntry.email == query.email)
        if query.event is not None:
            conditions.append(AuditLogEntry.event == query.event)
        if query.start_date is not None:
            conditions.append(AuditLogEntry.ts >= query.start_date)
        if query.end_date is not None:
            conditions.append(AuditLogEntry.ts <= query.end_date)

        stmt = (
            select(AuditLogEntry)
            .where(*conditions)
            .order_by(AuditLogEntry.ts.desc(), AuditLogEntry.id.desc())
            .limit(query.limit)
            .offset(query.offset)
        )
        count_stmt = select(func.count()).select_from(AuditLogEntry).where(*conditions)

        with self._session_factory() as session:
            try:
                rows = session.scalars(stmt).all()
                total = session.scalar(count_stmt) or 0
            except SQLAlchemyError as exc:
                self._logger.exception("audit_query_failed", extra={"operation": "get_audit_logs"})
                return AuditLogPage(error=str(exc))
            return AuditLogPage(entries=[AuditLogResponse.model_validate(row) for row in rows], total=int(total))

    def get_audit_stats(self, days: int = 7) -> AuditStatsResult:
        since = utcnow() - timedelta(days=days)
        stmt = (
            select(
                AuditLogEntry.event,
                func.count(AuditLogEntry.id),
                func.count(distinct(AuditLogEntry.email)),
                func.count(distinct(AuditLogEntry.ip)),
            )
            .where(AuditLogEntry.ts >= since)
            .group_by(AuditLogEntry.event)
        )

        with self._session_factory() as session:
            try:
                rows = session.execute(stmt).all()
            except SQLAlchemyError as exc:
                self._logger.exception("audit_query_failed", extra={"operation": "get_audit_stats"})
                return AuditStatsResult(error=str(exc))

        events_by_type: Dict[str, EventTypeStats] = {}
        total_events = 0
        for event, count, unique_emails, unique_ips in rows:
            key = event.value if isinstance(event, AuditEventType) else str(event)
            events_by_type[key] = EventTypeStats(
                count=int(count),
                unique_emails=int(unique_emails),
                unique_ips=int(unique_ips),
            )
            total_events += int(count)
        return AuditStatsResult(
            stats=AuditStats(total_events=total_events, events_by_type=events_by_type, period_days=days)
        )

    def get_recent_denials(self, hours: int = 24) -> AuditLogPage:
        since = utcnow() - timedelta(hours=hours)
        stmt = (
            select(AuditLogEntry)
            .where(AuditLogEntry.event.in_(sorted(DENIAL_EVENTS)), AuditLogEntry.ts >= since)
            .order_by(AuditLogEntry.ts.desc(), AuditLogEntry.id.desc())
            .limit(RECENT_DENIALS_LIMIT)
        )
        with self._session_factory() as session:
            try:
                rows = session.scalars(stmt).all()
            except SQLAlchemyError as exc:
                self._logger.exception("audit_query_failed", extra={"operation": "get_recent_denials"})
                return AuditLogPage(error=str(exc))
            entries = [AuditLogResponse.model_validate(row) for row in rows]
        return AuditLogPage(entries=entries, total=len(entries))

    def _log(
        self,
        email: Optional[str],
        event: AuditEventType,
        path: Optional[str],
        ip: Optional[str],
        user_agent: Optional[str],
        details: Optional[AuditDetails],
    ) -> AuditWriteResult:
        try:
            payload = AuditEventCreate(
                email=email,
                event=event,
                path=path[:MAX_PATH_LENGTH] if path else path,
                ip=_stored_ip(ip),
                user_agent=user_agent,
                details=details,
            )
        except ValueError as exc:
            self._logger.error("audit_write_failed", extra={"event": event.value, "email": email, "error": str(exc)})
            return AuditWriteResult(success=False, error=str(exc))
        return self.log_event(payload)


def _stored_ip(ip: Optional[str]) -> Optional[str]:
    # Client-supplied; cut to the column width so the row is still written.
    if not ip or ip == "unknown":
        return None
    return ip[:MAX_IP_LENGTH]


def _require_family(event: AuditEventType, family: frozenset, label: str) -> None:
    if event not in family:
        raise ValueError(f"{event.value} does not belong to the {label} event family")
