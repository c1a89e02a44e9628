"""Database engine and session management."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator
from urllib.parse import urlparse

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from gatekeeper.core.config import AppSettings


def _resolve_sqlite_path(database_url: str) -> None:
    """Ensure the parent directory for a SQLite database exists."""

    parsed = urlparse(database_url)
    if parsed.scheme != "sqlite":
        return

    if parsed.path in ("", ":memory:", "/:memory:"):
        return

    # The third slash of sqlite:/// separates the (empty) host from the file path.
    db_path = Path(parsed.path[1:])
    db_dir = db_path.expanduser().resolve().parent
    db_dir.mkdir(parents=True, exist_ok=True)


def create_engine_from_settings(settings: AppSettings) -> Engine:
    """Build the store engine with per-call timeouts taken from settings."""

    url = settings.database_url
    timeout = settings.store_timeout_seconds
    if url.startswith("sqlite"):
        _resolve_sqlite_path(url)
        engine_kwargs: dict[str, object] = {
            "echo": settings.sql_echo,
            "connect_args": {"check_same_thread": False, "timeout": timeout},
        }
        if url.endswith(":memory:") or url == "sqlite://":
            engine_kwargs["poolclass"] = StaticPool
        return create_engine(url, **engine_kwargs)

    connect_args: dict[str, object] = {}
    if url.startswith("postgresql"):
        connect_args = {
            "connect_timeout": max(int(timeout), 1),
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        }
    return create_engine(
        url,
        echo=settings.sql_echo,
        pool_pre_ping=True,
        pool_timeout=timeout,
        connect_args=connect_args,
    )


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
        class_=Session,
    )


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """Transactional scope that commits on success and rolls back on error."""

    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_session(factory: sessionmaker[Session]) -> Iterator[Session]:
    """Request-scoped session for the FastAPI dependency."""

    with session_scope(factory) as session:
        yield session
