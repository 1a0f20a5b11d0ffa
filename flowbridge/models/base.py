"""Engine and session management for the execution state store.

The store is optional: it is only touched when ``persist_contexts`` is
enabled. Persistence calls arrive from worker threads (``asyncio.to_thread``)
of concurrently running mappings, so lazy initialization is guarded by a lock.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from importlib import import_module
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, close_all_sessions, sessionmaker

from ..utils.config import DatabasePoolSettings, get_settings

DEFAULT_STATE_STORE_URL = "sqlite:///./flowbridge_state.db"
MODEL_MODULES = ("flowbridge.models.execution_record",)


class Base(DeclarativeBase):
    """Declarative base of every state store table."""


_ENGINE: Engine | None = None
_SESSION_FACTORY: sessionmaker[Session] | None = None
_INIT_LOCK = threading.Lock()


def _engine_options(database_url: str, pool_config: DatabasePoolSettings) -> dict[str, Any]:
    if database_url.startswith("sqlite"):
        # SQLite connections are shared across the persistence worker threads.
        return {"connect_args": {"check_same_thread": False}}

    options: dict[str, Any] = {
        "connect_args": {},
        "pool_size": pool_config.pool_size,
        "max_overflow": pool_config.max_overflow,
        "pool_timeout": pool_config.timeout,
        "pool_pre_ping": pool_config.pre_ping,
    }
    if pool_config.recycle_seconds > 0:
        options["pool_recycle"] = pool_config.recycle_seconds
    return options


def _ensure_sqlite_directory(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite" or not url.database or url.database == ":memory:":
        return
    Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)


def resolve_state_store_url(database_url: str | None = None) -> str:
    """Return the explicit URL, the configured one, or the local SQLite default."""

    return database_url or get_settings().state_store_url or DEFAULT_STATE_STORE_URL


def _create_engine(database_url: str | None = None) -> Engine:
    """Build the SQLAlchemy engine for the state store."""

    url = resolve_state_store_url(database_url)
    return create_engine(url, echo=False, **_engine_options(url, get_settings().database))


def get_engine(database_url: str | None = None) -> Engine:
    """Return the shared engine, creating it and its tables on first use."""

    global _ENGINE
    if _ENGINE is not None:
        return _ENGINE
    with _INIT_LOCK:
        if _ENGINE is None:
            url = resolve_state_store_url(database_url)
            _ensure_sqlite_directory(url)
            engine = _create_engine(url)
            for module in MODEL_MODULES:
                import_module(module)
            Base.metadata.create_all(bind=engine)
            _ENGINE = engine
    return _ENGINE


def get_session_factory() -> sessionmaker[Session]:
    global _SESSION_FACTORY
    if _SESSION_FACTORY is None:
        _SESSION_FACTORY = sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False)
    return _SESSION_FACTORY


@contextmanager
def session_scope() -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""

    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def reset_engine() -> None:
    """Dispose of the shared engine so the next call re-reads settings."""

    global _ENGINE, _SESSION_FACTORY
    with _INIT_LOCK:
        if _SESSION_FACTORY is not None:
            close_all_sessions()
        if _ENGINE is not None:
            _ENGINE.dispose()
        _ENGINE = None
        _SESSION_FACTORY = None
