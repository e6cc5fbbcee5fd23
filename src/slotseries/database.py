"""Database utilities for configuring SQLAlchemy engines and sessions."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from threading import Lock

from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

MEMORY_URL = "sqlite+pysqlite:///:memory:"


class DatabaseSettings(BaseModel):
    """Configuration values for the database connection."""

    url: str | None = Field(default=None)
    echo: bool = Field(default=False)
    mode: str = Field(default="memory")

    @classmethod
    def load(cls) -> DatabaseSettings:
        return cls(
            url=os.getenv("SLOTSERIES_DB_URL"),
            echo=os.getenv("SLOTSERIES_DB_ECHO", "false").lower()
            in {"1", "true", "yes", "on"},
            mode=os.getenv("SLOTSERIES_DB_MODE", "memory").lower(),
        )

    @property
    def resolved_url(self) -> str:
        if self.mode == "memory" or not self.url:
            return MEMORY_URL
        return self.url

    @property
    def is_memory(self) -> bool:
        return self.resolved_url == MEMORY_URL


@lru_cache
def get_database_settings() -> DatabaseSettings:
    """Return cached database settings."""
    return DatabaseSettings.load()


_engine_lock = Lock()
_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _ensure_sqlite_directory(url: str) -> None:
    for prefix in ("sqlite:///", "sqlite+pysqlite:///"):
        if url.startswith(prefix) and ":memory:" not in url:
            db_path = Path(url.replace(prefix, "", 1))
            db_path.parent.mkdir(parents=True, exist_ok=True)
            return


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def prepare_schema(engine: Engine) -> None:
    """Create the group, series, instance, and audit tables when missing."""
    from .db_models import Base  # Local import to avoid circular deps

    Base.metadata.create_all(engine)


def build_engine(url: str, *, echo: bool = False) -> Engine:
    """Create an engine for ``url`` with the engine tables in place."""
    if url.startswith("sqlite"):
        _ensure_sqlite_directory(url)
        options: dict[str, object] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url:
            # One shared connection keeps the private in-process database alive.
            options["poolclass"] = StaticPool
        engine = create_engine(url, echo=echo, future=True, **options)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    else:
        engine = create_engine(url, echo=echo, future=True, pool_pre_ping=True)
    prepare_schema(engine)
    return engine


def get_engine() -> Engine:
    """Return the process-wide SQLAlchemy engine, creating it on first use."""
    global _engine

    if _engine is None:
        with _engine_lock:
            if _engine is None:
                settings = get_database_settings()
                engine = build_engine(settings.resolved_url, echo=settings.echo)
                if settings.is_memory:
                    from .defaults import install_sample_tables

                    install_sample_tables(engine)
                logger.bind(mode=settings.mode, memory=settings.is_memory).info(
                    "Database engine initialised"
                )
                _engine = engine
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Return a session factory for creating SQLAlchemy sessions."""
    global _session_factory
    engine = get_engine()

    if _session_factory is None:
        with _engine_lock:
            if _session_factory is None:
                _session_factory = make_session_factory(engine)
    return _session_factory


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def create_session() -> Session:
    """Create a new SQLAlchemy session."""
    return get_session_factory()()


__all__ = [
    "DatabaseSettings",
    "MEMORY_URL",
    "build_engine",
    "create_session",
    "get_database_settings",
    "get_engine",
    "get_session_factory",
    "make_session_factory",
    "prepare_schema",
]
