"""SQLAlchemy engine and session factory."""

from __future__ import annotations

from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from .config import DatabaseSettings, get_settings


def _ensure_sqlite_parent(url: str) -> None:
    database = make_url(url).database
    if database and database != ":memory:":
        Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)


def create_db_engine(settings: Optional[DatabaseSettings] = None) -> Engine:
    """Build an engine for ``settings``; SQLite files get WAL mode and a busy timeout."""

    settings = settings or get_settings()
    if not settings.is_sqlite:
        return create_engine(settings.url, echo=settings.echo, pool_size=settings.pool_size, future=True)

    _ensure_sqlite_parent(settings.url)
    engine = create_engine(
        settings.url,
        echo=settings.echo,
        future=True,
        connect_args={"check_same_thread": False, "timeout": settings.busy_timeout_seconds},
    )

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, _record):  # pragma: no cover - driver hook
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


@lru_cache
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache
def get_session_factory() -> sessionmaker:
    return make_session_factory(get_engine())


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
