from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session as SessionBase, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings


def normalize_database_url(url: str) -> str:
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def create_db_engine(url: str) -> Engine:
    engine_url = normalize_database_url(url)
    if not engine_url.startswith("sqlite"):
        return create_engine(engine_url, future=True, pool_pre_ping=True)

    if engine_url.startswith("sqlite:///") and ":memory:" not in engine_url:
        # Ensure directory exists for SQLite db
        Path(engine_url.replace("sqlite:///", "", 1)).parent.mkdir(parents=True, exist_ok=True)

    engine_kwargs: dict[str, object] = {"connect_args": {"check_same_thread": False}, "future": True}
    if ":memory:" in engine_url:
        # one shared connection so every session and thread sees the same database
        engine_kwargs["poolclass"] = StaticPool
    engine = create_engine(engine_url, **engine_kwargs)

    # pysqlite starts transactions lazily and ignores SAVEPOINT semantics unless
    # the driver's own transaction handling is switched off.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):  # type: ignore[unused-variable]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):  # type: ignore[unused-variable]
        conn.exec_driver_sql("BEGIN")

    return engine


engine = create_db_engine(settings.database_url)


class ProjectSession(SessionBase):
    """Session carrying the caller's project scope in ``info``."""


SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    future=True,
    class_=ProjectSession,
)

Base = declarative_base()


@contextmanager
def session_scope() -> Generator[ProjectSession, None, None]:
    session: ProjectSession = SessionLocal()  # type: ignore[assignment]
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_session() -> Generator[ProjectSession, None, None]:
    with session_scope() as session:
        yield session


def init_db() -> None:
    from . import orm_models  # noqa: F401
    from .project_scoping import setup_project_events
    from .services.auth import ensure_default_admin

    setup_project_events(ProjectSession)

    Base.metadata.create_all(bind=engine)

    with session_scope() as session:
        ensure_default_admin(session)
