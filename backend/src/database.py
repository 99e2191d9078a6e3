"""Database session factory and configuration.

Provides database connectivity and session management for the retention
workers. Sessions are created per sweep candidate so that one user's
transaction never shares state with another's.
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from config import get_settings
from models.base import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: Optional[str] = None, **kwargs) -> Engine:
    """Create an engine for the given URL (defaults to DATABASE_URL).

    Pool settings only apply to PostgreSQL (not SQLite). On SQLite the
    foreign key pragma is switched on for every connection so that delete
    ordering is enforced the same way it is in production.
    """
    url = database_url or get_settings().DATABASE_URL

    engine_kwargs = {
        "pool_pre_ping": True,  # Verify connections before using
        "echo": False,
    }
    if not url.startswith("sqlite"):
        engine_kwargs["pool_size"] = 5
        engine_kwargs["max_overflow"] = 10
    engine_kwargs.update(kwargs)

    engine = create_engine(url, **engine_kwargs)

    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)

    return engine


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_session_factory(engine: Engine) -> sessionmaker:
    """Create the session factory used by services and sweeps."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Context manager for database sessions.

    Usage:
        with session_scope(SessionLocal) as session:
            session.query(User).all()

    Automatically commits on success, rolls back on exception.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Engine, session_factory: sessionmaker) -> None:
    """Create all tables and the system sentinel user.

    Safe to call repeatedly: create_all skips existing tables and the
    sentinel user is only inserted when missing.
    """
    # Import models so every table is registered on Base.metadata
    import models  # noqa: F401
    from models.user import ensure_system_user

    Base.metadata.create_all(bind=engine)

    with session_scope(session_factory) as session:
        ensure_system_user(session)

    logger.info("Database schema initialized")
