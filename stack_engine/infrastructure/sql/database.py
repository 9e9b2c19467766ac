#stack_engine/infrastructure/sql/database.py

"""SQLAlchemy database setup and session management."""

from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from stack_engine.config import settings


# ============================================
# Base for ORM models
# ============================================
Base = declarative_base()


# ============================================
# Engine configuration
# ============================================
def create_db_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """Create a SQLAlchemy engine. SQLite URLs get thread-sharing and foreign keys on."""

    url = database_url or settings.database_url
    is_sqlite = url.startswith("sqlite")

    engine = create_engine(
        url,
        echo=settings.echo_sql if echo is None else echo,
        pool_pre_ping=True,  # Verify connections before using
        connect_args={"check_same_thread": False} if is_sqlite else {},
    )

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


# ============================================
# Session factory function
# ============================================
def get_session_factory(engine_instance: Engine) -> sessionmaker:
    """Session factory bound to the given engine."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine_instance,
        expire_on_commit=False
    )


# ============================================
# Session management
# ============================================
@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Transactional scope: commit on success, roll back on error.

    Usage:
        with session_scope(factory) as session:
            session.add(orm)
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


# ============================================
# Database initialization
# ============================================
def init_db(engine_instance: Engine) -> None:
    """Create all tables."""
    # Register the models on Base.metadata before create_all
    from stack_engine.infrastructure.sql import models  # noqa: F401

    Base.metadata.create_all(bind=engine_instance)

