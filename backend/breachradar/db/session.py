"""
Database session management with SQLAlchemy 2.0.

Provides lazy engine configuration, session creation, and context managers
for safe database access with automatic transaction rollback. Services take a
``session_scope`` callable (defaulting to ``get_db_context``) so training
threads and tests can open their own sessions.
"""

import threading
from contextlib import contextmanager
from typing import Callable, ContextManager, Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker, scoped_session
from loguru import logger

from breachradar.config import settings
from breachradar.utils.errors import DatabaseError


SessionScope = Callable[[], ContextManager[Session]]

_engine: Optional[Engine] = None
_engine_lock = threading.Lock()

# Bound on first use by get_engine()
SessionLocal = scoped_session(
    sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,  # Prevent lazy load issues after commit
    )
)


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINT works on the pysqlite driver."""

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str, echo: bool = False, **kwargs) -> Engine:
    """Create an engine with pooling options suited to the database dialect."""
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            **kwargs,
        )
        _enable_sqlite_savepoints(engine)
        return engine

    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=1800,
        echo=echo,
        **kwargs,
    )


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                _engine = build_engine(settings.database_url, echo=settings.debug)
                SessionLocal.configure(bind=_engine)
    return _engine


def init_db(engine: Optional[Engine] = None) -> None:
    """Initialize database schema (create all tables).

    Idempotent: only creates tables and indexes that don't exist.
    """
    from breachradar.db.models import Base

    Base.metadata.create_all(bind=engine or get_engine(), checkfirst=True)
    logger.info("Database schema initialized successfully")


def get_db() -> Session:
    """
    Get a database session.

    Caller is responsible for closing the session with close_db()
    or using get_db_context() context manager.
    """
    get_engine()
    return SessionLocal()


def close_db() -> None:
    """Close and remove the current database session."""
    SessionLocal.remove()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """
    Get a database session as a context manager.

    Usage:
        with get_db_context() as db:
            model = db.get(MLModel, model_id)

    The session is automatically committed on success and rolled back on error.
    """
    db = get_db()
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Database transaction failed: {e}")
        raise
    finally:
        close_db()


@contextmanager
def get_db_transaction() -> Generator[Session, None, None]:
    """
    Get a database session with explicit transaction control.

    Failures are rolled back and re-raised as DatabaseError.
    """
    db = get_db()
    try:
        yield db
        db.commit()
        logger.debug("Database transaction committed")
    except Exception as e:
        db.rollback()
        logger.error(f"Database transaction rolled back: {e}")
        raise DatabaseError(f"Transaction failed: {e}")
    finally:
        close_db()


def make_session_scope(factory: sessionmaker) -> SessionScope:
    """Build a commit/rollback session scope over an explicit session factory."""

    @contextmanager
    def session_scope() -> Generator[Session, None, None]:
        db = factory()
        try:
            yield db
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Database transaction failed: {e}")
            raise
        finally:
            db.close()

    return session_scope
