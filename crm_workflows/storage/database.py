"""Database connection and session management."""

import os
from contextlib import contextmanager
from typing import Iterator, Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Base class for all database models
Base = declarative_base()

# Global engine and session factory, created on first use
_engine: Optional[Engine] = None
SessionLocal: Optional[sessionmaker] = None


def build_engine(database_url: str, echo: bool = False, connect_args: Optional[dict] = None) -> Engine:
    """Create an engine with the settings this application needs for its URL."""
    if connect_args is None:
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
        else:
            connect_args = {}

    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            connect_args=connect_args,
            poolclass=StaticPool,
            echo=echo
        )
    return create_engine(database_url, echo=echo, connect_args=connect_args)


def init_database(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """(Re)initialize the global engine and session factory."""
    global _engine, SessionLocal

    if database_url is None:
        database_url = os.getenv("CRM_WORKFLOWS_DATABASE_URL", "sqlite:///./crm_workflows.db")

    if _engine is not None:
        _engine.dispose()

    _engine = build_engine(database_url, echo=echo)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    return _engine


def get_database_engine() -> Engine:
    """Get the global engine, creating it from the environment if needed."""
    if _engine is None:
        init_database()
    return _engine


def get_session_factory() -> sessionmaker:
    """Get the global session factory, creating it from the environment if needed."""
    if SessionLocal is None:
        init_database()
    return SessionLocal


def reset_database_engine():
    """Reset the global database engine (mainly for testing)."""
    global _engine, SessionLocal
    if _engine:
        _engine.dispose()
    _engine = None
    SessionLocal = None


def create_tables(engine: Optional[Engine] = None):
    """Create all database tables."""
    from . import models  # noqa: F401  registers the tables on Base.metadata
    Base.metadata.create_all(bind=engine or get_database_engine())


def drop_tables(engine: Optional[Engine] = None):
    """Drop all database tables."""
    Base.metadata.drop_all(bind=engine or get_database_engine())


@contextmanager
def session_scope(session_factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """Transactional scope: commit on success, roll back on error."""
    db = (session_factory or get_session_factory())()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
