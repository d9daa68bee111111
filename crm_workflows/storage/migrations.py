"""Database setup steps run at application startup."""

from typing import Optional
from sqlalchemy import Engine, text

from ..core.logging import get_logger
from .database import create_tables, get_database_engine

logger = get_logger(__name__)


def optimize_sqlite(engine: Engine) -> None:
    """Enable WAL for file-backed SQLite so scheduler threads can read while a job writes."""
    if engine.url.get_backend_name() != "sqlite" or engine.url.database in (None, "", ":memory:"):
        return
    try:
        with engine.connect() as connection:
            connection.execute(text("PRAGMA journal_mode=WAL"))
            connection.commit()
            logger.info("Applied SQLite WAL journal mode")
    except Exception as e:
        logger.error(f"Failed to optimize database: {str(e)}")
        raise


def run_migrations(engine: Optional[Engine] = None) -> None:
    """Create missing tables and indexes, then apply engine-specific settings."""
    engine = engine or get_database_engine()
    logger.info("Running database migrations")
    create_tables(engine)
    optimize_sqlite(engine)
    logger.info("Database migrations completed")
