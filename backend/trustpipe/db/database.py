"""
Database configuration and session management.
"""

from functools import lru_cache
from typing import Optional

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from trustpipe.config import get_settings
from trustpipe.utils.logger import get_logger

logger = get_logger(__name__)

# Base class for ORM models
Base = declarative_base()

# JSON column type; JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def build_engine(database_url: str) -> Engine:
    """Create an engine for the given database URL."""
    if database_url.startswith("sqlite"):
        return create_engine(database_url, echo=False, connect_args={"check_same_thread": False})
    return create_engine(
        database_url,
        echo=False,  # Set to True for SQL query logging in development
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,  # Recycle connections every 5 minutes
    )


@lru_cache()
def get_engine() -> Engine:
    """Get the process-wide engine built from settings."""
    return build_engine(get_settings().database_url)


def get_session_factory(engine: Optional[Engine] = None) -> sessionmaker:
    """Create a session factory bound to an engine."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine or get_engine())


def init_db(engine: Optional[Engine] = None) -> None:
    """
    Initialize the database by creating all tables.
    This should be called during worker startup.
    """
    # Register the models on Base.metadata
    from trustpipe.models import content, ledger, user  # noqa: F401

    try:
        logger.info("Initializing database tables")
        Base.metadata.create_all(bind=engine or get_engine())
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.error("Failed to initialize database", error=str(e))
        raise
