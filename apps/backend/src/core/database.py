"""
Proxmox State Sync - Database Configuration

This module provides async SQLAlchemy setup with connection pooling,
session management and schema bootstrap for the local state store.
"""

from typing import Any
from datetime import UTC, datetime
import logging

from sqlalchemy import JSON, DateTime, MetaData, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool, AsyncAdaptedQueuePool
from sqlalchemy.types import TypeDecorator

from .config import get_settings

# Configure logging
logger = logging.getLogger(__name__)

# Metadata naming convention for constraints and indexes
custom_metadata = MetaData(
    naming_convention={
        "ix": "ix_%(column_0_label)s",
        "uq": "uq_%(table_name)s_%(column_0_name)s",
        "ck": "ck_%(table_name)s_%(constraint_name)s",
        "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
        "pk": "pk_%(table_name)s",
    }
)

# SQLAlchemy declarative base with custom metadata
Base = declarative_base(metadata=custom_metadata)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC.

    SQLite drops tzinfo on storage; values are normalized to UTC on the way in
    and re-tagged on the way out so comparisons stay aware on every backend.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def utcnow() -> datetime:
    return datetime.now(UTC)


# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_async_database_engine(database_url: str | None = None) -> AsyncEngine:
    """
    Create async SQLAlchemy engine for the state store.

    Args:
        database_url: Optional URL override; defaults to the configured URL

    Returns:
        AsyncEngine: Configured async database engine
    """
    settings = get_settings()
    url = make_url(database_url or settings.database.database_url)

    engine_config: dict[str, Any] = {
        "url": url,
        "echo": settings.debug,  # SQL logging in debug mode
        "future": True,
        "pool_pre_ping": True,  # Validate connections before use
    }

    if url.get_backend_name() == "sqlite":
        engine_config["poolclass"] = NullPool
    else:
        engine_config.update(
            {
                "poolclass": AsyncAdaptedQueuePool,
                "pool_size": settings.database.db_pool_size,
                "max_overflow": settings.database.db_max_overflow,
                "pool_timeout": settings.database.db_pool_timeout,
                "pool_recycle": settings.database.db_pool_recycle,
                "connect_args": {
                    "command_timeout": 60,
                    "server_settings": {
                        "application_name": "pve_state_sync",
                        "timezone": "UTC",
                        "lock_timeout": "30s",
                    },
                },
            }
        )
        # Use NullPool for testing if specified
        if settings.environment == "testing":
            engine_config["poolclass"] = NullPool
            for key in ("pool_size", "max_overflow", "pool_timeout", "pool_recycle"):
                engine_config.pop(key)
            logger.info("Using NullPool for testing environment")

    engine = create_async_engine(**engine_config)

    if url.get_backend_name() == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

    logger.info(f"Created async database engine: {url.render_as_string(hide_password=True)}")

    return engine


def create_async_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create async session factory for database operations.

    Args:
        engine: Async SQLAlchemy engine

    Returns:
        async_sessionmaker: Session factory for creating async sessions
    """
    session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Don't expire instances on commit
        autoflush=True,
    )

    logger.info("Created async session factory")
    return session_factory


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables from model metadata (tests and first-run bootstrap)."""
    # Import models so every table is registered on the metadata
    from .. import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured")
