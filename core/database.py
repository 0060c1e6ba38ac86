"""
Database Management and Configuration.

This module sets up the asynchronous database layer for the Direct Messaging
API. It uses SQLAlchemy's asyncio support and SQLModel for data modeling.

Key Components:
- `build_engine`: Creates the async engine for a database URL. SQLite (via
  `aiosqlite`) is used for development and tests, PostgreSQL (via `asyncpg`)
  for production.
- `build_session_factory`: An async session factory producing SQLModel
  `AsyncSession` objects that do not expire attributes on commit, so records
  returned by the store stay readable after their session closes.
- `create_db_and_tables`: Startup hook creating every SQLModel table.
- `get_database_info`: Diagnostic information for health checks.

Architectural Design:
- No module-level engine. The application entry point builds one engine per
  process and hands the session factory to the persistence service, which
  keeps tests free to run against an in-memory database.
- Connection Pooling: PostgreSQL engines are pooled with pre-ping; in-memory
  SQLite uses a static pool so every session sees the same database.
"""

import logging
from typing import Any, Dict
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool, StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

# Registers the tables on SQLModel.metadata
from core import models  # noqa: F401
from core.exceptions import DatabaseConnectionError

logger = logging.getLogger(__name__)


def _is_memory_sqlite(url: str) -> bool:
    if not url.startswith("sqlite"):
        return False
    return url.rstrip("/").endswith(":") or ":memory:" in url


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine configured for the database type"""
    if database_url.startswith("sqlite"):
        if _is_memory_sqlite(database_url):
            return create_async_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=echo,
            )
        return create_async_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=AsyncAdaptedQueuePool,
            echo=echo,
        )

    return create_async_engine(
        database_url,
        poolclass=AsyncAdaptedQueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Validate connections before use
        echo=echo,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Async session factory bound to an engine"""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_db_and_tables(engine: AsyncEngine):
    """
    Initialize the database and create all tables.
    Called during application startup.
    """
    try:
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("Chat database tables created successfully")
    except Exception as e:
        logger.error(f"Failed to create chat database tables: {e}")
        raise DatabaseConnectionError("create_tables", str(e)) from e


def _database_type(database_url: str) -> str:
    return "postgresql" if "postgresql" in database_url else "sqlite"


async def get_database_info(engine: AsyncEngine, database_url: str) -> Dict[str, Any]:
    """
    Get basic database information for health checks.
    """
    try:
        async with engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            result.scalar()
            connection_healthy = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        connection_healthy = False

    return {
        "database_url": database_url.split("@")[1]
        if "@" in database_url
        else "masked",  # Hide credentials
        "connection_healthy": connection_healthy,
        "database_type": _database_type(database_url),
        "engine_info": {
            "pool_class": type(engine.pool).__name__,
            "checked_out": getattr(engine.pool, "checkedout", lambda: "unknown")(),
        },
    }
