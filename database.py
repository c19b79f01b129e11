"""
Database connection and session management for Identity Reconciliation API
This module owns the SQLAlchemy async engine and session factory behind an
explicit handle with an init/teardown lifecycle. Supports PostgreSQL (asyncpg)
deployments with connection pooling, and SQLite (aiosqlite) for local runs.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config import settings
from models.base import Base

# Configure logging
logger = logging.getLogger(__name__)


def _hide_credentials(database_url: str) -> str:
    if "@" not in database_url:
        return database_url
    return f"{database_url.split('@')[0].split('://')[0]}://[HIDDEN]@{database_url.split('@', 1)[1]}"


class DatabaseManager:
    """
    Database connection manager that handles SQLAlchemy engine,
    session creation, and connection lifecycle management

    Create one per process (or per test) and call dispose() on shutdown.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        isolation_level: Optional[str] = "default",
        echo: Optional[bool] = None,
    ):
        self.database_url = database_url or settings.get_database_url()
        if isolation_level == "default":
            isolation_level = settings.get_isolation_level()
        self.isolation_level = isolation_level
        self.engine = None
        self.SessionLocal = None
        self._initialize_database(settings.DEBUG if echo is None else echo)

    def _initialize_database(self, echo: bool):
        """Initialize database engine and session factory"""
        try:
            logger.info(f"Initializing database connection to: {_hide_credentials(self.database_url)}")

            engine_kwargs = {"echo": echo}
            if self.isolation_level:
                engine_kwargs["isolation_level"] = self.isolation_level

            if self.database_url.startswith("sqlite"):
                # A single shared connection keeps in-memory databases alive
                engine_kwargs["poolclass"] = StaticPool
                engine_kwargs["connect_args"] = {"check_same_thread": False}
            else:
                engine_kwargs.update(
                    pool_size=settings.DB_POOL_SIZE,
                    max_overflow=settings.DB_MAX_OVERFLOW,
                    pool_timeout=settings.DB_POOL_TIMEOUT,
                    pool_pre_ping=True,  # Validate connections before use
                    connect_args={
                        "server_settings": {
                            "application_name": "identity-reconciliation",
                        }
                    },
                )

            self.engine = create_async_engine(self.database_url, **engine_kwargs)

            self.SessionLocal = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,  # Contacts stay readable after commit
                autoflush=False,
            )

            logger.info("Database connection initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize database connection: {e}")
            raise

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    async def create_tables(self):
        """Create all database tables defined in models"""
        try:
            logger.info("Creating database tables...")
            async with self.engine.begin() as connection:
                await connection.run_sync(Base.metadata.create_all)
            logger.info("Database tables created successfully")
        except Exception as e:
            logger.error(f"Failed to create database tables: {e}")
            raise

    async def test_connection(self) -> bool:
        """Test database connection"""
        try:
            async with self.engine.connect() as connection:
                await connection.execute(text("SELECT 1"))
            logger.debug("Database connection test successful")
            return True
        except Exception as e:
            logger.error(f"Database connection test failed: {e}")
            return False

    @asynccontextmanager
    async def get_session(self):
        """
        Context manager for database sessions with automatic cleanup
        Usage:
            async with db_manager.get_session() as session:
                # database operations
        """
        session = self.SessionLocal()
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        finally:
            await session.close()

    async def dispose(self):
        """Release pooled connections"""
        if self.engine is not None:
            await self.engine.dispose()
            logger.info("Database connection pool closed")
