"""Database connection management using SQLModel with asyncpg or aiosqlite."""

import ssl
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
from urllib.parse import urlparse, urlunparse

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from app.config.logger import app_logger
from app.db.sql_functions import register_sqlite_functions
from app.utils.errors import ConfigurationError


def normalize_db_url(db_url: str) -> str:
    """Get database URL for SQLAlchemy with an async driver."""
    if not db_url:
        raise ConfigurationError("DATABASE_URL not configured")
    if db_url.startswith("sqlite"):
        if db_url.startswith("sqlite://"):
            db_url = db_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return db_url

    # asyncpg handles SSL via connect_args, so sslmode is stripped
    parsed = urlparse(db_url)
    query_parts = [p for p in parsed.query.split("&") if not p.startswith("sslmode=") and p]
    clean_url = urlunparse(
        (
            parsed.scheme,
            parsed.netloc,
            parsed.path,
            parsed.params,
            "&".join(query_parts),
            parsed.fragment,
        )
    )

    if clean_url.startswith("postgresql://"):
        clean_url = clean_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif clean_url.startswith("postgres://"):
        clean_url = clean_url.replace("postgres://", "postgresql+asyncpg://", 1)

    return clean_url


def _configure_sqlite_connection(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
    register_sqlite_functions(dbapi_connection)


class Database:
    """Owns the async engine and session factory for one process."""

    def __init__(self, db_url: str, *, echo: bool = False):
        self.url = normalize_db_url(db_url)
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._session_maker: Optional[async_sessionmaker] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise ConfigurationError("Database not initialized")
        return self._engine

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    async def init(self, create_tables: bool = True) -> None:
        """Initialize the database engine and create tables."""
        app_logger.info("Initializing database connection")

        connect_args = {}
        engine_kwargs = {}
        if self.url.startswith("postgresql+asyncpg://"):
            # SSL context for Supabase / Postgres (no certificate verification)
            ssl_context = ssl.create_default_context()
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE
            connect_args = {"ssl": ssl_context}
            engine_kwargs = {"pool_size": 20, "max_overflow": 0}

        self._engine = create_async_engine(
            self.url,
            echo=self.echo,
            connect_args=connect_args,
            **engine_kwargs,
        )
        if self._engine.dialect.name == "sqlite":
            event.listen(self._engine.sync_engine, "connect", _configure_sqlite_connection)

        self._session_maker = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        if create_tables:
            # Register all table models with SQLModel before create_all
            import app.models  # noqa: F401

            async with self._engine.begin() as conn:
                if self._engine.dialect.name == "postgresql":
                    await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
                await conn.run_sync(SQLModel.metadata.create_all)

        app_logger.info(f"Database initialized successfully ({self._engine.dialect.name})")

    async def dispose(self) -> None:
        """Close the database engine."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_maker = None
            app_logger.info("Database connection closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        if not self._session_maker:
            raise ConfigurationError("Database not initialized")
        async with self._session_maker() as session:
            yield session

    async def ping(self) -> tuple[bool, str]:
        """Run a lightweight health query against the database."""
        if not self._session_maker:
            return False, "Database not initialized"
        try:
            async with self.session() as session:
                result = await session.execute(text("SELECT 1"))
                row = result.scalar()
                if row == 1:
                    return True, "Database connection healthy"
                return False, f"Unexpected response: {row}"
        except Exception as e:
            app_logger.error(f"Database ping failed: {e}")
            return False, "Database query failed"
