"""Database connection management using SQLModel with asyncpg."""

import re
import ssl
from typing import AsyncGenerator, Optional
from urllib.parse import urlparse, urlunparse

from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from app.config.settings import settings
from app.config.logger import app_logger

_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker] = None


def get_db_url() -> str:
    """Get database URL for SQLAlchemy with asyncpg driver."""
    db_url = settings.effective_database_url
    if not db_url:
        raise ValueError("DATABASE_URL not configured")
    # SQLite or other non-Postgres URLs are returned as-is
    if db_url.startswith("sqlite"):
        return db_url

    # For Postgres URLs, normalize and strip sslmode (asyncpg handles SSL via connect_args)
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


def _wants_ssl(raw_url: str) -> bool:
    return "sslmode=require" in raw_url or "sslmode=verify" in raw_url


async def ensure_search_schema(conn: AsyncConnection) -> None:
    """Create the pgvector extension, generated tsvector column and indexes.

    Only meaningful on Postgres; callers skip it for SQLite.
    """
    language = settings.SEARCH_TEXT_LANGUAGE
    if not re.fullmatch(r"[a-z_]+", language):
        raise ValueError(f"Invalid text search configuration name: {language!r}")

    await conn.execute(
        text(
            "ALTER TABLE document_chunks ADD COLUMN IF NOT EXISTS tsv tsvector "
            f"GENERATED ALWAYS AS (to_tsvector('{language}', coalesce(content, ''))) STORED"
        )
    )
    await conn.execute(
        text("CREATE INDEX IF NOT EXISTS ix_document_chunks_tsv ON document_chunks USING GIN (tsv)")
    )
    await conn.execute(
        text(
            "CREATE INDEX IF NOT EXISTS ix_document_chunks_period "
            "ON document_chunks (project_id, source_type, ((metadata->>'periodKey')))"
        )
    )


async def init_db() -> None:
    """Initialize the database engine and create tables."""
    global _engine, _session_maker

    try:
        db_url = get_db_url()
        app_logger.info("Initializing database connection")

        engine_kwargs = {"echo": False}
        is_postgres = db_url.startswith("postgresql+asyncpg://")
        if is_postgres:
            engine_kwargs.update(pool_size=20, max_overflow=0, pool_pre_ping=True)
            if _wants_ssl(settings.effective_database_url):
                ssl_context = ssl.create_default_context()
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE
                engine_kwargs["connect_args"] = {"ssl": ssl_context}

        _engine = create_async_engine(db_url, **engine_kwargs)

        _session_maker = async_sessionmaker(
            _engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        # Import all models to register them with SQLModel
        import app.models  # noqa: F401

        async with _engine.begin() as conn:
            if is_postgres:
                await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            await conn.run_sync(SQLModel.metadata.create_all)
            if is_postgres:
                await ensure_search_schema(conn)

        app_logger.info("Database initialized successfully")

    except ValueError as e:
        app_logger.warning(f"Database will not be initialized: {e}")
        app_logger.info("Set DATABASE_URL in .env")
    except Exception as e:
        app_logger.error(f"Failed to initialize database: {e}")
        app_logger.error(f"Error type: {type(e).__name__}")
        app_logger.warning("DATABASE CONNECTION FAILED - Running in limited mode")
        # Don't raise - health endpoints still report the failure


async def close_db() -> None:
    """Close the database engine."""
    global _engine, _session_maker

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_maker = None
        app_logger.info("Database connection closed")


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get a database session."""
    if not _session_maker:
        from fastapi import HTTPException
        raise HTTPException(
            status_code=503,
            detail="Database unavailable. The server is running in limited mode.",
        )

    async with _session_maker() as session:
        yield session


async def get_optional_session() -> AsyncGenerator[Optional[AsyncSession], None]:
    """Like ``get_session`` but yields None instead of failing when the database is down."""
    if not _session_maker:
        yield None
        return

    async with _session_maker() as session:
        yield session


@asynccontextmanager
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Async context manager for background tasks and scripts."""
    if not _session_maker:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with _session_maker() as session:
        yield session


async def ping_database() -> tuple[bool, str]:
    """Run a lightweight health query against the database."""
    if not _engine or not _session_maker:
        return False, "Database not initialized"

    try:
        async with _session_maker() as session:
            result = await session.execute(text("SELECT 1"))
            row = result.scalar()
            if row == 1:
                return True, "Database connection healthy"
            return False, f"Unexpected response: {row}"
    except Exception as e:
        return False, f"Database query failed: {str(e)}"
