"""
Database engine and session management.

Orders and payments live in Postgres (asyncpg); tests run on sqlite+aiosqlite.
Row locks (`SELECT ... FOR UPDATE`) are taken by the services, so sessions
here only own the transaction boundary.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.config import settings

logger = logging.getLogger(__name__)

POSTGRES_SCHEMES = ("postgres", "postgresql", "postgresql+psycopg2")


def get_database_url() -> str:
    """DATABASE_URL rewritten for the async driver.

    libpq's `sslmode` query parameter is not understood by asyncpg; it is
    dropped here and `DATABASE_SSL` controls TLS instead.
    """
    if not settings.database_url:
        return ""
    url = make_url(settings.database_url)
    if url.drivername in POSTGRES_SCHEMES:
        url = url.set(drivername="postgresql+asyncpg")
    if "sslmode" in url.query:
        url = url.difference_update_query(["sslmode"])
    return url.render_as_string(hide_password=False)


def create_engine_if_configured() -> Optional[AsyncEngine]:
    db_url = get_database_url()
    if not db_url:
        logger.warning("DATABASE_URL not configured. Order and payment storage disabled.")
        return None

    if db_url.startswith("sqlite"):
        return create_async_engine(db_url, echo=settings.debug)

    return create_async_engine(
        db_url,
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        connect_args={"ssl": True} if settings.database_ssl else {},
    )


# None when DATABASE_URL is unset
engine = create_engine_if_configured()

async_session_maker = (
    async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    if engine
    else None
)


class Base(DeclarativeBase):
    """Declarative base for Order and Payment."""
    pass


@asynccontextmanager
async def session_scope() -> AsyncGenerator[AsyncSession, None]:
    """
    One unit of work: commit on success, roll back (releasing any row
    locks) on error.
    """
    if not async_session_maker:
        raise RuntimeError("Database not configured. Set DATABASE_URL environment variable.")

    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: a session per request."""
    async with session_scope() as session:
        yield session


# Workers and scripts
get_db_context = session_scope


async def init_db() -> None:
    """Create tables directly (development only; deployments use alembic)."""
    if not engine:
        logger.warning("Skipping table creation - DATABASE_URL not configured")
        return

    # Register models on the metadata before create_all
    import app.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    if engine:
        await engine.dispose()
