"""Async engine and session factory for the entitlement tables.

SQLite (aiosqlite) for local runs and tests, PostgreSQL (asyncpg) in production.
"""
from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from config.settings import settings

_POSTGRES_POOL = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

_ASYNC_DRIVERS = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)


def async_database_url(url: str) -> str:
    """Pin the async driver for bare ``postgresql://`` / ``sqlite://`` URLs."""
    for prefix, replacement in _ASYNC_DRIVERS:
        if url.startswith(prefix):
            return replacement + url[len(prefix):]
    return url


def build_engine(url: str) -> AsyncEngine:
    url = async_database_url(url)
    pool = {} if url.startswith("sqlite") else dict(_POSTGRES_POOL)
    return create_async_engine(url, echo=False, **pool)


engine = build_engine(settings.DATABASE_URL)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncSession:
    """FastAPI dependency: one session per request."""
    async with async_session() as session:
        yield session
