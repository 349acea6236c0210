"""
Async database access using SQLAlchemy's asyncio ORM.

This module owns the engine and the session factory. FastAPI initializes them
on startup and disposes them on shutdown (see `api/main.py`).

Models exposed through the RESTful router are declared on `Base` (or on any
other declarative base handed to the router explicitly).
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

_engine: AsyncEngine | None = None
_sessions: async_sessionmaker[AsyncSession] | None = None


class Base(DeclarativeBase):
    pass


def _sanitize_database_url(url: str) -> str:
    parts = urlsplit(url)
    if not parts.scheme.startswith("postgres"):
        return url

    # Plain postgres URLs (as handed out by most hosting providers) select the sync driver.
    scheme = parts.scheme
    if scheme in {"postgres", "postgresql"}:
        scheme = "postgresql+asyncpg"

    # asyncpg does not understand libpq's sslmode parameter.
    params = [(k, v) for (k, v) in parse_qsl(parts.query, keep_blank_values=True) if k != "sslmode"]
    query = urlencode(params)
    return urlunsplit((scheme, parts.netloc, parts.path, query, parts.fragment))


def database_url() -> str:
    url = os.environ.get("DATABASE_URL", "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL is not set.")
    return _sanitize_database_url(url)


def sync_on_startup() -> bool:
    raw = os.environ.get("DATABASE_SYNC", "").strip().lower()
    return raw in {"1", "true", "yes", "on"}


async def init_engine(url: str | None = None, **engine_kwargs: Any) -> None:
    global _engine, _sessions
    if _engine is not None:
        return None
    _engine = create_async_engine(
        _sanitize_database_url(url) if url else database_url(),
        echo=False,
        **engine_kwargs,
    )
    _sessions = async_sessionmaker(_engine, expire_on_commit=False, class_=AsyncSession)


async def close_engine() -> None:
    global _engine, _sessions
    if _engine is None:
        return None
    await _engine.dispose()
    _engine = None
    _sessions = None


def engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("DB engine is not initialized. Call init_engine() on startup.")
    return _engine


def sessionmaker() -> async_sessionmaker[AsyncSession]:
    if _sessions is None:
        raise RuntimeError("DB engine is not initialized. Call init_engine() on startup.")
    return _sessions


@asynccontextmanager
async def session() -> AsyncIterator[AsyncSession]:
    """
    Open a session that commits on success and rolls back on any error.
    """
    s = sessionmaker()()
    try:
        yield s
        await s.commit()
    except Exception:
        await s.rollback()
        raise
    finally:
        await s.close()


async def sync_schema(metadata: MetaData | None = None, *, drop: bool = False) -> None:
    """
    Create all tables known to `metadata` (defaults to `Base.metadata`).

    With `drop=True` existing tables are dropped first, which is only meant
    for tests and throwaway databases.
    """
    metadata = metadata if metadata is not None else Base.metadata
    async with engine().begin() as conn:
        if drop:
            await conn.run_sync(metadata.drop_all)
        await conn.run_sync(metadata.create_all)


def mapped_models(base: type[DeclarativeBase] = Base) -> list[type]:
    """
    Return every mapped class registered on `base`, sorted by table name.
    """
    classes = [mapper.class_ for mapper in base.registry.mappers]
    return sorted(classes, key=lambda cls: getattr(cls, "__tablename__", cls.__name__))
