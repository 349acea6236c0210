"""Shared fixtures: a throwaway SQLite database and a router over the gallery models."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Generator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine

from core import db
from gallery import GalleryBase, Photo, Photographer
from restful import Router, SqlAlchemyModelProvider


@pytest_asyncio.fixture
async def database(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite file per test, schema synced with drop."""
    await db.init_engine(f"sqlite+aiosqlite:///{tmp_path / 'restful-test.sqlite'}")
    try:
        await db.sync_schema(GalleryBase.metadata, drop=True)
        yield db.engine()
    finally:
        await db.close_engine()


@pytest.fixture
def statements(database: AsyncEngine) -> Generator[list[str], None, None]:
    """Record every SQL statement sent to the database."""
    seen: list[str] = []

    def _record(conn, cursor, statement, parameters, context, executemany) -> None:
        seen.append(statement)

    event.listen(database.sync_engine, "before_cursor_execute", _record)
    yield seen
    event.remove(database.sync_engine, "before_cursor_execute", _record)


@pytest.fixture
def provider(database: AsyncEngine) -> SqlAlchemyModelProvider:
    return SqlAlchemyModelProvider([Photographer, Photo])


@pytest.fixture
def router(provider: SqlAlchemyModelProvider) -> Router:
    return Router(provider, {})
