"""Tests for the SQLAlchemy model handles."""

from __future__ import annotations

import pytest
from sqlalchemy import Integer
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from gallery import Photo, Photographer, add
from restful.errors import BadRequestError, NotFoundError
from restful.provider import AssociationInfo
from restful.query import Condition, ListQuery, OrderTerm
from restful.repository import SqlAlchemyModelHandle, SqlAlchemyModelProvider


def test_handle_metadata() -> None:
    handle = SqlAlchemyModelHandle(Photo)

    assert handle.name == "Photo"
    assert handle.table_name == "photos"
    assert handle.attribute_names == ["id", "name", "created_at", "updated_at", "photographer_id"]

    description = handle.describe()
    by_name = {attr.name: attr for attr in description.attributes}
    assert by_name["id"].primary_key
    assert by_name["name"].type == "String"
    assert by_name["photographer_id"].foreign_key == "photographers.id"


def test_associations_resolve_by_key_model_or_table_name() -> None:
    photo = SqlAlchemyModelHandle(Photo)
    photographer = SqlAlchemyModelHandle(Photographer)

    expected = AssociationInfo(name="photographer", target="Photographer", many=False)
    assert photo.association("Photographer") == expected
    assert photo.association("photographers") == expected
    assert photographer.association("Photos") == AssociationInfo(name="photos", target="Photo", many=True)
    assert photo.association("albums") is None


def test_coerce_id() -> None:
    handle = SqlAlchemyModelHandle(Photo)

    assert handle.coerce_id("12") == 12
    with pytest.raises(BadRequestError):
        handle.coerce_id("twelve")


def test_composite_primary_keys_are_refused() -> None:
    class Base(DeclarativeBase):
        pass

    class Tag(Base):
        __tablename__ = "tags"
        a: Mapped[int] = mapped_column(Integer, primary_key=True)
        b: Mapped[int] = mapped_column(Integer, primary_key=True)

    with pytest.raises(ValueError):
        SqlAlchemyModelHandle(Tag)


def test_provider_exposes_one_handle_per_model() -> None:
    provider = SqlAlchemyModelProvider([Photographer, Photo])

    assert [handle.name for handle in provider.models()] == ["Photographer", "Photo"]


@pytest.mark.asyncio
async def test_count_ignores_window(database: object) -> None:
    handle = SqlAlchemyModelHandle(Photo)
    for name in ["a", "b", "c", "d"]:
        await add(Photo, name=name)

    query = ListQuery(
        conditions=(Condition("name", "in", ("a", "b", "c")),),
        order=(OrderTerm("name", descending=True),),
        offset=1,
        limit=1,
    )

    assert [row["name"] for row in await handle.find_all(query)] == ["b"]
    assert await handle.count(query.conditions) == 3


@pytest.mark.asyncio
async def test_contains_escapes_wildcards(database: object) -> None:
    handle = SqlAlchemyModelHandle(Photo)
    await add(Photo, name="100% cat")
    await add(Photo, name="1000 cats")

    rows = await handle.find_all(ListQuery(conditions=(Condition("name", "contains", "0%"),)))

    assert [row["name"] for row in rows] == ["100% cat"]


@pytest.mark.asyncio
async def test_filter_on_timestamps_accepts_iso_strings(database: object) -> None:
    handle = SqlAlchemyModelHandle(Photo)
    await handle.create({"name": "old", "created_at": "2001-01-01T00:00:00"})
    await handle.create({"name": "new", "created_at": "2021-01-01T00:00:00"})

    rows = await handle.find_all(ListQuery(conditions=(Condition("created_at", "lt", "2010-01-01T00:00:00"),)))

    assert [row["name"] for row in rows] == ["old"]


@pytest.mark.asyncio
async def test_bad_timestamp_is_a_bad_request(database: object) -> None:
    handle = SqlAlchemyModelHandle(Photo)

    with pytest.raises(BadRequestError):
        await handle.create({"name": "x", "created_at": "yesterday"})


@pytest.mark.asyncio
async def test_association_on_missing_owner(database: object) -> None:
    handle = SqlAlchemyModelHandle(Photo)

    with pytest.raises(NotFoundError):
        await handle.get_association(4242, "photographer")
    with pytest.raises(NotFoundError):
        await handle.clear_association(4242, "photographer")


@pytest.mark.asyncio
async def test_clear_association_reports_changes(database: object) -> None:
    photographer = await add(Photographer, name="Doctor Who")
    photo = await add(Photo, name="wondercat", photographer_id=photographer.id)
    handle = SqlAlchemyModelHandle(Photo)

    assert not await handle.clear_association(photo.id, "photographer", str(photographer.id + 1))
    assert await handle.clear_association(photo.id, "photographer", str(photographer.id))
    assert not await handle.clear_association(photo.id, "photographer")
