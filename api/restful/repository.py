"""
SQLAlchemy-backed data layer for the RESTful router.

Every operation opens its own session through `session_factory` (by default
`core.db.session`, which commits on success and rolls back on error). Rows
are returned as plain dicts keyed by mapped attribute name, in table column
order.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Iterable, Mapping, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import date, datetime, time
from functools import lru_cache
from typing import Any

from sqlalchemy import ColumnElement, Column, func, inspect as sa_inspect, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapper, RelationshipProperty, selectinload
from sqlalchemy.orm.exc import UnmappedColumnError

from core import db

from .errors import BadRequestError, ConflictError, DataLayerError, NotFoundError
from .provider import AssociationInfo, AttributeInfo, ModelDescription, Row
from .query import Condition, ListQuery

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

_TEMPORAL_TYPES = (datetime, date, time)

_CLAUSES: dict[str, Callable[[Any, Any], ColumnElement[bool]]] = {
    "eq": lambda c, v: c.is_(None) if v is None else c == v,
    "ne": lambda c, v: c.is_not(None) if v is None else c != v,
    "gt": lambda c, v: c > v,
    "gte": lambda c, v: c >= v,
    "lt": lambda c, v: c < v,
    "lte": lambda c, v: c <= v,
    "in": lambda c, v: c.in_(v),
    "not_in": lambda c, v: c.not_in(v),
    "like": lambda c, v: c.like(v),
    "not_like": lambda c, v: c.not_like(v),
    "ilike": lambda c, v: c.ilike(v),
    "not_ilike": lambda c, v: c.not_ilike(v),
    "contains": lambda c, v: c.contains(v, autoescape=True),
    "starts_with": lambda c, v: c.startswith(v, autoescape=True),
    "ends_with": lambda c, v: c.endswith(v, autoescape=True),
    "between": lambda c, v: c.between(v[0], v[1]),
    "not_between": lambda c, v: ~c.between(v[0], v[1]),
}


@lru_cache(maxsize=None)
def _attribute_columns(mapper: Mapper[Any]) -> tuple[tuple[str, Column[Any]], ...]:
    """
    (attribute key, column) pairs in table column order.
    """
    pairs: list[tuple[str, Column[Any]]] = []
    for column in mapper.local_table.columns:
        try:
            prop = mapper.get_property_by_column(column)
        except UnmappedColumnError:
            continue
        pairs.append((prop.key, column))
    return tuple(pairs)


def _to_row(instance: Any) -> Row:
    mapper = sa_inspect(instance).mapper
    return {key: getattr(instance, key) for key, _ in _attribute_columns(mapper)}


def _identity(instance: Any) -> Any:
    identity = sa_inspect(instance).identity
    return identity[0] if identity else None


def _python_type(column: Column[Any]) -> type | None:
    try:
        return column.type.python_type
    except NotImplementedError:
        return None


def _coerce_value(column: Column[Any], value: Any) -> Any:
    """
    JSON has no dates; accept ISO-8601 strings for temporal columns.
    """
    if not isinstance(value, str):
        return value
    python_type = _python_type(column)
    if python_type not in _TEMPORAL_TYPES:
        return value
    try:
        return python_type.fromisoformat(value)
    except ValueError as exc:
        raise BadRequestError(f"Invalid {python_type.__name__} value '{value}' for '{column.name}'.") from exc


def _coerce_key(column: Column[Any], raw: str, model_name: str) -> Any:
    python_type = _python_type(column)
    if python_type is None or python_type is str:
        return raw
    try:
        return python_type(raw)
    except (TypeError, ValueError) as exc:
        raise BadRequestError(f"Invalid id '{raw}' for {model_name}.") from exc


def _describe_db_error(exc: SQLAlchemyError) -> str:
    # The driver's message is more useful than the statement dump SQLAlchemy wraps around it.
    orig = getattr(exc, "orig", None)
    return str(orig) if orig is not None else str(exc)


class SqlAlchemyModelHandle:
    """
    CRUD and association operations for one mapped class.
    """

    def __init__(self, model: type, session_factory: SessionFactory = db.session) -> None:
        mapper = sa_inspect(model)
        if len(mapper.primary_key) != 1:
            raise ValueError(f"{model.__name__} must have exactly one primary key column.")

        self.model = model
        self.name = model.__name__
        self.table_name = mapper.local_table.name
        self._mapper = mapper
        self._session_factory = session_factory
        self._columns = dict(_attribute_columns(mapper))
        self._pk_column = mapper.primary_key[0]
        self._pk_key = mapper.get_property_by_column(self._pk_column).key
        self._relationships = self._index_relationships(mapper)

    @staticmethod
    def _index_relationships(mapper: Mapper[Any]) -> dict[str, RelationshipProperty[Any]]:
        index: dict[str, RelationshipProperty[Any]] = {}
        for rel in mapper.relationships:
            index[rel.key.lower()] = rel

        # Also accept the related model / table name when only one relationship points at it.
        targets: dict[str, list[RelationshipProperty[Any]]] = {}
        for rel in mapper.relationships:
            for alias in {rel.mapper.class_.__name__.lower(), rel.mapper.local_table.name.lower()}:
                targets.setdefault(alias, []).append(rel)
        for alias, rels in targets.items():
            if len(rels) == 1:
                index.setdefault(alias, rels[0])
        return index

    @property
    def attribute_names(self) -> list[str]:
        return list(self._columns)

    def describe(self) -> ModelDescription:
        attributes = []
        for key, column in self._columns.items():
            foreign_key = next(iter(column.foreign_keys), None)
            attributes.append(
                AttributeInfo(
                    name=key,
                    type=type(column.type).__name__,
                    primary_key=bool(column.primary_key),
                    nullable=bool(column.nullable),
                    foreign_key=foreign_key.target_fullname if foreign_key is not None else None,
                )
            )
        return ModelDescription(name=self.name, table_name=self.table_name, attributes=tuple(attributes))

    def coerce_id(self, raw: str) -> Any:
        return _coerce_key(self._pk_column, raw, self.name)

    def association(self, name: str) -> AssociationInfo | None:
        rel = self._relationships.get((name or "").lower())
        if rel is None:
            return None
        return AssociationInfo(name=rel.key, target=rel.mapper.class_.__name__, many=bool(rel.uselist))

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except IntegrityError as exc:
            raise ConflictError(_describe_db_error(exc)) from exc
        except SQLAlchemyError as exc:
            raise DataLayerError(_describe_db_error(exc)) from exc

    def _assignable(self, values: Mapping[str, Any] | None, *, include_pk: bool) -> dict[str, Any]:
        values = values or {}
        accepted: dict[str, Any] = {}
        for key, value in values.items():
            column = self._columns.get(key)
            if column is None or (key == self._pk_key and not include_pk):
                continue
            accepted[key] = _coerce_value(column, value)

        ignored = sorted(set(values) - set(accepted))
        if ignored:
            logger.debug("restful_ignored_attributes model=%s keys=%s", self.name, ignored)
        return accepted

    def _clauses(self, conditions: Iterable[Condition]) -> list[ColumnElement[bool]]:
        clauses = []
        for condition in conditions:
            column = self._columns[condition.attribute]
            if isinstance(condition.value, tuple):
                value: Any = [_coerce_value(column, v) for v in condition.value]
            else:
                value = _coerce_value(column, condition.value)
            clauses.append(_CLAUSES[condition.operator](getattr(self.model, condition.attribute), value))
        return clauses

    def _ordering(self, query: ListQuery) -> list[Any]:
        ordering = []
        for term in query.order:
            attr = getattr(self.model, term.attribute)
            ordering.append(attr.desc() if term.descending else attr.asc())
        # Insertion order by default, and a stable tiebreaker for pagination.
        if all(term.attribute != self._pk_key for term in query.order):
            ordering.append(getattr(self.model, self._pk_key).asc())
        return ordering

    async def find_all(self, query: ListQuery) -> list[Row]:
        stmt = select(self.model).where(*self._clauses(query.conditions)).order_by(*self._ordering(query))
        if query.offset:
            stmt = stmt.offset(query.offset)
        if query.limit is not None:
            stmt = stmt.limit(query.limit)

        async with self._session() as session:
            result = await session.scalars(stmt)
            return [_to_row(instance) for instance in result.all()]

    async def count(self, conditions: Sequence[Condition] = ()) -> int:
        stmt = select(func.count()).select_from(self.model).where(*self._clauses(conditions))
        async with self._session() as session:
            return int(await session.scalar(stmt) or 0)

    async def create(self, values: Mapping[str, Any]) -> Row:
        instance = self.model(**self._assignable(values, include_pk=True))
        async with self._session() as session:
            session.add(instance)
            await session.flush()
            # Pick up server-side defaults (ids, timestamps).
            await session.refresh(instance)
            return _to_row(instance)

    async def find(self, pk: Any) -> Row | None:
        async with self._session() as session:
            instance = await session.get(self.model, pk)
            return _to_row(instance) if instance is not None else None

    async def update(self, pk: Any, values: Mapping[str, Any]) -> Row | None:
        changes = self._assignable(values, include_pk=False)
        async with self._session() as session:
            instance = await session.get(self.model, pk)
            if instance is None:
                return None
            for key, value in changes.items():
                setattr(instance, key, value)
            await session.flush()
            await session.refresh(instance)
            return _to_row(instance)

    async def destroy(self, pk: Any) -> bool:
        async with self._session() as session:
            instance = await session.get(self.model, pk)
            if instance is None:
                return False
            await session.delete(instance)
            return True

    async def _load_with(self, session: AsyncSession, pk: Any, rel: RelationshipProperty[Any]) -> Any:
        instance = await session.get(self.model, pk, options=[selectinload(rel.class_attribute)])
        if instance is None:
            raise NotFoundError(f"{self.name} with id '{pk}' not found.")
        return instance

    def _relationship(self, name: str) -> RelationshipProperty[Any]:
        rel = self._relationships.get((name or "").lower())
        if rel is None:
            raise NotFoundError(f"{self.name} has no association '{name}'.")
        return rel

    async def get_association(self, pk: Any, name: str) -> Row | list[Row] | None:
        rel = self._relationship(name)
        async with self._session() as session:
            instance = await self._load_with(session, pk, rel)
            related = getattr(instance, rel.key)
            if rel.uselist:
                return [_to_row(item) for item in sorted(related, key=_identity)]
            return _to_row(related) if related is not None else None

    async def clear_association(self, pk: Any, name: str, related_id: str | None = None) -> bool:
        """
        Unlink related rows without deleting them. With `related_id` only
        that row is unlinked; returns whether anything changed.
        """
        rel = self._relationship(name)
        target_pk = None
        if related_id is not None:
            target_pk = _coerce_key(rel.mapper.primary_key[0], related_id, rel.mapper.class_.__name__)

        async with self._session() as session:
            instance = await self._load_with(session, pk, rel)
            related = getattr(instance, rel.key)

            if rel.uselist:
                doomed = [item for item in related if target_pk is None or _identity(item) == target_pk]
                for item in doomed:
                    related.remove(item)
                return bool(doomed)

            if related is None or (target_pk is not None and _identity(related) != target_pk):
                return False
            setattr(instance, rel.key, None)
            return True


class SqlAlchemyModelProvider:
    """
    Exposes a fixed set of mapped classes to the router.
    """

    def __init__(self, models: Iterable[type], session_factory: SessionFactory = db.session) -> None:
        self._handles = [SqlAlchemyModelHandle(model, session_factory) for model in models]

    def models(self) -> list[SqlAlchemyModelHandle]:
        return list(self._handles)
