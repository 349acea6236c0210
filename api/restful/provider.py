"""
What the router needs from a data layer.

The router never talks to an ORM directly; it looks models up in a
`DataModelProvider` and calls the operations of the returned `ModelHandle`.
`restful.repository` implements both on top of SQLAlchemy.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from .query import Condition, ListQuery

Row = dict[str, Any]


@dataclass(frozen=True)
class AttributeInfo:
    name: str
    type: str
    primary_key: bool = False
    nullable: bool = True
    foreign_key: str | None = None


@dataclass(frozen=True)
class ModelDescription:
    name: str
    table_name: str
    attributes: tuple[AttributeInfo, ...] = field(default_factory=tuple)

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "tableName": self.table_name,
            "attributes": {
                attr.name: {
                    "type": attr.type,
                    "primaryKey": attr.primary_key,
                    "allowNull": attr.nullable,
                    "references": attr.foreign_key,
                }
                for attr in self.attributes
            },
        }


@dataclass(frozen=True)
class AssociationInfo:
    name: str
    target: str
    many: bool


class ModelHandle(Protocol):
    name: str
    table_name: str

    @property
    def attribute_names(self) -> Sequence[str]: ...

    def describe(self) -> ModelDescription: ...

    def coerce_id(self, raw: str) -> Any: ...

    def association(self, name: str) -> AssociationInfo | None: ...

    async def find_all(self, query: ListQuery) -> list[Row]: ...

    async def count(self, conditions: Sequence[Condition] = ()) -> int: ...

    async def create(self, values: Mapping[str, Any]) -> Row: ...

    async def find(self, pk: Any) -> Row | None: ...

    async def update(self, pk: Any, values: Mapping[str, Any]) -> Row | None: ...

    async def destroy(self, pk: Any) -> bool: ...

    async def get_association(self, pk: Any, name: str) -> Row | list[Row] | None: ...

    async def clear_association(self, pk: Any, name: str, related_id: str | None = None) -> bool: ...


class DataModelProvider(Protocol):
    def models(self) -> Iterable[ModelHandle]: ...
