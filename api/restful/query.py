"""
List query parsing.

Turns the loosely typed `query` of a list request into a structured
`ListQuery` that only references attributes the model actually has:

- `where`: {"name": "a"}                      -> name = 'a'
           {"name": ["a", "b"]}               -> name IN ('a', 'b')
           {"name": {"$like": "photo%"}}      -> name LIKE 'photo%'
           {"deleted_at": null}               -> deleted_at IS NULL
- `order`: "name ASC, id DESC" | ["name DESC"] | [["name", "DESC"]]
- `offset` / `limit`: non-negative integers

The repository turns the result into SQL; nothing here is ever spliced into
a statement as text.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from .errors import QueryError

# Accepted spellings (after stripping a leading "$" and lower-casing) -> operator.
_OPERATOR_ALIASES = {
    "eq": "eq",
    "ne": "ne",
    "gt": "gt",
    "gte": "gte",
    "lt": "lt",
    "lte": "lte",
    "in": "in",
    "notin": "not_in",
    "not_in": "not_in",
    "like": "like",
    "notlike": "not_like",
    "not_like": "not_like",
    "ilike": "ilike",
    "notilike": "not_ilike",
    "not_ilike": "not_ilike",
    "contains": "contains",
    "startswith": "starts_with",
    "starts_with": "starts_with",
    "endswith": "ends_with",
    "ends_with": "ends_with",
    "between": "between",
    "notbetween": "not_between",
    "not_between": "not_between",
}

_LIST_OPERATORS = {"in", "not_in"}
_RANGE_OPERATORS = {"between", "not_between"}
_PATTERN_OPERATORS = {"like", "not_like", "ilike", "not_ilike", "contains", "starts_with", "ends_with"}


@dataclass(frozen=True)
class Condition:
    attribute: str
    operator: str
    value: Any


@dataclass(frozen=True)
class OrderTerm:
    attribute: str
    descending: bool = False


@dataclass(frozen=True)
class ListQuery:
    conditions: tuple[Condition, ...] = ()
    order: tuple[OrderTerm, ...] = ()
    offset: int | None = None
    limit: int | None = None

    @property
    def paginated(self) -> bool:
        return self.offset is not None or self.limit is not None


def parse_list_query(query: Mapping[str, Any] | None, attributes: Sequence[str]) -> ListQuery:
    """
    Validate and normalize a list query against the model's attribute names.
    """
    if not query:
        return ListQuery()
    if not isinstance(query, Mapping):
        raise QueryError("Query must be an object.")

    known = set(attributes)
    return ListQuery(
        conditions=parse_where(query.get("where"), known),
        order=parse_order(query.get("order"), known),
        offset=_non_negative_int("offset", query.get("offset")),
        limit=_non_negative_int("limit", query.get("limit")),
    )


def _operator(raw: str) -> str:
    key = str(raw).strip().lstrip("$").lower()
    operator = _OPERATOR_ALIASES.get(key)
    if operator is None:
        raise QueryError(f"Unsupported operator '{raw}'.")
    return operator


def _require_attribute(name: Any, known: set[str]) -> str:
    attribute = str(name)
    if attribute not in known:
        raise QueryError(f"Unknown attribute '{attribute}'.")
    return attribute


def _operator_condition(attribute: str, raw_operator: str, value: Any) -> Condition:
    operator = _operator(raw_operator)

    if operator in _LIST_OPERATORS:
        if not isinstance(value, (list, tuple)):
            raise QueryError(f"Operator '{raw_operator}' on '{attribute}' expects a list.")
        return Condition(attribute, operator, tuple(value))

    if operator in _RANGE_OPERATORS:
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise QueryError(f"Operator '{raw_operator}' on '{attribute}' expects two values.")
        return Condition(attribute, operator, tuple(value))

    if operator in _PATTERN_OPERATORS and not isinstance(value, str):
        raise QueryError(f"Operator '{raw_operator}' on '{attribute}' expects a string.")

    if isinstance(value, (list, dict)):
        raise QueryError(f"Operator '{raw_operator}' on '{attribute}' expects a scalar value.")

    return Condition(attribute, operator, value)


def parse_where(where: Any, known: set[str]) -> tuple[Condition, ...]:
    if where is None or where == "":
        return ()

    if isinstance(where, str):
        try:
            where = json.loads(where)
        except ValueError as exc:
            raise QueryError("'where' is not valid JSON.") from exc

    if not isinstance(where, Mapping):
        raise QueryError("'where' must be an object.")

    conditions: list[Condition] = []
    for name, criterion in where.items():
        attribute = _require_attribute(name, known)
        if isinstance(criterion, Mapping):
            if not criterion:
                raise QueryError(f"Empty condition for '{attribute}'.")
            for raw_operator, value in criterion.items():
                conditions.append(_operator_condition(attribute, raw_operator, value))
        elif isinstance(criterion, (list, tuple)):
            conditions.append(Condition(attribute, "in", tuple(criterion)))
        else:
            conditions.append(Condition(attribute, "eq", criterion))
    return tuple(conditions)


def _order_term(raw: Any, known: set[str]) -> OrderTerm:
    if isinstance(raw, (list, tuple)):
        if not 1 <= len(raw) <= 2:
            raise QueryError("Order pairs must be [attribute, direction].")
        parts = [str(p).strip() for p in raw]
    else:
        parts = str(raw).split()

    if not parts or not 1 <= len(parts) <= 2:
        raise QueryError(f"Invalid order expression '{raw}'.")

    attribute = _require_attribute(parts[0], known)
    direction = parts[1].upper() if len(parts) == 2 else "ASC"
    if direction not in {"ASC", "DESC"}:
        raise QueryError(f"Invalid order direction '{parts[1]}'.")
    return OrderTerm(attribute, descending=direction == "DESC")


def parse_order(order: Any, known: set[str]) -> tuple[OrderTerm, ...]:
    if order is None or order == "":
        return ()

    if isinstance(order, str):
        items: list[Any] = [part for part in order.split(",") if part.strip()]
    elif isinstance(order, (list, tuple)):
        # A bare ["name", "DESC"] pair is one term, not two.
        if len(order) == 2 and all(isinstance(p, str) for p in order) and order[1].strip().upper() in {"ASC", "DESC"}:
            items = [order]
        else:
            items = list(order)
    else:
        raise QueryError("'order' must be a string or a list.")

    return tuple(_order_term(item, known) for item in items)


def _non_negative_int(name: str, raw: Any) -> int | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise QueryError(f"'{name}' must be a non-negative integer.")
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise QueryError(f"'{name}' must be a non-negative integer.") from exc
    if isinstance(raw, float) and raw != value:
        raise QueryError(f"'{name}' must be a non-negative integer.")
    if value < 0:
        raise QueryError(f"'{name}' must be a non-negative integer.")
    return value
