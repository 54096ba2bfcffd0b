"""
Query string helpers.

Queries travel as JSON strings (``{"method": ..., "attribute": ..., "values": [...]}``).
``build_queries`` translates the ``filters``/``options`` arguments of the table
API into that form.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


def _query(method: str, attribute: str | None = None, values: list[Any] | None = None) -> str:
    data: dict[str, Any] = {"method": method}
    if attribute is not None:
        data["attribute"] = attribute
    if values is not None:
        data["values"] = values
    return json.dumps(data, default=str)


def _as_list(value: Any) -> list[Any]:
    return list(value) if isinstance(value, list | tuple | set) else [value]


def equal(attribute: str, value: Any) -> str:
    return _query("equal", attribute, _as_list(value))


def not_equal(attribute: str, value: Any) -> str:
    return _query("notEqual", attribute, _as_list(value))


def less_than(attribute: str, value: Any) -> str:
    return _query("lessThan", attribute, [value])


def less_than_equal(attribute: str, value: Any) -> str:
    return _query("lessThanEqual", attribute, [value])


def greater_than(attribute: str, value: Any) -> str:
    return _query("greaterThan", attribute, [value])


def greater_than_equal(attribute: str, value: Any) -> str:
    return _query("greaterThanEqual", attribute, [value])


def is_null(attribute: str) -> str:
    return _query("isNull", attribute)


def is_not_null(attribute: str) -> str:
    return _query("isNotNull", attribute)


def search(attribute: str, value: str) -> str:
    return _query("search", attribute, [value])


def starts_with(attribute: str, value: str) -> str:
    return _query("startsWith", attribute, [value])


def order_asc(attribute: str) -> str:
    return _query("orderAsc", attribute)


def order_desc(attribute: str) -> str:
    return _query("orderDesc", attribute)


def limit(value: int) -> str:
    return _query("limit", values=[value])


def offset(value: int) -> str:
    return _query("offset", values=[value])


def select(attributes: list[str]) -> str:
    return _query("select", values=list(attributes))


def parse(query: str) -> dict[str, Any]:
    """Decode a query string into its method/attribute/values mapping."""
    data = json.loads(query)
    if not isinstance(data, dict) or "method" not in data:
        raise ValueError(f"Invalid query: {query!r}")
    return data


@dataclass(frozen=True)
class QueryOptions:
    """Ordering and pagination for ``Table.query``.

    ``order_by`` entries prefixed with ``-`` sort descending.
    """

    limit: int | None = None
    offset: int | None = None
    order_by: tuple[str, ...] = ()
    select: tuple[str, ...] = ()

    def normalized(self) -> dict[str, Any]:
        return {
            "limit": self.limit,
            "offset": self.offset,
            "order_by": list(self.order_by),
            "select": list(self.select),
        }


def build_queries(
    filters: Mapping[str, Any] | None = None,
    options: QueryOptions | None = None,
) -> list[str]:
    """Equality filters (``None`` values skipped), then ordering, pagination, selection."""
    queries: list[str] = []
    for key, value in (filters or {}).items():
        if value is not None:
            queries.append(equal(key, value))

    if options is None:
        return queries

    for order in options.order_by:
        if order.startswith("-"):
            queries.append(order_desc(order[1:]))
        else:
            queries.append(order_asc(order))
    if options.limit:
        queries.append(limit(options.limit))
    if options.offset:
        queries.append(offset(options.offset))
    if options.select:
        queries.append(select(list(options.select)))
    return queries
