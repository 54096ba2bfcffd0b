"""
Column type inference for imported records.

Builds a minimal attribute set from observed value shapes, for sources that
arrive without a declared schema.
"""

from __future__ import annotations

import itertools
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from appwrite_orm.specs.table import DEFAULT_STRING_SIZE, AttributeKind, AttributeSpec

DEFAULT_SAMPLE_SIZE = 500


def _looks_like_datetime(value: str) -> bool:
    if len(value) < 10 or value[4:5] != "-" or value[7:8] != "-":
        return False
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


def _kind_of(value: Any) -> AttributeKind:
    if isinstance(value, bool):
        return AttributeKind.BOOLEAN
    if isinstance(value, int):
        return AttributeKind.INTEGER
    if isinstance(value, float):
        return AttributeKind.FLOAT
    if isinstance(value, str) and _looks_like_datetime(value):
        return AttributeKind.DATETIME
    return AttributeKind.STRING


def _string_size(max_length: int) -> int:
    """Next power of two that fits ``max_length``, never below the default size."""
    if max_length <= DEFAULT_STRING_SIZE:
        return DEFAULT_STRING_SIZE
    size = 1
    while size < max_length:
        size *= 2
    return size


@dataclass
class _FieldStats:
    seen: int = 0
    nulls: int = 0
    array: bool = False
    kinds: set[AttributeKind] = field(default_factory=set)
    max_length: int = 0

    def observe(self, value: Any) -> None:
        self.seen += 1
        if value is None:
            self.nulls += 1
            return
        items = value if isinstance(value, list | tuple) else [value]
        if isinstance(value, list | tuple):
            self.array = True
        for item in items:
            if item is None:
                continue
            kind = _kind_of(item)
            self.kinds.add(kind)
            if kind in (AttributeKind.STRING, AttributeKind.DATETIME):
                self.max_length = max(self.max_length, len(str(item)))

    def resolve_kind(self) -> AttributeKind:
        if not self.kinds:
            return AttributeKind.STRING
        if len(self.kinds) == 1:
            return next(iter(self.kinds))
        if self.kinds == {AttributeKind.INTEGER, AttributeKind.FLOAT}:
            return AttributeKind.FLOAT
        return AttributeKind.STRING


def infer_schema(
    records: Iterable[Mapping[str, Any]], sample_size: int = DEFAULT_SAMPLE_SIZE
) -> list[AttributeSpec]:
    """
    Infer attributes from the first ``sample_size`` records.

    Kinds widen integer+float to float and any other mix to string. A field
    is required only when every sampled record carries a non-null value.
    ``$``-prefixed system fields are skipped. Pass a list when the records
    are also needed afterwards: an iterator is consumed.
    """
    stats: dict[str, _FieldStats] = {}
    sampled = 0
    for record in itertools.islice(records, sample_size):
        sampled += 1
        for name, value in record.items():
            if name.startswith("$"):
                continue
            stats.setdefault(name, _FieldStats()).observe(value)

    attributes: list[AttributeSpec] = []
    for name, field_stats in stats.items():
        kind = field_stats.resolve_kind()
        required = field_stats.seen == sampled and field_stats.nulls == 0 and not field_stats.array
        data: dict[str, Any] = {
            "name": name,
            "kind": kind,
            "required": required,
            "array": field_stats.array,
        }
        if kind == AttributeKind.STRING:
            data["size"] = _string_size(field_stats.max_length)
        attributes.append(AttributeSpec(**data))
    return attributes
