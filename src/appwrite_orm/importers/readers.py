"""
Import source readers.

Each reader turns an external dataset into a lazy iterator of normalized
records: plain dicts mapping field names to scalars (``str``, ``int``,
``float``, ``bool``, ``None``) or lists of scalars.
"""

from __future__ import annotations

import csv
import io
import json
import re
from collections.abc import Iterator, Mapping
from typing import Any

Record = dict[str, Any]

_INT = re.compile(r"^-?(0|[1-9]\d*)$")
_FLOAT = re.compile(r"^-?\d+\.\d*([eE][-+]?\d+)?$|^-?\d+[eE][-+]?\d+$")


def coerce_scalar(raw: str) -> Any:
    """Coerce a text value: empty/NULL to None, then bool, int and float."""
    value = raw.strip()
    if value == "" or value.upper() == "NULL":
        return None
    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if _INT.match(value):
        return int(value)
    if _FLOAT.match(value):
        return float(value)
    return raw


# =============================================================================
# Delimited text
# =============================================================================


def read_delimited(text: str, delimiter: str = ",") -> Iterator[Record]:
    """Records from delimited text with a header row."""
    reader = csv.DictReader(io.StringIO(text), delimiter=delimiter)
    for row in reader:
        yield {
            key.strip(): coerce_scalar(value) if value is not None else None
            for key, value in row.items()
            if key is not None
        }


# =============================================================================
# Structured export
# =============================================================================


def _is_collection(value: Any) -> bool:
    if isinstance(value, list):
        return True
    return isinstance(value, dict) and bool(value) and all(isinstance(v, dict) for v in value.values())


def _section_records(section: Any) -> Iterator[Record]:
    if isinstance(section, list):
        for item in section:
            if not isinstance(item, dict):
                raise ValueError(f"Export record must be an object, got {type(item).__name__}")
            yield dict(item)
    elif isinstance(section, dict):
        for document in section.values():
            yield dict(document)
    else:
        raise ValueError(f"Unsupported export section of type {type(section).__name__}")


def read_export(
    payload: str | bytes | Mapping[str, Any] | list[Any], collection: str | None = None
) -> Iterator[Record]:
    """
    Records from a structured (JSON) export.

    Accepted shapes:
        ``[{...}, ...]``
        ``{doc_id: {...}, ...}``
        ``{collection: [{...}, ...]}`` or ``{collection: {doc_id: {...}}}``

    A payload holding several collections needs ``collection``.
    """
    data = json.loads(payload) if isinstance(payload, str | bytes) else payload

    if collection is not None:
        if not isinstance(data, Mapping) or collection not in data:
            raise ValueError(f"Export has no collection '{collection}'")
        yield from _section_records(data[collection])
        return

    if isinstance(data, list):
        yield from _section_records(data)
        return
    if not isinstance(data, Mapping):
        raise ValueError("Export payload must be a JSON object or array")

    values = list(data.values())
    if values and all(_is_collection(v) for v in values):
        if len(data) != 1:
            raise ValueError(f"Export holds several collections ({', '.join(data)}); pass collection=")
        yield from _section_records(values[0])
    elif values and all(isinstance(v, dict) for v in values):
        yield from _section_records(dict(data))
    else:
        yield dict(data)


# =============================================================================
# SQL dump
# =============================================================================

_NAME = r"[`\"\[]?(\w+)[`\"\]]?"
_CREATE_TABLE = re.compile(rf"CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?{_NAME}\s*\(", re.IGNORECASE)
_INSERT = re.compile(rf"INSERT\s+INTO\s+{_NAME}\s*(?:\(([^)]*)\))?\s*VALUES\s*", re.IGNORECASE)
_CONSTRAINT_WORDS = {"PRIMARY", "UNIQUE", "CHECK", "FOREIGN", "CONSTRAINT", "KEY", "INDEX"}
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0"}


def _split_top_level(text: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    quoted = False
    current: list[str] = []
    for ch in text:
        if ch == "'":
            quoted = not quoted
        elif not quoted and ch == "(":
            depth += 1
        elif not quoted and ch == ")":
            depth -= 1
        elif not quoted and ch == "," and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)
    parts.append("".join(current))
    return parts


def _matching_paren(text: str, start: int) -> int:
    """Index of the ``)`` closing the ``(`` at ``start``."""
    depth = 0
    quoted = False
    for i in range(start, len(text)):
        ch = text[i]
        if ch == "'":
            quoted = not quoted
        elif not quoted and ch == "(":
            depth += 1
        elif not quoted and ch == ")":
            depth -= 1
            if depth == 0:
                return i
    raise ValueError("Unbalanced parentheses in CREATE TABLE")


def sql_table_columns(text: str) -> dict[str, list[str]]:
    """Column names of each ``CREATE TABLE`` statement in a dump."""
    tables: dict[str, list[str]] = {}
    for match in _CREATE_TABLE.finditer(text):
        open_paren = match.end() - 1
        body = text[open_paren + 1 : _matching_paren(text, open_paren)]
        columns = []
        for definition in _split_top_level(body):
            words = definition.split()
            if not words or words[0].upper() in _CONSTRAINT_WORDS:
                continue
            columns.append(words[0].strip("`\"[]"))
        tables[match.group(1)] = columns
    return tables


def _sql_literal(raw: str) -> Any:
    value = raw.strip()
    upper = value.upper()
    if upper == "NULL":
        return None
    if upper in ("TRUE", "FALSE"):
        return upper == "TRUE"
    if _INT.match(value):
        return int(value)
    if _FLOAT.match(value):
        return float(value)
    return value


def _parse_string(text: str, i: int) -> tuple[str, int]:
    """Parse a quoted SQL string starting at ``text[i] == "'"``."""
    buffer: list[str] = []
    j = i + 1
    while j < len(text):
        ch = text[j]
        if ch == "'":
            if j + 1 < len(text) and text[j + 1] == "'":
                buffer.append("'")
                j += 2
                continue
            return "".join(buffer), j + 1
        if ch == "\\" and j + 1 < len(text):
            buffer.append(_ESCAPES.get(text[j + 1], text[j + 1]))
            j += 2
            continue
        buffer.append(ch)
        j += 1
    raise ValueError("Unterminated string literal in SQL dump")


def _skip_ws(text: str, i: int) -> int:
    while i < len(text) and text[i].isspace():
        i += 1
    return i


def _parse_tuple(text: str, i: int) -> tuple[list[Any], int]:
    """Parse ``(v1, v2, ...)`` starting at ``text[i] == "("``."""
    values: list[Any] = []
    i = _skip_ws(text, i + 1)
    if i < len(text) and text[i] == ")":
        return values, i + 1

    while i < len(text):
        i = _skip_ws(text, i)
        if i >= len(text):
            break
        if text[i] == "'":
            value, i = _parse_string(text, i)
            values.append(value)
        else:
            start = i
            depth = 0
            while i < len(text) and not (depth == 0 and text[i] in ",)"):
                if text[i] == "(":
                    depth += 1
                elif text[i] == ")":
                    depth -= 1
                i += 1
            values.append(_sql_literal(text[start:i]))
        i = _skip_ws(text, i)
        if i < len(text) and text[i] == ",":
            i += 1
            continue
        if i < len(text) and text[i] == ")":
            return values, i + 1
        break
    raise ValueError("Malformed VALUES tuple in SQL dump")


def read_sql_dump(text: str, table: str | None = None) -> Iterator[Record]:
    """
    Records from the ``INSERT INTO ... VALUES`` statements of a SQL dump.

    Column names come from the INSERT's column list, or from the matching
    ``CREATE TABLE`` when the INSERT has none.

    Args:
        text: Dump text
        table: Only read rows inserted into this table
    """
    columns_by_table = sql_table_columns(text)

    for match in _INSERT.finditer(text):
        name = match.group(1)
        if table is not None and name != table:
            continue
        if match.group(2):
            columns = [c.strip().strip("`\"[]") for c in match.group(2).split(",")]
        elif name in columns_by_table:
            columns = columns_by_table[name]
        else:
            raise ValueError(f"INSERT into '{name}' has no column list and no CREATE TABLE")

        i = match.end()
        while True:
            i = _skip_ws(text, i)
            if i >= len(text) or text[i] != "(":
                break
            values, i = _parse_tuple(text, i)
            if len(values) != len(columns):
                raise ValueError(
                    f"INSERT into '{name}' has {len(values)} values for {len(columns)} columns"
                )
            yield dict(zip(columns, values, strict=True))
            i = _skip_ws(text, i)
            if i < len(text) and text[i] == ",":
                i += 1
                continue
            break
