"""
Schema export.

Renders declared tables as portable SQL DDL (SQLite-compatible types), as
Firebase Realtime Database security rules, or as a plain-text description
for documentation and review.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable
from datetime import date, datetime
from typing import Any

from appwrite_orm.specs.table import (
    AttributeKind,
    AttributeSpec,
    IndexType,
    PermissionAction,
    TableSpec,
)

# =============================================================================
# SQL
# =============================================================================


def _escape(value: str) -> str:
    return value.replace("'", "''")


def _sql_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int | float):
        return str(value)
    if isinstance(value, datetime | date):
        return f"'{value.isoformat()}'"
    return f"'{_escape(str(value))}'"


def _sql_type(attribute: AttributeSpec) -> str:
    if attribute.array:
        # Arrays are stored as JSON text
        return "TEXT"
    if attribute.kind in (AttributeKind.STRING, AttributeKind.ENUM, AttributeKind.RELATIONSHIP):
        return f"VARCHAR({attribute.size or 255})"
    if attribute.kind in (AttributeKind.INTEGER, AttributeKind.BOOLEAN):
        return "INTEGER"
    if attribute.kind == AttributeKind.FLOAT:
        return "REAL"
    return "TEXT"


def _column_def(attribute: AttributeSpec) -> str:
    parts = [attribute.name, _sql_type(attribute)]
    if attribute.required:
        parts.append("NOT NULL")
    if attribute.effective_default is not None:
        parts.append(f"DEFAULT {_sql_literal(attribute.effective_default)}")
    return " ".join(parts)


def _check_constraints(attribute: AttributeSpec) -> list[str]:
    if attribute.array:
        return []
    name = attribute.name
    if attribute.kind in (AttributeKind.INTEGER, AttributeKind.FLOAT):
        bounds = []
        if attribute.min is not None:
            bounds.append(f"{name} >= {attribute.min}")
        if attribute.max is not None:
            bounds.append(f"{name} <= {attribute.max}")
        return [f"CHECK ({' AND '.join(bounds)})"] if bounds else []
    if attribute.kind == AttributeKind.BOOLEAN:
        return [f"CHECK ({name} IN (0, 1))"]
    if attribute.kind == AttributeKind.ENUM and attribute.enum_values:
        values = ", ".join(f"'{_escape(v)}'" for v in attribute.enum_values)
        return [f"CHECK ({name} IN ({values}))"]
    return []


def table_to_sql(table: TableSpec) -> str:
    """``CREATE TABLE`` statement for one table."""
    lines = ["$id VARCHAR(255) PRIMARY KEY"]
    lines.extend(_column_def(a) for a in table.attributes)

    for index in table.indexes:
        if index.type == IndexType.UNIQUE:
            lines.append(f"UNIQUE ({', '.join(index.attributes)})")
    for attribute in table.attributes:
        lines.extend(_check_constraints(attribute))
    for attribute in table.attributes:
        if attribute.kind == AttributeKind.RELATIONSHIP and not attribute.array:
            lines.append(f"FOREIGN KEY ({attribute.name}) REFERENCES {attribute.related_table}($id)")

    body = ",\n".join(f"  {line}" for line in lines)
    statements = [f"CREATE TABLE {table.table_id} (\n{body}\n);"]
    for index in table.indexes:
        if index.type == IndexType.KEY:
            statements.append(
                f"CREATE INDEX {index.key} ON {table.table_id} ({', '.join(index.attributes)});"
            )
    return "\n".join(statements)


def to_sql(tables: Iterable[TableSpec]) -> str:
    """SQL DDL for all tables."""
    statements = [table_to_sql(t) for t in tables]
    if not statements:
        return "-- No tables defined\n"
    return "\n\n".join(statements) + "\n"


# =============================================================================
# Firebase
# =============================================================================

_WRITE_ACTIONS = frozenset({PermissionAction.CREATE, PermissionAction.UPDATE, PermissionAction.DELETE})
_REGEX_SPECIAL = re.compile(r"[.*+?^${}()|\[\]\\/]")


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _role_condition(role: str) -> str:
    """Rule expression granting access to one role."""
    if role == "any":
        return "true"
    if role == "users":
        return "auth != null"
    if role == "guests":
        return "auth == null"
    if role.startswith("user:"):
        return f"auth != null && auth.uid == '{_quote(role[5:])}'"
    return f"auth != null && auth.token.role == '{_quote(role)}'"


def _access_rule(table: TableSpec, actions: Iterable[PermissionAction]) -> str:
    actions = frozenset(actions)
    conditions = sorted({_role_condition(r.role) for r in table.permission_rules() if r.action in actions})
    if not conditions:
        return "false"
    if "true" in conditions:
        return "true"
    return " || ".join(conditions)


def _field_validation(attribute: AttributeSpec) -> str | None:
    # Array elements are not checked
    if attribute.array:
        return None

    checks: list[str] = []
    if attribute.kind == AttributeKind.INTEGER:
        checks.append("newData.isNumber() && newData.val() % 1 === 0")
    elif attribute.kind == AttributeKind.FLOAT:
        checks.append("newData.isNumber()")
    elif attribute.kind == AttributeKind.BOOLEAN:
        checks.append("newData.isBoolean()")
    else:
        checks.append("newData.isString()")

    if attribute.kind == AttributeKind.STRING and attribute.size:
        checks.append(f"newData.val().length <= {attribute.size}")
    if attribute.kind in (AttributeKind.INTEGER, AttributeKind.FLOAT):
        if attribute.min is not None:
            checks.append(f"newData.val() >= {attribute.min}")
        if attribute.max is not None:
            checks.append(f"newData.val() <= {attribute.max}")
    if attribute.kind == AttributeKind.ENUM and attribute.enum_values:
        pattern = "|".join(_REGEX_SPECIAL.sub(r"\\\g<0>", v) for v in attribute.enum_values)
        checks.append(f"newData.val().matches(/^({pattern})$/)")
    return " && ".join(checks)


def table_to_firebase(table: TableSpec) -> dict[str, Any]:
    """Security rules for one table, keyed under its id by :func:`to_firebase`."""
    item: dict[str, Any] = {}
    required = [a.name for a in table.attributes if a.required]
    if required:
        names = ", ".join(f"'{_quote(name)}'" for name in required)
        item[".validate"] = f"newData.hasChildren([{names}])"
    for attribute in table.attributes:
        validation = _field_validation(attribute)
        if validation:
            item[attribute.name] = {".validate": validation}

    rules: dict[str, Any] = {
        ".read": _access_rule(table, [PermissionAction.READ]),
        ".write": _access_rule(table, _WRITE_ACTIONS),
    }
    if item:
        rules["$itemId"] = item
    return rules


def to_firebase(tables: Iterable[TableSpec]) -> str:
    """Firebase Realtime Database rules document (JSON) for all tables."""
    rules = {t.table_id: table_to_firebase(t) for t in tables}
    return json.dumps({"rules": rules}, indent=2) + "\n"

# =============================================================================
# Text
# =============================================================================


def _text_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return f'"{value}"'
    if isinstance(value, datetime | date):
        return value.isoformat()
    return str(value)


def _describe(attribute: AttributeSpec) -> str:
    if attribute.kind == AttributeKind.ENUM:
        details = [f"enum: {', '.join(attribute.enum_values or [])}"]
    elif attribute.kind == AttributeKind.RELATIONSHIP:
        relation = attribute.relation_type.value if attribute.relation_type else "manyToOne"
        details = [f"relationship -> {attribute.related_table} ({relation})"]
    else:
        details = [attribute.kind.value]

    if attribute.required:
        details.append("required")
    if attribute.array:
        details.append("array")
    if attribute.kind == AttributeKind.STRING and attribute.size:
        details.append(f"max length: {attribute.size}")
    if attribute.min is not None:
        details.append(f"min: {attribute.min}")
    if attribute.max is not None:
        details.append(f"max: {attribute.max}")
    if attribute.effective_default is not None:
        details.append(f"default: {_text_literal(attribute.effective_default)}")
    return f"  - {attribute.name} ({', '.join(details)})"


def table_to_text(table: TableSpec) -> str:
    title = f"Collection: {table.table_id}"
    lines = [title, "-" * len(title), "Fields:", "  - $id (string, primary key)"]
    lines.extend(_describe(a) for a in table.attributes)

    if table.indexes:
        lines.extend(["", "Indexes:"])
        for index in table.indexes:
            lines.append(f"  - {index.key} ({index.type.value}): {', '.join(index.attributes)}")

    rules = sorted(str(rule) for rule in table.permission_rules())
    lines.extend(["", f"Permissions: {', '.join(rules)}"])
    return "\n".join(lines)


def to_text(tables: Iterable[TableSpec]) -> str:
    """Human-readable description of all tables."""
    header = "Database Schema\n===============\n"
    sections = [table_to_text(t) for t in tables]
    if not sections:
        return f"{header}\nNo tables defined.\n"
    return header + "\n" + "\n\n".join(sections) + "\n"
