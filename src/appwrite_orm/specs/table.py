"""
Declared schema types.

Defines tables, typed attributes, indexes and role-based permission rules as
consumers declare them. All models are frozen: a declaration is immutable for
the duration of a reconciliation pass.
"""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_STRING_SIZE = 255

# =============================================================================
# Attribute Type System
# =============================================================================


class AttributeKind(StrEnum):
    """Attribute kinds supported by the backend."""

    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    ENUM = "enum"
    DATETIME = "datetime"
    RELATIONSHIP = "relationship"


class RelationType(StrEnum):
    ONE_TO_ONE = "oneToOne"
    ONE_TO_MANY = "oneToMany"
    MANY_TO_ONE = "manyToOne"
    MANY_TO_MANY = "manyToMany"


class OnDelete(StrEnum):
    CASCADE = "cascade"
    RESTRICT = "restrict"
    SET_NULL = "setNull"


# Shorthand type names accepted in declarations, mapped to kinds.
_KIND_ALIASES: dict[str, AttributeKind] = {
    "str": AttributeKind.STRING,
    "text": AttributeKind.STRING,
    "email": AttributeKind.STRING,
    "url": AttributeKind.STRING,
    "ip": AttributeKind.STRING,
    "int": AttributeKind.INTEGER,
    "number": AttributeKind.INTEGER,
    "double": AttributeKind.FLOAT,
    "bool": AttributeKind.BOOLEAN,
    "date": AttributeKind.DATETIME,
    "Date": AttributeKind.DATETIME,
    "relation": AttributeKind.RELATIONSHIP,
}


def parse_kind(value: Any) -> AttributeKind:
    """Resolve a declared type name (or an enum value list) to a kind."""
    if isinstance(value, AttributeKind):
        return value
    if isinstance(value, list | tuple):
        return AttributeKind.ENUM
    if value in _KIND_ALIASES:
        return _KIND_ALIASES[value]
    return AttributeKind(value)


class AttributeSpec(BaseModel):
    """
    A typed attribute declared on a table.

    Attributes:
        name: Attribute key, unique within the table
        kind: Attribute kind
        required: Whether documents must carry a value
        array: Whether the attribute holds a list of values
        default: Default value (ignored for required attributes)
        size: Maximum length for string attributes
        min: Lower bound for numeric attributes
        max: Upper bound for numeric attributes
        enum_values: Allowed values for enum attributes
        related_table: Target table id for relationship attributes
        relation_type: Cardinality for relationship attributes
        two_way: Whether the backend maintains a reverse attribute
        on_delete: Behaviour when the related document is deleted
    """

    name: str = Field(min_length=1, max_length=36)
    kind: AttributeKind
    required: bool = False
    array: bool = False
    default: Any | None = None
    size: int | None = Field(default=None, gt=0)
    min: int | float | None = None
    max: int | float | None = None
    enum_values: list[str] | None = None
    related_table: str | None = None
    relation_type: RelationType | None = None
    two_way: bool = False
    on_delete: OnDelete = OnDelete.RESTRICT

    model_config = ConfigDict(frozen=True)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not re.fullmatch(r"[A-Za-z0-9_][A-Za-z0-9_.-]*", v):
            raise ValueError(f"Attribute name '{v}' must be alphanumeric (with _ . or -)")
        return v

    @model_validator(mode="before")
    @classmethod
    def apply_kind_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "kind" in data:
            data["kind"] = parse_kind(data["kind"])
        if data.get("kind") == AttributeKind.STRING and data.get("size") is None:
            data["size"] = DEFAULT_STRING_SIZE
        return data

    @model_validator(mode="after")
    def check_kind_constraints(self) -> AttributeSpec:
        if self.kind == AttributeKind.ENUM and not self.enum_values:
            raise ValueError(f"Enum attribute '{self.name}' must declare enum_values")
        if self.kind == AttributeKind.RELATIONSHIP:
            if not self.related_table:
                raise ValueError(f"Relationship attribute '{self.name}' must declare related_table")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"Attribute '{self.name}' has min greater than max")
        return self

    @property
    def effective_default(self) -> Any:
        """Default as sent to the backend, which rejects defaults on required attributes."""
        return None if self.required else self.default

    @classmethod
    def from_field(cls, name: str, field: dict[str, Any]) -> AttributeSpec:
        """
        Build from the declaration mapping form.

        ``{"type": "string", "required": True, "size": 100}`` and
        ``{"type": ["draft", "sent"]}`` (enum shorthand) are both accepted.
        """
        data = dict(field)
        kind = data.pop("kind", None) or data.pop("type", None)
        if kind is None:
            raise ValueError(f"Attribute '{name}' must declare a kind")
        if isinstance(kind, list | tuple):
            data.setdefault("enum_values", list(kind))
        if "enum" in data:
            data["enum_values"] = data.pop("enum")
        return cls(name=name, kind=parse_kind(kind), **data)


# =============================================================================
# Indexes
# =============================================================================


class IndexType(StrEnum):
    KEY = "key"
    FULLTEXT = "fulltext"
    UNIQUE = "unique"


class IndexSpec(BaseModel):
    """An index over one or more attributes."""

    key: str
    type: IndexType = IndexType.KEY
    attributes: list[str] = Field(min_length=1)
    orders: list[str] | None = None

    model_config = ConfigDict(frozen=True)

    @field_validator("orders")
    @classmethod
    def validate_orders(cls, v: list[str] | None) -> list[str] | None:
        if v:
            for order in v:
                if order.upper() not in ("ASC", "DESC"):
                    raise ValueError(f"Index order must be ASC or DESC, got '{order}'")
            return [o.upper() for o in v]
        return v


# =============================================================================
# Permissions
# =============================================================================


class PermissionAction(StrEnum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


_WIRE_PERMISSION = re.compile(r'^\s*(\w+)\("([^"]+)"\)\s*$')

# Legacy action covering all mutations.
_WRITE_ACTIONS = (PermissionAction.CREATE, PermissionAction.UPDATE, PermissionAction.DELETE)


def normalize_role(role: str) -> str:
    """``public`` is accepted as an alias of ``any``."""
    role = role.strip()
    return "any" if role == "public" else role


class PermissionRule(BaseModel):
    """A single (role, action) grant on a table. Compared as set members."""

    role: str
    action: PermissionAction

    model_config = ConfigDict(frozen=True)

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        v = normalize_role(v)
        if not v:
            raise ValueError("Permission role must not be empty")
        return v

    def to_wire(self) -> str:
        """Wire form, e.g. ``read("any")``."""
        return f'{self.action.value}("{self.role}")'

    @classmethod
    def from_wire(cls, value: str) -> list[PermissionRule]:
        """Parse a wire permission; ``write`` expands to create, update and delete."""
        match = _WIRE_PERMISSION.match(value)
        if not match:
            raise ValueError(f"Malformed permission string: {value!r}")
        action, role = match.groups()
        if action == "write":
            return [cls(role=role, action=a) for a in _WRITE_ACTIONS]
        return [cls(role=role, action=PermissionAction(action))]

    def __str__(self) -> str:
        return self.to_wire()


class PermissionGrant(BaseModel):
    """Declaration form: one role with the actions it may perform."""

    role: str
    actions: list[PermissionAction] = Field(min_length=1)

    model_config = ConfigDict(frozen=True)

    @field_validator("actions", mode="before")
    @classmethod
    def expand_write(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = [v]
        expanded: list[Any] = []
        for action in v:
            if action == "write":
                expanded.extend(_WRITE_ACTIONS)
            else:
                expanded.append(action)
        return expanded

    def rules(self) -> list[PermissionRule]:
        return [PermissionRule(role=self.role, action=action) for action in self.actions]


def grants_from_role_map(role_map: dict[str, Any]) -> list[PermissionGrant]:
    """
    Convert an ``{action: role | [roles]}`` mapping into grants.

    ``{"read": "any", "create": ["users", "team:admins"]}``
    """
    by_role: dict[str, list[str]] = {}
    for action, value in role_map.items():
        roles = value if isinstance(value, list | tuple) else [value]
        for role in roles:
            if not isinstance(role, str):
                continue
            by_role.setdefault(normalize_role(role), []).append(action)
    return [PermissionGrant(role=role, actions=actions) for role, actions in by_role.items()]


DEFAULT_PERMISSIONS = frozenset({PermissionRule(role="any", action=PermissionAction.READ)})


# =============================================================================
# Tables
# =============================================================================


class TableSpec(BaseModel):
    """
    A declared table (collection).

    Attributes:
        name: Table name
        id: Backend id (defaults to name)
        attributes: Declared attributes
        permissions: Role grants; empty means public read
        indexes: Declared indexes
        document_security: Enable per-document permissions on the backend
    """

    name: str = Field(min_length=1)
    id: str | None = None
    attributes: list[AttributeSpec] = Field(min_length=1)
    permissions: list[PermissionGrant] = Field(default_factory=list)
    indexes: list[IndexSpec] = Field(default_factory=list)
    document_security: bool = False

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def check_references(self) -> TableSpec:
        names = [a.name for a in self.attributes]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Table '{self.name}' declares duplicate attributes: {sorted(duplicates)}")
        known = set(names) | {"$id", "$createdAt", "$updatedAt"}
        for index in self.indexes:
            unknown = [a for a in index.attributes if a not in known]
            if unknown:
                raise ValueError(f"Index '{index.key}' references unknown attributes: {unknown}")
        return self

    @property
    def table_id(self) -> str:
        return self.id or self.name

    @property
    def attribute_map(self) -> dict[str, AttributeSpec]:
        return {a.name: a for a in self.attributes}

    def permission_rules(self) -> frozenset[PermissionRule]:
        """Declared rules as a set; defaults to public read."""
        if not self.permissions:
            return DEFAULT_PERMISSIONS
        return frozenset(rule for grant in self.permissions for rule in grant.rules())

    @classmethod
    def from_declaration(cls, declaration: dict[str, Any]) -> TableSpec:
        """
        Build from the mapping form::

            {
                "name": "messages",
                "attributes": {"body": {"type": "string", "required": True}},
                "permissions": [{"role": "users", "actions": ["read", "create"]}],
            }

        ``schema`` is accepted as an alias of ``attributes`` and ``role``
        (``{action: roles}``) as an alternative to ``permissions``.
        """
        data = dict(declaration)
        fields = data.pop("attributes", None) or data.pop("schema", None) or {}
        if isinstance(fields, dict):
            data["attributes"] = [AttributeSpec.from_field(n, f) for n, f in fields.items()]
        else:
            data["attributes"] = fields
        role_map = data.pop("role", None)
        if role_map and not data.get("permissions"):
            data["permissions"] = grants_from_role_map(role_map)
        return cls(**data)
