"""
Observed backend state.

These models are parsed from backend responses and are only ever read by the
reconciliation engine; the backend is the sole writer.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from appwrite_orm.specs.table import AttributeKind


class AttributeStatus(StrEnum):
    """Provisioning status reported for an attribute."""

    AVAILABLE = "available"
    PROCESSING = "processing"
    DELETING = "deleting"
    STUCK = "stuck"
    FAILED = "failed"

    @property
    def is_terminal_failure(self) -> bool:
        return self in (AttributeStatus.FAILED, AttributeStatus.STUCK)


_WIRE_KINDS: dict[str, AttributeKind] = {
    "string": AttributeKind.STRING,
    "integer": AttributeKind.INTEGER,
    "double": AttributeKind.FLOAT,
    "float": AttributeKind.FLOAT,
    "boolean": AttributeKind.BOOLEAN,
    "datetime": AttributeKind.DATETIME,
    "relationship": AttributeKind.RELATIONSHIP,
}


def kind_from_wire(type_: str, format_: str | None = None) -> AttributeKind:
    """Map the backend's ``type``/``format`` pair to an attribute kind."""
    if type_ == "string" and format_ == "enum":
        return AttributeKind.ENUM
    if type_ in _WIRE_KINDS:
        return _WIRE_KINDS[type_]
    return AttributeKind(type_)


class RemoteAttributeState(BaseModel):
    """An attribute as currently live on the backend."""

    name: str
    kind: AttributeKind
    status: AttributeStatus = AttributeStatus.AVAILABLE
    required: bool = False
    array: bool = False
    default: Any | None = None
    size: int | None = None
    min: int | float | None = None
    max: int | float | None = None
    enum_values: list[str] | None = None
    related_table: str | None = None
    # "child" marks the backend-maintained twin of a two-way relationship
    side: str | None = None
    error: str | None = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_relationship_twin(self) -> bool:
        return self.kind == AttributeKind.RELATIONSHIP and self.side == "child"

    @classmethod
    def from_remote(cls, data: dict[str, Any]) -> RemoteAttributeState:
        """Parse the backend's attribute JSON."""
        return cls(
            name=data["key"],
            kind=kind_from_wire(data.get("type", "string"), data.get("format")),
            status=AttributeStatus(data.get("status", "available")),
            required=bool(data.get("required", False)),
            array=bool(data.get("array", False)),
            default=data.get("default"),
            size=data.get("size"),
            min=data.get("min"),
            max=data.get("max"),
            enum_values=data.get("elements"),
            related_table=data.get("relatedCollection"),
            side=data.get("side"),
            error=data.get("error") or None,
        )


class RemoteTableState(BaseModel):
    """A table (collection) as currently live on the backend."""

    id: str
    name: str
    permissions: list[str] = Field(default_factory=list)
    attributes: list[RemoteAttributeState] = Field(default_factory=list)
    indexes: list[dict[str, Any]] = Field(default_factory=list)
    document_security: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def index_keys(self) -> set[str]:
        return {index["key"] for index in self.indexes if "key" in index}

    @classmethod
    def from_remote(cls, data: dict[str, Any]) -> RemoteTableState:
        return cls(
            id=data["$id"],
            name=data.get("name", data["$id"]),
            permissions=list(data.get("$permissions", [])),
            attributes=[RemoteAttributeState.from_remote(a) for a in data.get("attributes", [])],
            indexes=list(data.get("indexes", [])),
            document_security=bool(data.get("documentSecurity", False)),
        )
