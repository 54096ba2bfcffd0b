"""
Attribute diffing for schema reconciliation.

Compares a table's declared attributes with the attributes live on the
backend and produces an ordered, resumable ``MigrationPlan``.

Ordering:
- Creates first, so new attributes become queryable as early as possible
- Updates next
- Deletes last, so a removal never races with work on the same name

Not supported (raises ``SchemaConflictError``):
- Changing an attribute's kind in place
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from appwrite_orm.errors import SchemaConflictError
from appwrite_orm.specs.remote import RemoteAttributeState
from appwrite_orm.specs.table import DEFAULT_STRING_SIZE, AttributeKind, AttributeSpec

# =============================================================================
# Diff Operations
# =============================================================================


class OperationKind(str, Enum):
    """Types of attribute operations."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class CreateAttribute:
    spec: AttributeSpec

    kind = OperationKind.CREATE

    @property
    def name(self) -> str:
        return self.spec.name


@dataclass(frozen=True)
class UpdateAttribute:
    """Change constraints of an existing attribute.

    ``changes`` maps field name to ``(remote_value, declared_value)``.
    """

    spec: AttributeSpec
    changes: dict[str, tuple[Any, Any]] = field(default_factory=dict, hash=False)

    kind = OperationKind.UPDATE

    @property
    def name(self) -> str:
        return self.spec.name


@dataclass(frozen=True)
class DeleteAttribute:
    name: str

    kind = OperationKind.DELETE


DiffOperation = CreateAttribute | UpdateAttribute | DeleteAttribute

_PHASE = {OperationKind.CREATE: 0, OperationKind.UPDATE: 1, OperationKind.DELETE: 2}


# =============================================================================
# Migration Plan
# =============================================================================


@dataclass
class MigrationPlan:
    """
    Ordered attribute operations for one table, with progress tracking.

    ``cursor`` is the index of the last operation of the fully applied
    prefix (``-1`` before anything is applied). Operations applied out of
    order by concurrent execution are tracked in ``completed`` so a retry
    skips them too.
    """

    table_id: str
    operations: list[DiffOperation] = field(default_factory=list)
    cursor: int = -1
    completed: set[int] = field(default_factory=set)

    @property
    def is_empty(self) -> bool:
        return len(self.operations) == 0

    @property
    def is_complete(self) -> bool:
        return len(self.completed) == len(self.operations)

    @property
    def remaining(self) -> list[tuple[int, DiffOperation]]:
        """Operations not yet applied, with their plan indexes."""
        return [(i, op) for i, op in enumerate(self.operations) if i not in self.completed]

    def mark_applied(self, index: int) -> None:
        self.completed.add(index)
        while self.cursor + 1 in self.completed:
            self.cursor += 1

    def of_kind(self, kind: OperationKind) -> list[DiffOperation]:
        return [op for op in self.operations if op.kind == kind]

    def normalize(self, remote: Mapping[str, RemoteAttributeState] | None = None) -> None:
        """
        Collapse Create+Delete pairs on the same name into an Update and
        restore phase ordering. Only valid before execution starts.
        """
        if self.completed:
            raise ValueError("Cannot normalize a plan that has started executing")

        remote = remote or {}
        creates = {op.name: op for op in self.operations if isinstance(op, CreateAttribute)}
        deletes = {op.name for op in self.operations if isinstance(op, DeleteAttribute)}
        collisions = creates.keys() & deletes

        operations: list[DiffOperation] = []
        for op in self.operations:
            if op.name in collisions:
                if isinstance(op, DeleteAttribute):
                    continue
                if isinstance(op, CreateAttribute):
                    op = _collapse_to_update(self.table_id, op.spec, remote.get(op.name))
            operations.append(op)

        self.operations = sorted(operations, key=lambda op: _PHASE[op.kind])

    def summary(self) -> dict[str, int]:
        return {kind.value: len(self.of_kind(kind)) for kind in OperationKind}


def _collapse_to_update(
    table_id: str, spec: AttributeSpec, remote: RemoteAttributeState | None
) -> UpdateAttribute:
    if remote is None:
        changes = {
            name: (None, value)
            for name, value in _comparable(spec).items()
            if value is not None
        }
        return UpdateAttribute(spec=spec, changes=changes)
    if remote.kind != spec.kind:
        raise SchemaConflictError(table_id, spec.name, remote.kind.value, spec.kind.value)
    return UpdateAttribute(spec=spec, changes=attribute_changes(spec, remote))


# =============================================================================
# Comparison
# =============================================================================


def _comparable(spec: AttributeSpec) -> dict[str, Any]:
    """Fields the differ compares, as the backend would store them."""
    values: dict[str, Any] = {
        "required": spec.required,
        "array": spec.array,
        "default": spec.effective_default,
    }
    if spec.kind == AttributeKind.STRING:
        values["size"] = spec.size or DEFAULT_STRING_SIZE
    if spec.kind in (AttributeKind.INTEGER, AttributeKind.FLOAT):
        values["min"] = spec.min
        values["max"] = spec.max
    if spec.kind == AttributeKind.ENUM:
        values["enum_values"] = spec.enum_values
    return values


def _instant(value: Any) -> Any:
    """A datetime default as an aware UTC datetime, so equal instants compare equal."""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    return value


def attribute_changes(
    spec: AttributeSpec, remote: RemoteAttributeState
) -> dict[str, tuple[Any, Any]]:
    """
    Compare a declared attribute with its remote state.

    Returns a mapping of changed field to ``(remote, declared)``. Numeric
    bounds are only compared when declared, since the backend reports its
    own extremes for unbounded attributes. Datetime defaults are compared
    as instants. Relationship attributes are compared on kind alone.
    """
    if spec.kind == AttributeKind.RELATIONSHIP:
        return {}

    changes: dict[str, tuple[Any, Any]] = {}
    for name, declared in _comparable(spec).items():
        current = getattr(remote, name)
        if name in ("min", "max"):
            if declared is None or current == declared:
                continue
        elif name == "enum_values":
            if set(current or []) == set(declared or []):
                continue
        elif name == "size":
            if current is None or current == declared:
                continue
        elif name == "default" and spec.kind == AttributeKind.DATETIME:
            if _instant(current) == _instant(declared):
                continue
        elif current == declared:
            continue
        changes[name] = (current, declared)
    return changes


# =============================================================================
# Differ
# =============================================================================


class AttributeDiffer:
    """
    Plans attribute operations by comparing declared specs to remote state.
    """

    def diff(
        self,
        table_id: str,
        declared: Iterable[AttributeSpec],
        remote: Iterable[RemoteAttributeState],
    ) -> MigrationPlan:
        """
        Create a migration plan for one table.

        Args:
            table_id: Backend table id
            declared: Declared attributes
            remote: Attributes currently live on the backend

        Returns:
            Plan with creates, then updates, then deletes

        Raises:
            SchemaConflictError: A declared attribute changes kind
        """
        declared_map = {spec.name: spec for spec in declared}
        remote_map = {state.name: state for state in remote}

        creates: list[DiffOperation] = []
        updates: list[DiffOperation] = []
        deletes: list[DiffOperation] = []

        for name, spec in declared_map.items():
            state = remote_map.get(name)
            if state is None:
                creates.append(CreateAttribute(spec=spec))
                continue
            if state.kind != spec.kind:
                raise SchemaConflictError(table_id, name, state.kind.value, spec.kind.value)
            changes = attribute_changes(spec, state)
            if changes:
                updates.append(UpdateAttribute(spec=spec, changes=changes))

        for name, state in remote_map.items():
            # Twins of two-way relationships belong to the other table's declaration
            if name not in declared_map and not state.is_relationship_twin:
                deletes.append(DeleteAttribute(name=name))

        plan = MigrationPlan(table_id=table_id, operations=creates + updates + deletes)
        plan.normalize(remote_map)
        return plan
