"""
Document validation against declared attributes.

Runs before every write so that the caller gets per-field errors instead of
a single backend rejection.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any

from appwrite_orm.errors import FieldError, ValidationError
from appwrite_orm.specs.table import AttributeKind, AttributeSpec, TableSpec


def _type_matches(kind: AttributeKind, value: Any) -> bool:
    if kind in (AttributeKind.STRING, AttributeKind.ENUM):
        return isinstance(value, str)
    if kind == AttributeKind.INTEGER:
        return isinstance(value, int) and not isinstance(value, bool)
    if kind == AttributeKind.FLOAT:
        return (
            isinstance(value, int | float)
            and not isinstance(value, bool)
            and not (isinstance(value, float) and math.isnan(value))
        )
    if kind == AttributeKind.BOOLEAN:
        return isinstance(value, bool)
    if kind == AttributeKind.DATETIME:
        return isinstance(value, str | datetime | date)
    # Relationship values are document ids or nested documents
    return isinstance(value, str | dict)


def validate_value(spec: AttributeSpec, value: Any) -> list[FieldError]:
    """Validate one attribute value. ``None`` fails only for required attributes."""
    if value is None:
        if spec.required:
            return [FieldError(spec.name, "Field is required", value)]
        return []

    if spec.array:
        if not isinstance(value, list | tuple):
            return [FieldError(spec.name, "Expected a list", value)]
        errors: list[FieldError] = []
        for item in value:
            errors.extend(_validate_scalar(spec, item))
        return errors
    return _validate_scalar(spec, value)


def _validate_scalar(spec: AttributeSpec, value: Any) -> list[FieldError]:
    if not _type_matches(spec.kind, value):
        return [
            FieldError(
                spec.name,
                f"Expected type {spec.kind.value}, got {type(value).__name__}",
                value,
            )
        ]

    errors: list[FieldError] = []
    if spec.kind == AttributeKind.STRING and spec.size and len(value) > spec.size:
        errors.append(FieldError(spec.name, f"String length exceeds maximum of {spec.size}", value))
    if spec.kind in (AttributeKind.INTEGER, AttributeKind.FLOAT):
        if spec.min is not None and value < spec.min:
            errors.append(FieldError(spec.name, f"Value {value} is below minimum of {spec.min}", value))
        if spec.max is not None and value > spec.max:
            errors.append(FieldError(spec.name, f"Value {value} exceeds maximum of {spec.max}", value))
    if spec.kind == AttributeKind.ENUM and value not in (spec.enum_values or []):
        errors.append(
            FieldError(spec.name, f"Value must be one of: {', '.join(spec.enum_values or [])}", value)
        )
    return errors


def validate_document(
    attributes: Mapping[str, AttributeSpec],
    data: Mapping[str, Any],
    *,
    partial: bool = False,
    allow_unknown: bool = False,
) -> list[FieldError]:
    """
    Validate a document against attribute specs.

    Args:
        attributes: Attribute specs by name
        data: Document data; ``$``-prefixed system fields are ignored
        partial: Only validate the fields present (updates)
        allow_unknown: Accept fields with no matching attribute

    Returns:
        All field errors, empty when the document is valid
    """
    errors: list[FieldError] = []
    for name, spec in attributes.items():
        if name not in data:
            if partial:
                continue
            if spec.required:
                errors.append(FieldError(name, "Field is required"))
            continue
        errors.extend(validate_value(spec, data[name]))

    if not allow_unknown:
        for name, value in data.items():
            if name.startswith("$") or name in attributes:
                continue
            errors.append(FieldError(name, "Unknown attribute", value))
    return errors


class Validator:
    """Validates documents for one table and raises ``ValidationError``."""

    def __init__(self, table: TableSpec):
        self.table = table
        self._attributes = table.attribute_map

    def errors(self, data: Mapping[str, Any], partial: bool = False) -> list[FieldError]:
        return validate_document(self._attributes, data, partial=partial)

    def validate(self, data: Mapping[str, Any], partial: bool = False) -> None:
        errors = self.errors(data, partial=partial)
        if errors:
            raise ValidationError(errors, table=self.table.table_id)
