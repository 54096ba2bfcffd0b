"""
Error types for appwrite-orm reconciliation, caching, realtime and CRUD.

Reconciliation errors carry an ``ErrorContext`` naming the table and the
offending attribute or permission rule, so that a failed ``ORM.init`` can be
diagnosed from the message alone.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ErrorContext:
    """
    Where an error happened.

    Attributes:
        table: Table (collection) id
        attribute: Attribute name, for schema errors
        rule: Permission rule in wire form, for permission errors
        index: Record index, for import errors
    """

    table: str | None = None
    attribute: str | None = None
    rule: str | None = None
    index: int | None = None

    def format(self) -> str:
        """Format as ``table=messages attribute=body``."""
        parts = []
        if self.table is not None:
            parts.append(f"table={self.table}")
        if self.attribute is not None:
            parts.append(f"attribute={self.attribute}")
        if self.rule is not None:
            parts.append(f"rule={self.rule}")
        if self.index is not None:
            parts.append(f"index={self.index}")
        return " ".join(parts)


class ORMError(Exception):
    """Base exception for all appwrite-orm errors."""

    def __init__(self, message: str, context: ErrorContext | None = None):
        self.message = message
        self.context = context
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        if self.context:
            location = self.context.format()
            if location:
                return f"[{location}] {self.message}"
        return self.message

    @property
    def table(self) -> str | None:
        return self.context.table if self.context else None


class ConfigError(ORMError):
    """Raised when the ORM configuration is missing required values."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(f"Missing required configuration values: {', '.join(missing)}")


# =============================================================================
# Schema reconciliation
# =============================================================================


class SchemaConflictError(ORMError):
    """
    Raised when a declared attribute changes kind (e.g. string -> integer).

    The backend cannot change an attribute's type in place, so this is fatal
    for the table and is never retried.
    """

    def __init__(self, table: str, attribute: str, remote_kind: str, declared_kind: str):
        self.remote_kind = remote_kind
        self.declared_kind = declared_kind
        super().__init__(
            f"Cannot change attribute kind from '{remote_kind}' to '{declared_kind}'",
            ErrorContext(table=table, attribute=attribute),
        )


class MigrationError(ORMError):
    """Error while reconciling a table's structure."""

    pass


class DeclarationError(MigrationError):
    """A table declaration could not be turned into a valid schema."""

    def __init__(self, table: str, detail: str):
        super().__init__(f"Invalid table declaration: {detail}", ErrorContext(table=table))


class AttributeProvisioningError(MigrationError):
    """
    The backend rejected or failed to finish provisioning an attribute.

    ``status`` is the last observed remote status (``failed``, ``stuck``),
    ``timeout`` when polling ran out, or ``rejected`` when the create/update
    call itself failed.
    """

    def __init__(self, table: str, attribute: str, status: str, detail: str | None = None):
        self.status = status
        message = f"Attribute provisioning {status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, ErrorContext(table=table, attribute=attribute))


class PermissionApplyError(ORMError):
    """The backend rejected a single permission change."""

    def __init__(self, table: str, rule: str, operation: str, detail: str):
        self.operation = operation  # "add" | "remove"
        super().__init__(
            f"Failed to {operation} permission: {detail}",
            ErrorContext(table=table, rule=rule),
        )


class TableUnavailableError(ORMError):
    """Raised when accessing a table that is unknown or failed to reconcile."""

    def __init__(self, table: str, cause: BaseException | None = None):
        self.cause = cause
        message = "Table is not registered"
        if cause is not None:
            message = f"Table failed to reconcile: {cause}"
        super().__init__(message, ErrorContext(table=table))


# =============================================================================
# Import
# =============================================================================


class ImportBatchError(ORMError):
    """A whole import batch was rejected by the backend."""

    def __init__(self, table: str, start: int, size: int, detail: str):
        self.start = start
        self.size = size
        super().__init__(
            f"Batch of {size} records starting at {start} failed: {detail}",
            ErrorContext(table=table, index=start),
        )


# =============================================================================
# Realtime
# =============================================================================


class TransportDisconnectedError(ORMError):
    """The realtime channel dropped. Recovered internally by reconnecting."""

    pass


class RealtimeUnavailableError(ORMError):
    """Reconnect attempts were exhausted; realtime delivery has stopped."""

    def __init__(self, attempts: int, last_error: BaseException | None = None):
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"Realtime channel unavailable after {attempts} attempts{detail}")


# =============================================================================
# CRUD
# =============================================================================


class BackendError(ORMError):
    """Error response from the remote backend."""

    def __init__(
        self,
        message: str,
        code: int | None = None,
        type: str | None = None,
        context: ErrorContext | None = None,
    ):
        self.code = code
        self.type = type
        super().__init__(message, context)


class NotFoundError(BackendError):
    """Requested database, table, attribute or document does not exist."""

    def __init__(self, message: str, context: ErrorContext | None = None, type: str | None = None):
        super().__init__(message, code=404, type=type, context=context)


@dataclass
class FieldError:
    """A single field validation failure."""

    field: str
    message: str
    value: Any = field(default=None)


class ValidationError(ORMError):
    """Document data failed validation against the table schema."""

    def __init__(self, errors: list[FieldError], table: str | None = None):
        self.errors = errors
        detail = ", ".join(f"{e.field}: {e.message}" for e in errors)
        super().__init__(
            f"Validation failed: {detail}",
            ErrorContext(table=table) if table else None,
        )
