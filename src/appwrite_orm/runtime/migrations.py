"""
Schema migration for declared tables.

``MigrationExecutor`` applies a ``MigrationPlan`` against the backend,
waiting for each created or updated attribute to finish provisioning.
``SchemaReconciler`` drives a whole table: database, collection, attributes,
indexes and permissions.

Supported operations:
- Create missing collections (with declared permissions)
- Create, update and delete attributes
- Create missing indexes
- Converge collection permissions

Not supported (raises ``SchemaConflictError``):
- Change attribute kinds in place
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from appwrite_orm.backends.base import BackendClient
from appwrite_orm.errors import (
    AttributeProvisioningError,
    BackendError,
    ErrorContext,
    MigrationError,
    NotFoundError,
    SchemaConflictError,
)
from appwrite_orm.logging import get_logger, log_with_context
from appwrite_orm.runtime.differ import (
    AttributeDiffer,
    CreateAttribute,
    DeleteAttribute,
    DiffOperation,
    MigrationPlan,
    OperationKind,
    UpdateAttribute,
)
from appwrite_orm.runtime.permissions import PermissionReconciler, PermissionResult, to_wire
from appwrite_orm.runtime.retry import PollPolicy
from appwrite_orm.specs.remote import AttributeStatus, RemoteAttributeState, RemoteTableState
from appwrite_orm.specs.table import TableSpec

logger = get_logger("Migrate")

SleepFn = Callable[[float], Awaitable[None]]

_ALREADY_EXISTS = {"attribute_already_exists", "index_already_exists", "collection_already_exists"}


def _already_exists(error: BackendError) -> bool:
    return error.code == 409 or error.type in _ALREADY_EXISTS


# =============================================================================
# Migration History
# =============================================================================


@dataclass
class AppliedStep:
    """A migration operation that completed on the backend."""

    table_id: str
    action: OperationKind
    attribute: str
    applied_at: datetime


class MigrationHistory:
    """
    Record of applied migration steps for the lifetime of an ORM.

    The backend is the source of truth for schema state; this is kept for
    reporting and debugging.
    """

    def __init__(self) -> None:
        self._steps: list[AppliedStep] = []

    def record(self, table_id: str, operation: DiffOperation) -> None:
        self._steps.append(
            AppliedStep(
                table_id=table_id,
                action=operation.kind,
                attribute=operation.name,
                applied_at=datetime.now(UTC),
            )
        )

    def for_table(self, table_id: str) -> list[AppliedStep]:
        return [s for s in self._steps if s.table_id == table_id]

    def __len__(self) -> int:
        return len(self._steps)


# =============================================================================
# Migration Executor
# =============================================================================


class MigrationExecutor:
    """
    Applies migration plans and waits for attribute readiness.

    Operations on distinct attributes run concurrently (bounded by
    ``max_concurrency``); operations on the same attribute run in plan order.
    Deletes run after every create and update has resolved.

    Args:
        backend: Backend client
        poll: Readiness polling policy
        max_concurrency: Parallel attribute operations
        sleep: Awaitable sleep, injectable for tests
        history: Optional history to record applied steps into
    """

    def __init__(
        self,
        backend: BackendClient,
        poll: PollPolicy | None = None,
        max_concurrency: int = 4,
        sleep: SleepFn = asyncio.sleep,
        history: MigrationHistory | None = None,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.backend = backend
        self.poll = poll or PollPolicy()
        self.max_concurrency = max_concurrency
        self._sleep = sleep
        self.history = history

    async def execute(self, plan: MigrationPlan) -> list[DiffOperation]:
        """
        Apply the operations of ``plan`` that are not yet applied.

        Progress is recorded on the plan itself, so executing the same plan
        again after a failure only applies the remaining operations.

        Returns:
            Operations applied by this call

        Raises:
            AttributeProvisioningError: An attribute was rejected, failed,
                got stuck or timed out. Other in-flight operations are
                allowed to finish first.
        """
        remaining = plan.remaining
        if not remaining:
            return []

        logger.info("Applying %d migration operations to %s", len(remaining), plan.table_id)
        applied: list[DiffOperation] = []

        groups: dict[str, list[tuple[int, DiffOperation]]] = {}
        deletes: list[tuple[int, DiffOperation]] = []
        for index, op in remaining:
            if op.kind == OperationKind.DELETE:
                deletes.append((index, op))
            else:
                groups.setdefault(op.name, []).append((index, op))

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run_group(items: list[tuple[int, DiffOperation]]) -> None:
            async with semaphore:
                for index, op in items:
                    await self._apply(plan.table_id, op)
                    self._mark(plan, index, op)
                    applied.append(op)

        results = await asyncio.gather(
            *(run_group(items) for items in groups.values()), return_exceptions=True
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures:
            if not isinstance(failure, Exception):
                raise failure
        if failures:
            logger.error(
                "Migration of %s stopped with %d failures (%d/%d applied)",
                plan.table_id,
                len(failures),
                len(plan.completed),
                len(plan.operations),
            )
            raise failures[0]

        for index, op in deletes:
            await self._apply(plan.table_id, op)
            self._mark(plan, index, op)
            applied.append(op)

        return applied

    def _mark(self, plan: MigrationPlan, index: int, op: DiffOperation) -> None:
        plan.mark_applied(index)
        if self.history is not None:
            self.history.record(plan.table_id, op)

    async def _apply(self, table_id: str, op: DiffOperation) -> None:
        if isinstance(op, DeleteAttribute):
            logger.info("Deleting attribute %s.%s", table_id, op.name)
            try:
                await self.backend.delete_attribute(table_id, op.name)
            except NotFoundError:
                logger.debug("Attribute %s.%s already deleted", table_id, op.name)
            except BackendError as e:
                raise AttributeProvisioningError(table_id, op.name, "rejected", e.message) from e
            return

        try:
            if isinstance(op, CreateAttribute):
                logger.info("Creating attribute %s.%s (%s)", table_id, op.name, op.spec.kind.value)
                await self.backend.create_attribute(table_id, op.spec)
            elif isinstance(op, UpdateAttribute):
                logger.info(
                    "Updating attribute %s.%s: %s", table_id, op.name, ", ".join(sorted(op.changes))
                )
                await self.backend.update_attribute(table_id, op.spec)
        except BackendError as e:
            if not (isinstance(op, CreateAttribute) and _already_exists(e)):
                raise AttributeProvisioningError(table_id, op.name, "rejected", e.message) from e
            logger.info("Attribute %s.%s already exists, waiting for it", table_id, op.name)

        await self.wait_available(table_id, op.name)

    async def wait_available(self, table_id: str, name: str) -> RemoteAttributeState:
        """
        Poll an attribute until it is ``available``.

        Raises:
            AttributeProvisioningError: Status ``failed`` or ``stuck``, or
                the poll policy timed out (status ``timeout``)
        """
        for attempt in self.poll.attempts():
            if attempt:
                await self._sleep(self.poll.interval)
            state = await self.backend.get_attribute(table_id, name)
            if state.status == AttributeStatus.AVAILABLE:
                return state
            if state.status.is_terminal_failure:
                raise AttributeProvisioningError(table_id, name, state.status.value, state.error)
            log_with_context(
                logger,
                logging.DEBUG,
                "Attribute not available yet",
                table=table_id,
                attribute=name,
                status=state.status.value,
                poll=attempt + 1,
            )

        raise AttributeProvisioningError(
            table_id, name, "timeout", f"not available after {self.poll.timeout}s"
        )


# =============================================================================
# Schema Reconciler
# =============================================================================


@dataclass
class TableReconciliation:
    """What reconciling one table did."""

    table_id: str
    created: bool = False
    applied: list[DiffOperation] = field(default_factory=list)
    indexes_created: list[str] = field(default_factory=list)
    permissions: PermissionResult | None = None

    @property
    def permission_errors(self) -> list[Exception]:
        return list(self.permissions.errors) if self.permissions else []


class SchemaReconciler:
    """
    Brings one database's tables in line with their declarations.

    Unfinished plans are kept per table; the next ``reconcile`` of that table
    resumes the stored plan before diffing again.
    """

    def __init__(
        self,
        backend: BackendClient,
        executor: MigrationExecutor | None = None,
        permissions: PermissionReconciler | None = None,
        differ: AttributeDiffer | None = None,
    ):
        self.backend = backend
        self.executor = executor or MigrationExecutor(backend)
        self.permissions = permissions or PermissionReconciler(backend)
        self.differ = differ or AttributeDiffer()
        self._pending: dict[str, MigrationPlan] = {}
        self._database_checked = False

    def pending_plan(self, table_id: str) -> MigrationPlan | None:
        return self._pending.get(table_id)

    async def ensure_database(self, name: str | None = None) -> None:
        if self._database_checked:
            return
        try:
            await self.backend.get_database()
        except NotFoundError:
            logger.info("Creating database %s", self.backend.database_id)
            try:
                await self.backend.create_database(name or self.backend.database_id)
            except BackendError as e:
                if not _already_exists(e):
                    raise
        self._database_checked = True

    async def ensure_table(self, spec: TableSpec) -> tuple[RemoteTableState, bool]:
        """Fetch the table, creating it with its declared permissions if missing."""
        try:
            return await self.backend.get_table(spec.table_id), False
        except NotFoundError:
            pass

        logger.info("Creating table %s", spec.table_id)
        try:
            remote = await self.backend.create_table(
                spec.table_id,
                spec.name,
                to_wire(spec.permission_rules()),
                document_security=spec.document_security,
            )
        except BackendError as e:
            if not _already_exists(e):
                raise MigrationError(
                    f"Failed to create table: {e.message}", ErrorContext(table=spec.table_id)
                ) from e
            remote = await self.backend.get_table(spec.table_id)
            return remote, False
        return remote, True

    async def reconcile(self, spec: TableSpec) -> TableReconciliation:
        """
        Reconcile attributes, indexes and permissions for one table.

        Raises:
            SchemaConflictError: A declared attribute changes kind
            AttributeProvisioningError: An attribute failed to provision;
                the unfinished plan is kept for the next call
            MigrationError: The table or an index could not be created
        """
        table_id = spec.table_id
        await self.ensure_database()
        remote, created = await self.ensure_table(spec)
        outcome = TableReconciliation(table_id=table_id, created=created)

        pending = self._pending.get(table_id)
        if pending is not None and not pending.is_complete:
            logger.info("Resuming migration of %s at operation %d", table_id, pending.cursor + 1)
            outcome.applied.extend(await self._run(pending))
            remote = await self.backend.get_table(table_id)

        plan = self.differ.diff(table_id, spec.attributes, remote.attributes)
        if not plan.is_empty:
            logger.info("Migration plan for %s: %s", table_id, plan.summary())
            outcome.applied.extend(await self._run(plan))

        outcome.indexes_created = await self._create_indexes(spec, remote)
        outcome.permissions = await self.permissions.reconcile(
            table_id, spec.permission_rules(), remote.permissions, name=spec.name
        )
        return outcome

    async def _run(self, plan: MigrationPlan) -> list[DiffOperation]:
        self._pending[plan.table_id] = plan
        applied = await self.executor.execute(plan)
        self._pending.pop(plan.table_id, None)
        return applied

    async def _create_indexes(self, spec: TableSpec, remote: RemoteTableState) -> list[str]:
        existing = remote.index_keys
        created: list[str] = []
        for index in spec.indexes:
            if index.key in existing:
                continue
            logger.info("Creating index %s on %s", index.key, spec.table_id)
            try:
                await self.backend.create_index(spec.table_id, index)
            except BackendError as e:
                if _already_exists(e):
                    continue
                raise MigrationError(
                    f"Failed to create index '{index.key}': {e.message}",
                    ErrorContext(table=spec.table_id),
                ) from e
            created.append(index.key)
        return created

    async def validate(self, spec: TableSpec) -> RemoteTableState:
        """
        Check the remote table against its declaration without changing it.

        Raises:
            MigrationError: The table or declared attributes are missing
            SchemaConflictError: A declared attribute has a different kind
        """
        try:
            remote = await self.backend.get_table(spec.table_id)
        except NotFoundError as e:
            raise MigrationError(
                "Table does not exist; enable auto_migrate to create it",
                ErrorContext(table=spec.table_id),
            ) from e

        remote_map = {a.name: a for a in remote.attributes}
        missing = [a.name for a in spec.attributes if a.name not in remote_map]
        if missing:
            raise MigrationError(
                f"Missing attributes: {', '.join(missing)}", ErrorContext(table=spec.table_id)
            )
        for attribute in spec.attributes:
            state = remote_map[attribute.name]
            if state.kind != attribute.kind:
                raise SchemaConflictError(
                    spec.table_id, attribute.name, state.kind.value, attribute.kind.value
                )
        return remote
