"""
ORM orchestrator.

An ``ORM`` owns one backend client, one read cache, one realtime bus and the
registry of reconciled tables. Several ORMs can coexist in one process; none
of this state is global.

Example:
    config = load_config()
    async with ORM(config) as orm:
        report = await orm.init([
            {"name": "messages", "attributes": {"body": {"type": "string", "required": True}}},
        ])
        report.raise_for_errors()
        messages = orm.table("messages")
        await messages.create({"body": "hello"})
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from appwrite_orm.backends.base import BackendClient, RealtimeTransport
from appwrite_orm.config import ORMConfig, load_config
from appwrite_orm.errors import DeclarationError, ORMError, TableUnavailableError
from appwrite_orm.importers.importer import DEFAULT_BATCH_SIZE, ImportSummary, SourceImporter
from appwrite_orm.importers.inference import infer_schema
from appwrite_orm.runtime import export
from appwrite_orm.runtime.cache import CacheStore
from appwrite_orm.runtime.migrations import (
    MigrationExecutor,
    MigrationHistory,
    SchemaReconciler,
    TableReconciliation,
)
from appwrite_orm.runtime.realtime import RealtimeBus
from appwrite_orm.runtime.retry import BackoffPolicy, PollPolicy
from appwrite_orm.runtime.table import Document, Table
from appwrite_orm.specs.table import TableSpec

logger = logging.getLogger(__name__)


# =============================================================================
# Reconciliation Report
# =============================================================================


@dataclass
class ReconciliationReport:
    """Per-table outcome of ``ORM.init``."""

    outcomes: dict[str, TableReconciliation | None] = field(default_factory=dict)
    failures: dict[str, ORMError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures and not self.permission_errors

    @property
    def succeeded(self) -> list[str]:
        return list(self.outcomes)

    @property
    def failed(self) -> list[str]:
        return list(self.failures)

    @property
    def permission_errors(self) -> list[Exception]:
        return [e for o in self.outcomes.values() if o is not None for e in o.permission_errors]

    def raise_for_errors(self) -> None:
        """Raise the first table failure, then the first permission error, if any."""
        for error in self.failures.values():
            raise error
        for error in self.permission_errors:
            raise error


# =============================================================================
# ORM
# =============================================================================


class ORM:
    """
    Declared tables reconciled against one backend database.

    Args:
        config: ORM configuration
        backend: Backend client (default: ``InMemoryBackend`` in development
            mode, ``HttpBackendClient`` otherwise)
        transport_factory: Realtime transport factory (default: the backend's)
        backoff: Realtime reconnect policy
        sleep: Awaitable sleep used for polling and backoff
    """

    def __init__(
        self,
        config: ORMConfig,
        backend: BackendClient | None = None,
        transport_factory: Callable[[], RealtimeTransport] | None = None,
        backoff: BackoffPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        config.validate()
        self.config = config
        self.backend = backend or self._default_backend(config)
        self.cache = CacheStore(default_ttl=config.cache_ttl)
        self.history = MigrationHistory()
        self.reconciler = SchemaReconciler(
            self.backend,
            executor=MigrationExecutor(
                self.backend,
                poll=PollPolicy(interval=config.poll_interval, timeout=config.poll_timeout),
                max_concurrency=config.migration_concurrency,
                sleep=sleep,
                history=self.history,
            ),
        )

        self.bus: RealtimeBus | None = None
        if config.realtime and (transport_factory is not None or self.backend.supports_realtime):
            self.bus = RealtimeBus(
                transport_factory or self.backend.create_transport,
                self.backend.channel_for,
                cache=self.cache,
                backoff=backoff,
                sleep=sleep,
                table_channel_for=self.backend.table_channel_for,
                database_channel=self.backend.database_channel(),
            )

        self._specs: dict[str, TableSpec] = {}
        self._tables: dict[str, Table] = {}
        self._failures: dict[str, ORMError] = {}

    @staticmethod
    def _default_backend(config: ORMConfig) -> BackendClient:
        if config.development:
            from appwrite_orm.backends.memory import InMemoryBackend

            logger.info("Development mode: using in-memory backend")
            return InMemoryBackend(database_id=config.database_id or "default")

        from appwrite_orm.backends.http import HttpBackendClient

        return HttpBackendClient(config)

    @classmethod
    def from_env(cls, **overrides: Any) -> ORM:
        """Build an ORM from ``APPWRITE_*`` environment variables."""
        return cls(load_config(**overrides))

    # =========================================================================
    # Initialization
    # =========================================================================

    async def init(self, tables: Iterable[TableSpec | Mapping[str, Any]]) -> ReconciliationReport:
        """
        Reconcile every declared table and register the ones that succeed.

        A table that fails is recorded in the report and stays unavailable;
        the remaining tables are still reconciled.
        """
        report = ReconciliationReport()

        for index, declared in enumerate(tables):
            try:
                spec = self._to_spec(declared, index)
            except DeclarationError as e:
                logger.error("Skipping table declaration: %s", e)
                self._failures[e.table] = e
                report.failures[e.table] = e
                continue

            self._specs[spec.name] = spec
            try:
                outcome = await self._reconcile(spec)
            except ORMError as e:
                logger.error("Reconciliation of %s failed: %s", spec.table_id, e)
                self._failures[spec.name] = e
                report.failures[spec.name] = e
                continue
            self._register(spec)
            report.outcomes[spec.name] = outcome

        if report.failures:
            logger.warning(
                "Initialized %d tables, %d failed: %s",
                len(report.outcomes),
                len(report.failures),
                ", ".join(report.failures),
            )
        else:
            logger.info("Initialized %d tables", len(report.outcomes))

        if self.bus is not None and self._tables:
            await self.bus.connect()
        return report

    @staticmethod
    def _to_spec(declared: TableSpec | Mapping[str, Any], index: int = 0) -> TableSpec:
        if isinstance(declared, TableSpec):
            return declared
        name = str(declared.get("name") or declared.get("table_id") or f"#{index}")
        try:
            return TableSpec.from_declaration(dict(declared))
        except (ValueError, TypeError) as e:
            raise DeclarationError(name, str(e)) from e

    async def _reconcile(self, spec: TableSpec) -> TableReconciliation | None:
        if self.config.auto_migrate:
            return await self.reconciler.reconcile(spec)
        if self.config.auto_validate:
            await self.reconciler.validate(spec)
        return None

    def _register(self, spec: TableSpec) -> Table:
        table = Table(spec, self.backend, self.cache, self.bus)
        self._failures.pop(spec.name, None)
        self._tables[spec.name] = table
        if self.bus is not None:
            self.bus.watch(spec.table_id)
        return table

    # =========================================================================
    # Tables
    # =========================================================================

    @property
    def tables(self) -> list[str]:
        return list(self._tables)

    def table(self, name: str) -> Table:
        """
        Registered table by name (or backend id).

        Raises:
            TableUnavailableError: Unknown table, or its reconciliation failed
        """
        if name in self._tables:
            return self._tables[name]
        for table in self._tables.values():
            if table.table_id == name:
                return table
        raise TableUnavailableError(name, self._failures.get(name))

    async def join(
        self,
        left: str,
        right: str,
        foreign_key: str,
        reference_key: str = "$id",
        alias: str | None = None,
        left_filters: Mapping[str, Any] | None = None,
        right_filters: Mapping[str, Any] | None = None,
    ) -> list[Document]:
        """
        Client-side left join.

        Each document of ``left`` gets the ``right`` documents whose
        ``reference_key`` equals its ``foreign_key`` under ``alias`` (default:
        the right table's name): one document, a list when several match, or
        ``None``.
        """
        alias = alias or right
        documents = await self.table(left).query(left_filters)
        keys = sorted({d[foreign_key] for d in documents if d.get(foreign_key) is not None}, key=str)
        if not keys:
            return [{**d, alias: None} for d in documents]

        related = await self.table(right).query({**(right_filters or {}), reference_key: keys})
        by_key: dict[Any, list[Document]] = {}
        for document in related:
            by_key.setdefault(document.get(reference_key), []).append(document)

        joined = []
        for document in documents:
            matches = by_key.get(document.get(foreign_key), [])
            value: Any = None
            if len(matches) == 1:
                value = matches[0]
            elif matches:
                value = matches
            joined.append({**document, alias: value})
        return joined

    async def left_join(self, left: str, right: str, foreign_key: str, **kwargs: Any) -> list[Document]:
        return await self.join(left, right, foreign_key, **kwargs)

    async def inner_join(self, left: str, right: str, foreign_key: str, **kwargs: Any) -> list[Document]:
        """Like ``join`` but drops documents with no match."""
        alias = kwargs.get("alias") or right
        joined = await self.join(left, right, foreign_key, **kwargs)
        return [d for d in joined if d[alias] is not None]

    # =========================================================================
    # Export / import
    # =========================================================================

    def export_sql(self) -> str:
        """Declared tables as SQL DDL."""
        return export.to_sql(self._specs.values())

    def export_firebase(self) -> str:
        """Declared tables as Firebase Realtime Database security rules (JSON)."""
        return export.to_firebase(self._specs.values())

    def export_text(self) -> str:
        """Declared tables as a text description."""
        return export.to_text(self._specs.values())

    async def import_into(
        self,
        table: str,
        records: Iterable[Mapping[str, Any]],
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> ImportSummary:
        """
        Import records into a table.

        A table that was never declared is created from a schema inferred
        from the records.
        """
        if table not in self._tables and table not in self._specs:
            records = list(records)
            attributes = infer_schema(records)
            if not attributes:
                raise TableUnavailableError(table)
            spec = TableSpec(name=table, attributes=attributes)
            logger.info("Creating %s from inferred schema (%d attributes)", table, len(spec.attributes))
            self._specs[spec.name] = spec
            await self.reconciler.reconcile(spec)
            self._register(spec)
            if self.bus is not None:
                await self.bus.connect()

        importer = SourceImporter(self.table(table), batch_size=batch_size)
        return await importer.run(records)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def close(self) -> None:
        """Cancel subscriptions, stop realtime and close the backend client."""
        if self.bus is not None:
            for subscription in self.bus.subscriptions:
                subscription.cancel()
            await self.bus.close()
        await self.backend.close()
        self.cache.clear()

    async def __aenter__(self) -> ORM:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
