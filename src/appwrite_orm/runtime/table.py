"""
Per-table operation surface.

Reads go through the ORM's ``CacheStore``; writes validate first, call the
backend and invalidate the table's cache entries before returning, so a read
after a write never sees pre-write data.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from appwrite_orm.backends.base import UNIQUE_ID, BackendClient
from appwrite_orm.errors import ErrorContext, NotFoundError, ORMError, ValidationError
from appwrite_orm.runtime import query as q
from appwrite_orm.runtime.cache import CacheStore, Fingerprint
from appwrite_orm.runtime.query import QueryOptions, build_queries
from appwrite_orm.runtime.realtime import (
    ChangeCallback,
    EventCallback,
    EventType,
    RealtimeBus,
    Subscription,
)
from appwrite_orm.runtime.validator import Validator
from appwrite_orm.specs.table import TableSpec

logger = logging.getLogger(__name__)

PAGE_SIZE = 100

Document = dict[str, Any]


class Table:
    """
    CRUD, query, bulk and listener operations for one declared table.

    Args:
        spec: Table declaration
        backend: Backend client
        cache: Read cache shared by the ORM's tables
        bus: Realtime bus for listeners (``None`` when realtime is disabled)
        ttl: Cache TTL for this table's reads (default: the cache's)
    """

    def __init__(
        self,
        spec: TableSpec,
        backend: BackendClient,
        cache: CacheStore,
        bus: RealtimeBus | None = None,
        ttl: float | None = None,
    ):
        self.spec = spec
        self.backend = backend
        self.cache = cache
        self.bus = bus
        self.ttl = ttl
        self.validator = Validator(spec)

    @property
    def table_id(self) -> str:
        return self.spec.table_id

    @property
    def name(self) -> str:
        return self.spec.name

    def __repr__(self) -> str:
        return f"Table({self.table_id!r})"

    def _fingerprint(self, method: str, *params: Any, document_id: str | None = None) -> Fingerprint:
        return Fingerprint.of(self.table_id, method, *params, document_id=document_id)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, document_id: str) -> Document | None:
        """Fetch a document by id; ``None`` (also cached) if it does not exist."""

        async def fetch() -> Document | None:
            try:
                return await self.backend.get_document(self.table_id, document_id)
            except NotFoundError:
                return None

        return await self.cache.get_or_fetch(
            self._fingerprint("get", document_id=document_id), fetch, self.ttl
        )

    async def get_or_fail(self, document_id: str) -> Document:
        document = await self.get(document_id)
        if document is None:
            raise NotFoundError(
                f"Document '{document_id}' not found", ErrorContext(table=self.table_id)
            )
        return document

    async def query(
        self,
        filters: Mapping[str, Any] | None = None,
        options: QueryOptions | None = None,
    ) -> list[Document]:
        """
        Documents matching equality ``filters``.

        A list value matches any of its items. ``None`` values are ignored.
        """
        queries = build_queries(filters, options)
        return await self.find(queries)

    async def find(self, queries: Iterable[str]) -> list[Document]:
        """Documents matching raw query strings (see ``appwrite_orm.runtime.query``)."""
        queries = list(queries)

        async def fetch() -> list[Document]:
            documents, _ = await self.backend.list_documents(self.table_id, queries)
            return documents

        return await self.cache.get_or_fetch(self._fingerprint("find", queries), fetch, self.ttl)

    async def find_one(self, queries: Iterable[str]) -> Document | None:
        documents = await self.find([*queries, q.limit(1)])
        return documents[0] if documents else None

    async def all(self, options: QueryOptions | None = None) -> list[Document]:
        """All documents, fetched page by page unless ``options`` sets a limit."""
        if options is not None and options.limit:
            return await self.query(options=options)
        base = build_queries(options=options)

        async def fetch() -> list[Document]:
            documents: list[Document] = []
            offset = 0
            while True:
                page, total = await self.backend.list_documents(
                    self.table_id, [*base, q.limit(PAGE_SIZE), q.offset(offset)]
                )
                documents.extend(page)
                offset += len(page)
                if len(page) < PAGE_SIZE or offset >= total:
                    return documents

        return await self.cache.get_or_fetch(self._fingerprint("all", base), fetch, self.ttl)

    async def first(self, filters: Mapping[str, Any] | None = None) -> Document | None:
        documents = await self.query(filters, QueryOptions(limit=1))
        return documents[0] if documents else None

    async def first_or_fail(self, filters: Mapping[str, Any] | None = None) -> Document:
        document = await self.first(filters)
        if document is None:
            raise NotFoundError("No document matches the filters", ErrorContext(table=self.table_id))
        return document

    async def count(self, filters: Mapping[str, Any] | None = None) -> int:
        queries = [*build_queries(filters), q.limit(1)]

        async def fetch() -> int:
            _, total = await self.backend.list_documents(self.table_id, queries)
            return total

        return await self.cache.get_or_fetch(self._fingerprint("count", queries), fetch, self.ttl)

    # =========================================================================
    # Writes
    # =========================================================================

    async def create(
        self,
        data: Mapping[str, Any],
        document_id: str = UNIQUE_ID,
        permissions: list[str] | None = None,
    ) -> Document:
        payload = dict(data)
        self.validator.validate(payload)
        try:
            return await self.backend.create_document(
                self.table_id, payload, document_id=document_id, permissions=permissions
            )
        finally:
            self.cache.invalidate(self.table_id)

    async def update(self, document_id: str, data: Mapping[str, Any]) -> Document:
        payload = {k: v for k, v in data.items() if not k.startswith("$")}
        self.validator.validate(payload, partial=True)
        try:
            return await self.backend.update_document(self.table_id, document_id, payload)
        finally:
            self.cache.invalidate(self.table_id)

    async def delete(self, document_id: str) -> None:
        try:
            await self.backend.delete_document(self.table_id, document_id)
        finally:
            self.cache.invalidate(self.table_id)

    async def create_many(self, records: Iterable[Mapping[str, Any]]) -> list[Document | Exception]:
        """
        Create several documents.

        Returns a list aligned with ``records``: each item is the created
        document or the exception (``ValidationError`` or backend error)
        that rejected it.
        """
        records = [dict(r) for r in records]
        results: list[Document | Exception | None] = [None] * len(records)
        valid: list[tuple[int, Document]] = []
        for index, record in enumerate(records):
            errors = self.validator.errors(record)
            if errors:
                results[index] = ValidationError(errors, table=self.table_id)
            else:
                valid.append((index, record))

        if valid:
            try:
                created = await self.backend.create_documents(self.table_id, [r for _, r in valid])
            finally:
                self.cache.invalidate(self.table_id)
            for (index, _), result in zip(valid, created, strict=True):
                results[index] = result  # type: ignore[assignment]
        return results  # type: ignore[return-value]

    async def bulk_update(self, updates: Iterable[tuple[str, Mapping[str, Any]]]) -> list[Document]:
        """Apply ``(document_id, data)`` updates in order; stops at the first failure."""
        updated: list[Document] = []
        try:
            for document_id, data in updates:
                payload = {k: v for k, v in data.items() if not k.startswith("$")}
                self.validator.validate(payload, partial=True)
                updated.append(await self.backend.update_document(self.table_id, document_id, payload))
        finally:
            self.cache.invalidate(self.table_id)
        return updated

    async def bulk_delete(self, document_ids: Iterable[str]) -> int:
        deleted = 0
        try:
            for document_id in document_ids:
                await self.backend.delete_document(self.table_id, document_id)
                deleted += 1
        finally:
            self.cache.invalidate(self.table_id)
        return deleted

    # =========================================================================
    # Listeners
    # =========================================================================

    def _require_bus(self) -> RealtimeBus:
        if self.bus is None:
            raise ORMError("Realtime is disabled", ErrorContext(table=self.table_id))
        return self.bus

    def listen_to_documents(
        self,
        callback: ChangeCallback,
        event_types: Iterable[EventType | str] | None = None,
    ) -> Subscription:
        """Listen to changes of every document in this table."""
        return self._require_bus().subscribe(self.table_id, callback, event_types=event_types)

    def listen_to_document(
        self,
        document_id: str,
        callback: ChangeCallback,
        event_types: Iterable[EventType | str] | None = None,
    ) -> Subscription:
        """Listen to changes of one document."""
        return self._require_bus().subscribe(
            self.table_id, callback, document_id=document_id, event_types=event_types
        )

    def listen_to_table(
        self,
        callback: EventCallback,
        event_types: Iterable[EventType | str] | None = None,
    ) -> Subscription:
        """Listen to every event under this table, including attribute and table changes."""
        return self._require_bus().subscribe_table(self.table_id, callback, event_types=event_types)

    def listen_to_database(
        self,
        callback: EventCallback,
        event_types: Iterable[EventType | str] | None = None,
    ) -> Subscription:
        """Listen to every event in this table's database."""
        return self._require_bus().subscribe_database(callback, event_types=event_types)
