"""In-process read cache for table queries.

Cache-through with single-flight: concurrent misses on the same fingerprint
share one backend fetch. Entries are scoped to a table so that writes and
realtime events can invalidate them.

Invalidation bumps a per-table generation. A fetch that started before the
bump still returns its result to its own callers, but never populates the
cache and is never joined by readers that arrive after the bump.

Usage::

    cache = CacheStore(default_ttl=300)
    fp = Fingerprint.of("messages", "query", {"status": "sent"})
    docs = await cache.get_or_fetch(fp, lambda: backend.list_documents(...))
    cache.invalidate("messages")
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from appwrite_orm.logging import get_logger

logger = get_logger("Cache")

_DEFAULT_TTL = 300.0  # 5 minutes


class _Miss:
    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS: Any = _Miss()


@dataclass(frozen=True)
class Fingerprint:
    """Cache key: table, method and a hash of the normalized parameters.

    ``document_id`` marks entries that hold a single document, which
    survive document-scoped invalidation of other documents.
    """

    table_id: str
    method: str
    digest: str
    document_id: str | None = None

    @classmethod
    def of(cls, table_id: str, method: str, *params: Any, document_id: str | None = None) -> Fingerprint:
        normalized = json.dumps(
            [document_id, *params], sort_keys=True, default=str, separators=(",", ":")
        )
        digest = hashlib.sha256(normalized.encode()).hexdigest()[:16]
        return cls(table_id=table_id, method=method, digest=digest, document_id=document_id)


@dataclass
class CacheEntry:
    fingerprint: Fingerprint
    value: Any
    inserted_at: float
    ttl: float
    document_ids: frozenset[str] = field(default_factory=frozenset)

    def expired(self, now: float) -> bool:
        return now - self.inserted_at >= self.ttl


def _document_ids(value: Any) -> frozenset[str]:
    """Ids of the documents a cached value contains."""
    if isinstance(value, dict):
        if "$id" in value:
            return frozenset({str(value["$id"])})
        if isinstance(value.get("documents"), list):
            return _document_ids(value["documents"])
        return frozenset()
    if isinstance(value, list | tuple):
        ids: set[str] = set()
        for item in value:
            ids |= _document_ids(item)
        return frozenset(ids)
    return frozenset()


class CacheStore:
    """Per-ORM read cache with TTL, scoped invalidation and single-flight.

    Args:
        default_ttl: TTL in seconds for entries stored without one
            (``0`` disables storing, reads still single-flight).
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(self, default_ttl: float = _DEFAULT_TTL, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[Fingerprint, CacheEntry] = {}
        self._inflight: dict[Fingerprint, asyncio.Future[Any]] = {}
        self._generations: dict[str, int] = {}
        self._stats = {"hits": 0, "misses": 0, "fetches": 0, "joined": 0, "invalidations": 0}

    # ------------------------------------------------------------------
    # Basic operations
    # ------------------------------------------------------------------

    def get(self, fingerprint: Fingerprint) -> Any:
        """Return the cached value, or ``MISS`` if absent or expired."""
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                self._stats["misses"] += 1
                return MISS
            if entry.expired(self._clock()):
                del self._entries[fingerprint]
                self._stats["misses"] += 1
                return MISS
            self._stats["hits"] += 1
            return copy.deepcopy(entry.value)

    def set(self, fingerprint: Fingerprint, value: Any, ttl: float | None = None) -> None:
        with self._lock:
            self._store(fingerprint, value, ttl)

    def _store(self, fingerprint: Fingerprint, value: Any, ttl: float | None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            return
        self._entries[fingerprint] = CacheEntry(
            fingerprint=fingerprint,
            value=copy.deepcopy(value),
            inserted_at=self._clock(),
            ttl=ttl,
            document_ids=_document_ids(value),
        )

    def invalidate(self, table_id: str, document_id: str | None = None) -> int:
        """Drop entries for a table, or only those a document change can affect.

        Document scope keeps single-document entries of other documents and
        drops everything else for the table, since a changed document can
        enter or leave any query result.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            self._generations[table_id] = self._generations.get(table_id, 0) + 1
            self._stats["invalidations"] += 1

            stale = [
                fp
                for fp, entry in self._entries.items()
                if fp.table_id == table_id
                and (
                    document_id is None
                    or fp.document_id is None
                    or fp.document_id == document_id
                    or document_id in entry.document_ids
                )
            ]
            for fp in stale:
                del self._entries[fp]

            # Later readers must not join a fetch that predates this invalidation
            for fp in [fp for fp in self._inflight if fp.table_id == table_id]:
                del self._inflight[fp]

        if stale:
            logger.debug(
                "Invalidated %d cache entries for %s%s",
                len(stale),
                table_id,
                f" ({document_id})" if document_id else "",
            )
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            for table_id in {fp.table_id for fp in self._entries} | {
                fp.table_id for fp in self._inflight
            }:
                self._generations[table_id] = self._generations.get(table_id, 0) + 1
            self._entries.clear()
            self._inflight.clear()

    @property
    def stats(self) -> dict[str, int]:
        with self._lock:
            return {**self._stats, "entries": len(self._entries), "inflight": len(self._inflight)}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ------------------------------------------------------------------
    # Cache-through
    # ------------------------------------------------------------------

    async def get_or_fetch(
        self,
        fingerprint: Fingerprint,
        fetch: Callable[[], Awaitable[Any]],
        ttl: float | None = None,
    ) -> Any:
        """Return the cached value or fetch it, sharing one fetch per fingerprint."""
        value = self.get(fingerprint)
        if value is not MISS:
            return value

        generation = 0
        with self._lock:
            future = self._inflight.get(fingerprint)
            owner = future is None
            if owner:
                future = asyncio.get_running_loop().create_future()
                self._inflight[fingerprint] = future
                generation = self._generations.get(fingerprint.table_id, 0)
            else:
                self._stats["joined"] += 1

        if not owner:
            try:
                return copy.deepcopy(await asyncio.shield(future))
            except asyncio.CancelledError:
                # The owner was cancelled, not this reader: start or join the next fetch
                task = asyncio.current_task()
                if future.cancelled() and (task is None or not task.cancelling()):
                    return await self.get_or_fetch(fingerprint, fetch, ttl)
                raise

        with self._lock:
            self._stats["fetches"] += 1
        try:
            value = await fetch()
        except BaseException as e:
            with self._lock:
                if self._inflight.get(fingerprint) is future:
                    del self._inflight[fingerprint]
            if isinstance(e, asyncio.CancelledError):
                future.cancel()
            else:
                future.set_exception(e)
                # Joiners re-raise it; without joiners it must not be logged as unretrieved
                future.exception()
            raise

        with self._lock:
            if self._inflight.get(fingerprint) is future:
                del self._inflight[fingerprint]
            if self._generations.get(fingerprint.table_id, 0) == generation:
                self._store(fingerprint, value, ttl)
            else:
                logger.debug("Discarding stale fetch for %s.%s", fingerprint.table_id, fingerprint.method)
        future.set_result(value)
        return value
