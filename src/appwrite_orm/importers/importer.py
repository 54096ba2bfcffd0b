"""
Batched record import.

Feeds records through ``Table.create_many`` (the ordinary validated create
path) in fixed-size batches. Failures are collected per record; a batch the
backend rejects as a whole marks each of its records failed and the import
moves on to the next batch.
"""

from __future__ import annotations

import itertools
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from appwrite_orm.errors import ImportBatchError, ORMError
from appwrite_orm.logging import get_logger
from appwrite_orm.runtime.table import Table

logger = get_logger("Import")

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 100
DEFAULT_BATCH_SIZE = 50


@dataclass
class ImportFailure:
    """A record that was not imported, by its position in the source."""

    index: int
    error: Exception

    @property
    def message(self) -> str:
        return str(self.error)


@dataclass
class ImportSummary:
    """Outcome of an import run."""

    table_id: str
    created: int = 0
    failed: int = 0
    failures: list[ImportFailure] = field(default_factory=list)
    batches: int = 0

    @property
    def total(self) -> int:
        return self.created + self.failed

    @property
    def failed_indices(self) -> list[int]:
        return [f.index for f in self.failures]

    def add_failure(self, index: int, error: Exception) -> None:
        self.failed += 1
        self.failures.append(ImportFailure(index=index, error=error))


def _batches(records: Iterable[Mapping[str, Any]], size: int) -> Iterator[tuple[int, list[dict[str, Any]]]]:
    iterator = iter(records)
    start = 0
    while True:
        batch = [dict(r) for r in itertools.islice(iterator, size)]
        if not batch:
            return
        yield start, batch
        start += len(batch)


class SourceImporter:
    """
    Imports normalized records into one table.

    Args:
        table: Destination table
        batch_size: Records per batch, clamped to 1..100
    """

    def __init__(self, table: Table, batch_size: int = DEFAULT_BATCH_SIZE):
        self.table = table
        self.batch_size = max(MIN_BATCH_SIZE, min(MAX_BATCH_SIZE, batch_size))

    async def run(self, records: Iterable[Mapping[str, Any]]) -> ImportSummary:
        """
        Import ``records`` and return a summary; never raises for bad records.

        Failure indices are absolute positions in ``records``.
        """
        summary = ImportSummary(table_id=self.table.table_id)

        for start, batch in _batches(records, self.batch_size):
            summary.batches += 1
            try:
                results = await self.table.create_many(batch)
            except ORMError as e:
                logger.warning(
                    "Import batch %d-%d into %s failed: %s",
                    start,
                    start + len(batch) - 1,
                    self.table.table_id,
                    e,
                )
                error = ImportBatchError(self.table.table_id, start, len(batch), str(e))
                for offset in range(len(batch)):
                    summary.add_failure(start + offset, error)
                continue

            for offset, result in enumerate(results):
                if isinstance(result, Exception):
                    summary.add_failure(start + offset, result)
                else:
                    summary.created += 1

        logger.info(
            "Imported %d records into %s (%d failed)",
            summary.created,
            self.table.table_id,
            summary.failed,
        )
        return summary
