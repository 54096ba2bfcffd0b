"""
Abstract backend interfaces.

``BackendClient`` is the database/collection/attribute/document API the ORM
consumes; ``RealtimeTransport`` is one push-channel connection. Concrete
implementations:

- ``HttpBackendClient`` / ``AiohttpRealtimeTransport``: the remote backend
- ``InMemoryBackend`` / ``InMemoryRealtimeTransport``: development and tests
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

from appwrite_orm.specs.remote import RemoteAttributeState, RemoteTableState
from appwrite_orm.specs.table import AttributeSpec, IndexSpec

# Server-generated document id marker.
UNIQUE_ID = "unique()"


class BackendClient(ABC):
    """
    Abstract interface to one database on the remote backend.

    All methods raise ``NotFoundError`` for missing resources and
    ``BackendError`` for any other rejected request.
    """

    database_id: str

    supports_realtime = False

    # =========================================================================
    # Databases and tables
    # =========================================================================

    @abstractmethod
    async def get_database(self) -> dict[str, Any]: ...

    @abstractmethod
    async def create_database(self, name: str) -> dict[str, Any]: ...

    @abstractmethod
    async def get_table(self, table_id: str) -> RemoteTableState: ...

    @abstractmethod
    async def create_table(
        self,
        table_id: str,
        name: str,
        permissions: list[str],
        document_security: bool = False,
    ) -> RemoteTableState: ...

    @abstractmethod
    async def update_table_permissions(
        self, table_id: str, permissions: list[str], name: str | None = None
    ) -> None:
        """Replace the table's whole permission list."""

    # =========================================================================
    # Attributes and indexes
    # =========================================================================

    @abstractmethod
    async def list_attributes(self, table_id: str) -> list[RemoteAttributeState]: ...

    @abstractmethod
    async def get_attribute(self, table_id: str, name: str) -> RemoteAttributeState: ...

    @abstractmethod
    async def create_attribute(self, table_id: str, spec: AttributeSpec) -> RemoteAttributeState: ...

    @abstractmethod
    async def update_attribute(self, table_id: str, spec: AttributeSpec) -> RemoteAttributeState: ...

    @abstractmethod
    async def delete_attribute(self, table_id: str, name: str) -> None: ...

    @abstractmethod
    async def create_index(self, table_id: str, index: IndexSpec) -> None: ...

    # =========================================================================
    # Documents
    # =========================================================================

    @abstractmethod
    async def create_document(
        self,
        table_id: str,
        data: dict[str, Any],
        document_id: str = UNIQUE_ID,
        permissions: list[str] | None = None,
    ) -> dict[str, Any]: ...

    async def create_documents(
        self, table_id: str, documents: list[dict[str, Any]]
    ) -> list[dict[str, Any] | BaseException]:
        """
        Create several documents, reporting success or failure per record.

        The result list is aligned with ``documents``: each item is either the
        created document or the exception that rejected it.
        """
        results = await asyncio.gather(
            *(self.create_document(table_id, data) for data in documents),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
        return list(results)

    @abstractmethod
    async def get_document(self, table_id: str, document_id: str) -> dict[str, Any]: ...

    @abstractmethod
    async def update_document(
        self, table_id: str, document_id: str, data: dict[str, Any]
    ) -> dict[str, Any]: ...

    @abstractmethod
    async def delete_document(self, table_id: str, document_id: str) -> None: ...

    @abstractmethod
    async def list_documents(
        self, table_id: str, queries: list[str] | None = None
    ) -> tuple[list[dict[str, Any]], int]:
        """Return ``(documents, total)`` for the given query strings."""

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def create_transport(self) -> RealtimeTransport | None:
        """New realtime transport for this backend, or ``None`` if unsupported."""
        return None

    def channel_for(self, table_id: str) -> str:
        return f"databases.{self.database_id}.collections.{table_id}.documents"

    def table_channel_for(self, table_id: str) -> str:
        return f"databases.{self.database_id}.collections.{table_id}"

    def database_channel(self) -> str:
        return f"databases.{self.database_id}"

    async def close(self) -> None:
        return None


class RealtimeTransport(ABC):
    """
    One connection to the backend's push channel.

    ``receive`` returns the ``data`` object of each event message and raises
    ``TransportDisconnectedError`` when the connection drops.
    """

    @abstractmethod
    async def connect(self, channels: list[str]) -> None: ...

    @abstractmethod
    async def receive(self) -> dict[str, Any]: ...

    @abstractmethod
    async def close(self) -> None: ...
