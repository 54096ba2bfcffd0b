"""
In-memory backend for development mode and tests.

Implements the full ``BackendClient`` interface with Python dicts and no
persistence. Attribute provisioning is simulated as a small state machine
(``processing`` for a configurable number of polls, then ``available`` or
``failed``), documents are validated against available attributes, and every
document mutation is pushed to connected ``InMemoryRealtimeTransport``
instances in the same shape the remote realtime channel uses.

NOT for production use - all data is lost on process exit.

Example:
    backend = InMemoryBackend(provisioning_polls=0)
    orm = ORM(ORMConfig(development=True), backend=backend)
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from appwrite_orm.backends.base import UNIQUE_ID, BackendClient, RealtimeTransport
from appwrite_orm.errors import BackendError, NotFoundError, TransportDisconnectedError
from appwrite_orm.runtime import query as q
from appwrite_orm.runtime.validator import validate_document
from appwrite_orm.specs.remote import AttributeStatus, RemoteAttributeState, RemoteTableState
from appwrite_orm.specs.table import AttributeKind, AttributeSpec, IndexSpec

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 25


@dataclass
class _StoredAttribute:
    spec: AttributeSpec
    status: AttributeStatus
    polls_left: int

    def to_state(self) -> RemoteAttributeState:
        spec = self.spec
        return RemoteAttributeState(
            name=spec.name,
            kind=spec.kind,
            status=self.status,
            required=spec.required,
            array=spec.array,
            default=spec.effective_default,
            size=spec.size if spec.kind == AttributeKind.STRING else None,
            min=spec.min,
            max=spec.max,
            enum_values=spec.enum_values,
            related_table=spec.related_table,
            side="parent" if spec.kind == AttributeKind.RELATIONSHIP else None,
        )


def _now() -> str:
    return datetime.now(UTC).isoformat()


class InMemoryBackend(BackendClient):
    """
    Dict-backed ``BackendClient``.

    Args:
        database_id: Database id
        provisioning_polls: ``get_attribute`` polls an attribute spends in
            ``processing`` after a create or update (0 = available at once)
        fail_attributes: Attribute names that end in ``failed`` instead of ``available``
        stuck_attributes: Attribute names that never leave ``processing``
        reject_permissions: Wire permission strings the backend refuses to add

    Attributes:
        calls: Count of backend calls by method name
        refuse_connections: Number of upcoming realtime connects to refuse
        connect_count: Successful realtime connects so far
    """

    supports_realtime = True

    def __init__(
        self,
        database_id: str = "default",
        provisioning_polls: int = 1,
        fail_attributes: Iterable[str] = (),
        stuck_attributes: Iterable[str] = (),
        reject_permissions: Iterable[str] = (),
    ):
        self.database_id = database_id
        self.provisioning_polls = provisioning_polls
        self.fail_attributes = set(fail_attributes)
        self.stuck_attributes = set(stuck_attributes)
        self.reject_permissions = set(reject_permissions)

        self.calls: Counter[str] = Counter()
        self.refuse_connections = 0
        self.connect_count = 0

        self._database: dict[str, Any] | None = None
        self._tables: dict[str, dict[str, Any]] = {}
        self._attributes: dict[str, dict[str, _StoredAttribute]] = {}
        self._indexes: dict[str, list[dict[str, Any]]] = {}
        self._documents: dict[str, dict[str, dict[str, Any]]] = {}
        self._transports: list[InMemoryRealtimeTransport] = []

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_table(self, table_id: str) -> None:
        if table_id not in self._tables:
            raise NotFoundError(
                f"Collection with the requested ID '{table_id}' could not be found.",
                type="collection_not_found",
            )

    def _available_specs(self, table_id: str) -> dict[str, AttributeSpec]:
        return {
            name: stored.spec
            for name, stored in self._attributes.get(table_id, {}).items()
            if stored.status == AttributeStatus.AVAILABLE
        }

    def _check_document(self, table_id: str, data: dict[str, Any], partial: bool) -> None:
        errors = validate_document(self._available_specs(table_id), data, partial=partial)
        if errors:
            detail = "; ".join(f"{e.field}: {e.message}" for e in errors)
            raise BackendError(
                f"Invalid document structure: {detail}",
                code=400,
                type="document_invalid_structure",
            )

    def _start_provisioning(self, table_id: str, spec: AttributeSpec) -> _StoredAttribute:
        status = AttributeStatus.PROCESSING
        if self.provisioning_polls <= 0 and spec.name not in self.stuck_attributes:
            status = self._final_status(spec.name)
        stored = _StoredAttribute(spec=spec, status=status, polls_left=self.provisioning_polls)
        self._attributes.setdefault(table_id, {})[spec.name] = stored
        return stored

    def _final_status(self, name: str) -> AttributeStatus:
        if name in self.fail_attributes:
            return AttributeStatus.FAILED
        return AttributeStatus.AVAILABLE

    # =========================================================================
    # Databases and tables
    # =========================================================================

    async def get_database(self) -> dict[str, Any]:
        self.calls["get_database"] += 1
        if self._database is None:
            raise NotFoundError("Database not found", type="database_not_found")
        return dict(self._database)

    async def create_database(self, name: str) -> dict[str, Any]:
        self.calls["create_database"] += 1
        if self._database is not None:
            raise BackendError("Database already exists", code=409, type="database_already_exists")
        self._database = {"$id": self.database_id, "name": name}
        return dict(self._database)

    async def get_table(self, table_id: str) -> RemoteTableState:
        self.calls["get_table"] += 1
        self._require_table(table_id)
        table = self._tables[table_id]
        return RemoteTableState(
            id=table_id,
            name=table["name"],
            permissions=list(table["$permissions"]),
            attributes=[a.to_state() for a in self._attributes[table_id].values()],
            indexes=copy.deepcopy(self._indexes[table_id]),
            document_security=table["documentSecurity"],
        )

    async def create_table(
        self,
        table_id: str,
        name: str,
        permissions: list[str],
        document_security: bool = False,
    ) -> RemoteTableState:
        self.calls["create_table"] += 1
        if self._database is None:
            raise NotFoundError("Database not found", type="database_not_found")
        if table_id in self._tables:
            raise BackendError("Collection already exists", code=409, type="collection_already_exists")
        self._tables[table_id] = {
            "name": name,
            "$permissions": list(permissions),
            "documentSecurity": document_security,
        }
        self._attributes[table_id] = {}
        self._indexes[table_id] = []
        self._documents[table_id] = {}
        self._publish_table(table_id, "create", {"$id": table_id, **self._tables[table_id]})
        return await self.get_table(table_id)

    async def update_table_permissions(
        self, table_id: str, permissions: list[str], name: str | None = None
    ) -> None:
        self.calls["update_table_permissions"] += 1
        self._require_table(table_id)
        current = set(self._tables[table_id]["$permissions"])
        rejected = (set(permissions) - current) & self.reject_permissions
        if rejected:
            raise BackendError(
                f"Invalid permissions: {sorted(rejected)}", code=400, type="general_argument_invalid"
            )
        self._tables[table_id]["$permissions"] = list(permissions)
        if name:
            self._tables[table_id]["name"] = name
        self._publish_table(table_id, "update", {"$id": table_id, **self._tables[table_id]})

    # =========================================================================
    # Attributes and indexes
    # =========================================================================

    async def list_attributes(self, table_id: str) -> list[RemoteAttributeState]:
        self.calls["list_attributes"] += 1
        self._require_table(table_id)
        return [a.to_state() for a in self._attributes[table_id].values()]

    async def get_attribute(self, table_id: str, name: str) -> RemoteAttributeState:
        self.calls["get_attribute"] += 1
        self._require_table(table_id)
        stored = self._attributes[table_id].get(name)
        if stored is None:
            raise NotFoundError(f"Attribute '{name}' not found", type="attribute_not_found")
        if stored.status == AttributeStatus.PROCESSING and name not in self.stuck_attributes:
            stored.polls_left -= 1
            if stored.polls_left <= 0:
                stored.status = self._final_status(name)
        return stored.to_state()

    async def create_attribute(self, table_id: str, spec: AttributeSpec) -> RemoteAttributeState:
        self.calls["create_attribute"] += 1
        self._require_table(table_id)
        if spec.name in self._attributes[table_id]:
            raise BackendError(
                "Attribute with the requested key already exists",
                code=409,
                type="attribute_already_exists",
            )
        if spec.required and spec.default is not None:
            raise BackendError(
                "Cannot set default value for required attribute",
                code=400,
                type="attribute_default_unsupported",
            )
        stored = self._start_provisioning(table_id, spec)
        for document in self._documents[table_id].values():
            document.setdefault(spec.name, spec.effective_default)
        self._publish_table(
            table_id, "create", stored.to_state().model_dump(mode="json"), attribute=spec.name
        )
        return stored.to_state()

    async def update_attribute(self, table_id: str, spec: AttributeSpec) -> RemoteAttributeState:
        self.calls["update_attribute"] += 1
        self._require_table(table_id)
        current = self._attributes[table_id].get(spec.name)
        if current is None:
            raise NotFoundError(f"Attribute '{spec.name}' not found", type="attribute_not_found")
        if current.spec.kind != spec.kind:
            raise BackendError("Attribute type cannot be changed", code=400, type="attribute_type_invalid")
        return self._start_provisioning(table_id, spec).to_state()

    async def delete_attribute(self, table_id: str, name: str) -> None:
        self.calls["delete_attribute"] += 1
        self._require_table(table_id)
        if self._attributes[table_id].pop(name, None) is None:
            raise NotFoundError(f"Attribute '{name}' not found", type="attribute_not_found")
        for document in self._documents[table_id].values():
            document.pop(name, None)
        self._publish_table(table_id, "delete", {"key": name}, attribute=name)

    async def create_index(self, table_id: str, index: IndexSpec) -> None:
        self.calls["create_index"] += 1
        self._require_table(table_id)
        if any(existing["key"] == index.key for existing in self._indexes[table_id]):
            raise BackendError("Index already exists", code=409, type="index_already_exists")
        available = self._available_specs(table_id)
        missing = [a for a in index.attributes if not a.startswith("$") and a not in available]
        if missing:
            raise BackendError(
                f"Index attributes not available: {missing}", code=400, type="attribute_not_available"
            )
        self._indexes[table_id].append(
            {
                "key": index.key,
                "type": index.type.value,
                "status": "available",
                "attributes": list(index.attributes),
                "orders": list(index.orders or []),
            }
        )

    # =========================================================================
    # Documents
    # =========================================================================

    async def create_document(
        self,
        table_id: str,
        data: dict[str, Any],
        document_id: str = UNIQUE_ID,
        permissions: list[str] | None = None,
    ) -> dict[str, Any]:
        self.calls["create_document"] += 1
        self._require_table(table_id)
        self._check_document(table_id, data, partial=False)

        if document_id == UNIQUE_ID:
            document_id = uuid.uuid4().hex[:20]
        documents = self._documents[table_id]
        if document_id in documents:
            raise BackendError(
                "Document with the requested ID already exists",
                code=409,
                type="document_already_exists",
            )

        timestamp = _now()
        document = {
            name: spec.effective_default for name, spec in self._available_specs(table_id).items()
        }
        document.update(copy.deepcopy(data))
        document.update(
            {
                "$id": document_id,
                "$collectionId": table_id,
                "$databaseId": self.database_id,
                "$createdAt": timestamp,
                "$updatedAt": timestamp,
                "$permissions": list(permissions or []),
            }
        )
        documents[document_id] = document
        self._publish(table_id, document_id, "create", document)
        return copy.deepcopy(document)

    async def get_document(self, table_id: str, document_id: str) -> dict[str, Any]:
        self.calls["get_document"] += 1
        self._require_table(table_id)
        document = self._documents[table_id].get(document_id)
        if document is None:
            raise NotFoundError(
                "Document with the requested ID could not be found.", type="document_not_found"
            )
        return copy.deepcopy(document)

    async def update_document(
        self, table_id: str, document_id: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        self.calls["update_document"] += 1
        self._require_table(table_id)
        document = self._documents[table_id].get(document_id)
        if document is None:
            raise NotFoundError(
                "Document with the requested ID could not be found.", type="document_not_found"
            )
        self._check_document(table_id, data, partial=True)
        document.update(copy.deepcopy({k: v for k, v in data.items() if not k.startswith("$")}))
        document["$updatedAt"] = _now()
        self._publish(table_id, document_id, "update", document)
        return copy.deepcopy(document)

    async def delete_document(self, table_id: str, document_id: str) -> None:
        self.calls["delete_document"] += 1
        self._require_table(table_id)
        document = self._documents[table_id].pop(document_id, None)
        if document is None:
            raise NotFoundError(
                "Document with the requested ID could not be found.", type="document_not_found"
            )
        self._publish(table_id, document_id, "delete", document)

    async def list_documents(
        self, table_id: str, queries: list[str] | None = None
    ) -> tuple[list[dict[str, Any]], int]:
        self.calls["list_documents"] += 1
        self._require_table(table_id)

        documents = list(self._documents[table_id].values())
        limit = DEFAULT_LIST_LIMIT
        offset = 0
        orders: list[tuple[str, bool]] = []
        selected: list[str] | None = None

        for raw in queries or []:
            parsed = q.parse(raw)
            method = parsed["method"]
            attribute = parsed.get("attribute")
            values = parsed.get("values") or []
            if method == "limit":
                limit = int(values[0])
            elif method == "offset":
                offset = int(values[0])
            elif method == "orderAsc":
                orders.append((attribute, False))
            elif method == "orderDesc":
                orders.append((attribute, True))
            elif method == "select":
                selected = list(values)
            else:
                documents = [d for d in documents if _matches(d.get(attribute), method, values)]

        # Stable sorts applied last-key-first give multi-key ordering
        for attribute, descending in reversed(orders):
            documents.sort(key=lambda d, a=attribute: _sort_key(d.get(a)), reverse=descending)

        total = len(documents)
        page = documents[offset : offset + limit]
        if selected is not None:
            page = [{k: v for k, v in d.items() if k in selected or k.startswith("$")} for d in page]
        return copy.deepcopy(page), total

    # =========================================================================
    # Realtime
    # =========================================================================

    def create_transport(self) -> InMemoryRealtimeTransport:
        return InMemoryRealtimeTransport(self)

    def _publish(self, table_id: str, document_id: str, action: str, document: dict[str, Any]) -> None:
        db = self.database_id
        events = [
            f"databases.{db}.collections.{table_id}.documents.{document_id}.{action}",
            f"databases.{db}.collections.{table_id}.documents.{document_id}",
            f"databases.{db}.collections.{table_id}.documents.*.{action}",
            f"databases.{db}.collections.{table_id}.documents.*",
            f"databases.*.collections.*.documents.*.{action}",
            "databases.*.collections.*.documents.*",
        ]
        channels = [
            "documents",
            self.database_channel(),
            self.table_channel_for(table_id),
            self.channel_for(table_id),
            f"{self.channel_for(table_id)}.{document_id}",
        ]
        self._offer(events, channels, document)

    def _publish_table(
        self, table_id: str, action: str, payload: dict[str, Any], attribute: str | None = None
    ) -> None:
        db = self.database_id
        base = f"databases.{db}.collections.{table_id}"
        if attribute is None:
            events = [f"{base}.{action}", base, f"databases.{db}.collections.*.{action}"]
        else:
            events = [
                f"{base}.attributes.{attribute}.{action}",
                f"{base}.attributes.{attribute}",
                f"{base}.attributes.*.{action}",
            ]
        self._offer(events, [self.database_channel(), self.table_channel_for(table_id)], payload)

    def _offer(self, events: list[str], channels: list[str], payload: dict[str, Any]) -> None:
        message = {
            "events": events,
            "channels": channels,
            "timestamp": _now(),
            "payload": copy.deepcopy(payload),
        }
        for transport in list(self._transports):
            transport.offer(message)

    def drop_connections(self) -> None:
        """Simulate the push channel dropping every open connection."""
        for transport in list(self._transports):
            transport.drop()

    def _register(self, transport: InMemoryRealtimeTransport) -> None:
        if self.refuse_connections > 0:
            self.refuse_connections -= 1
            raise TransportDisconnectedError("Realtime connection refused")
        self.connect_count += 1
        self._transports.append(transport)

    def _unregister(self, transport: InMemoryRealtimeTransport) -> None:
        if transport in self._transports:
            self._transports.remove(transport)


_DROP = object()


class InMemoryRealtimeTransport(RealtimeTransport):
    """Queue-backed realtime connection to an ``InMemoryBackend``."""

    def __init__(self, backend: InMemoryBackend):
        self.backend = backend
        self.channels: set[str] = set()
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._open = False

    async def connect(self, channels: list[str]) -> None:
        self.backend._register(self)
        self.channels = set(channels)
        self._open = True

    def offer(self, message: dict[str, Any]) -> None:
        if self._open and self.channels & set(message["channels"]):
            self._queue.put_nowait(message)

    def drop(self) -> None:
        self._open = False
        self.backend._unregister(self)
        self._queue.put_nowait(_DROP)

    async def receive(self) -> dict[str, Any]:
        if not self._open and self._queue.empty():
            raise TransportDisconnectedError("Realtime transport is not connected")
        item = await self._queue.get()
        if item is _DROP:
            raise TransportDisconnectedError("Realtime connection dropped")
        return item

    async def close(self) -> None:
        self._open = False
        self.backend._unregister(self)


# =============================================================================
# Query evaluation
# =============================================================================


def _sort_key(value: Any) -> tuple[int, Any]:
    # None sorts first, then values grouped by type so mixed columns never compare
    if value is None:
        return (0, "")
    if isinstance(value, bool | int | float):
        return (1, value)
    return (2, str(value))


def _matches(value: Any, method: str, values: list[Any]) -> bool:
    if method == "equal":
        if isinstance(value, list):
            return any(v in value for v in values)
        return value in values
    if method == "notEqual":
        return value not in values
    if method == "isNull":
        return value is None
    if method == "isNotNull":
        return value is not None
    if value is None:
        return False
    target = values[0] if values else None
    try:
        if method == "lessThan":
            return value < target
        if method == "lessThanEqual":
            return value <= target
        if method == "greaterThan":
            return value > target
        if method == "greaterThanEqual":
            return value >= target
    except TypeError:
        return False
    if method == "search":
        return str(target).lower() in str(value).lower()
    if method == "startsWith":
        return str(value).startswith(str(target))
    raise BackendError(f"Unsupported query method '{method}'", code=400, type="general_query_invalid")
