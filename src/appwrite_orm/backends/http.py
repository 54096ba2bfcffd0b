"""
REST backend client.

Talks to the backend's databases API over HTTP with httpx. Error responses
are mapped to ``NotFoundError`` (404) and ``BackendError`` (everything else);
transport failures surface as ``BackendError`` with no status code.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from appwrite_orm.backends.base import UNIQUE_ID, BackendClient, RealtimeTransport
from appwrite_orm.config import ORMConfig
from appwrite_orm.errors import BackendError, NotFoundError
from appwrite_orm.specs.remote import RemoteAttributeState, RemoteTableState
from appwrite_orm.specs.table import AttributeKind, AttributeSpec, IndexSpec

logger = logging.getLogger(__name__)


def attribute_payload(spec: AttributeSpec, *, for_update: bool = False) -> dict[str, Any]:
    """Request body for creating (or updating) an attribute of ``spec.kind``."""
    body: dict[str, Any] = {} if for_update else {"key": spec.name}

    if spec.kind == AttributeKind.RELATIONSHIP:
        if for_update:
            return {"onDelete": spec.on_delete.value}
        body.update(
            relatedCollectionId=spec.related_table,
            type=(spec.relation_type.value if spec.relation_type else "manyToOne"),
            twoWay=spec.two_way,
            onDelete=spec.on_delete.value,
        )
        return body

    body["required"] = spec.required
    body["default"] = spec.effective_default
    if not for_update:
        body["array"] = spec.array

    if spec.kind == AttributeKind.STRING:
        body["size"] = spec.size
    elif spec.kind in (AttributeKind.INTEGER, AttributeKind.FLOAT):
        if spec.min is not None:
            body["min"] = spec.min
        if spec.max is not None:
            body["max"] = spec.max
    elif spec.kind == AttributeKind.ENUM:
        body["elements"] = spec.enum_values
    return body


class HttpBackendClient(BackendClient):
    """
    Backend client over the REST API.

    Args:
        config: ORM configuration (endpoint, project, database, API key)
        client: Pre-built ``httpx.AsyncClient`` (tests inject a mock transport)
    """

    supports_realtime = True

    def __init__(self, config: ORMConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self.database_id = config.database_id
        headers = {
            "X-Appwrite-Project": config.project_id,
            "Content-Type": "application/json",
        }
        if config.api_key:
            headers["X-Appwrite-Key"] = config.api_key
        self._client = client or httpx.AsyncClient(
            base_url=config.endpoint.rstrip("/"),
            headers=headers,
            timeout=config.request_timeout,
        )

    @property
    def _db_path(self) -> str:
        return f"/databases/{self.database_id}"

    def _table_path(self, table_id: str) -> str:
        return f"{self._db_path}/collections/{table_id}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | list[tuple[str, Any]] | None = None,
    ) -> Any:
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            raise BackendError(f"{method} {path} failed: {e}") from e

        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            message = body.get("message") or response.reason_phrase or "Request failed"
            error_type = body.get("type")
            logger.debug("%s %s -> %s %s", method, path, response.status_code, error_type)
            if response.status_code == 404:
                raise NotFoundError(message, type=error_type)
            raise BackendError(message, code=response.status_code, type=error_type)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # =========================================================================
    # Databases and tables
    # =========================================================================

    async def get_database(self) -> dict[str, Any]:
        return await self._request("GET", self._db_path)

    async def create_database(self, name: str) -> dict[str, Any]:
        return await self._request(
            "POST", "/databases", json={"databaseId": self.database_id, "name": name}
        )

    async def get_table(self, table_id: str) -> RemoteTableState:
        data = await self._request("GET", self._table_path(table_id))
        return RemoteTableState.from_remote(data)

    async def create_table(
        self,
        table_id: str,
        name: str,
        permissions: list[str],
        document_security: bool = False,
    ) -> RemoteTableState:
        data = await self._request(
            "POST",
            f"{self._db_path}/collections",
            json={
                "collectionId": table_id,
                "name": name,
                "permissions": permissions,
                "documentSecurity": document_security,
            },
        )
        return RemoteTableState.from_remote(data)

    async def update_table_permissions(
        self, table_id: str, permissions: list[str], name: str | None = None
    ) -> None:
        await self._request(
            "PUT",
            self._table_path(table_id),
            json={"name": name or table_id, "permissions": permissions},
        )

    # =========================================================================
    # Attributes and indexes
    # =========================================================================

    async def list_attributes(self, table_id: str) -> list[RemoteAttributeState]:
        data = await self._request("GET", f"{self._table_path(table_id)}/attributes")
        return [RemoteAttributeState.from_remote(a) for a in data.get("attributes", [])]

    async def get_attribute(self, table_id: str, name: str) -> RemoteAttributeState:
        data = await self._request("GET", f"{self._table_path(table_id)}/attributes/{name}")
        return RemoteAttributeState.from_remote(data)

    async def create_attribute(self, table_id: str, spec: AttributeSpec) -> RemoteAttributeState:
        data = await self._request(
            "POST",
            f"{self._table_path(table_id)}/attributes/{spec.kind.value}",
            json=attribute_payload(spec),
        )
        return RemoteAttributeState.from_remote(data)

    async def update_attribute(self, table_id: str, spec: AttributeSpec) -> RemoteAttributeState:
        path = f"{self._table_path(table_id)}/attributes/{spec.kind.value}/{spec.name}"
        if spec.kind == AttributeKind.RELATIONSHIP:
            path = f"{self._table_path(table_id)}/attributes/{spec.name}/relationship"
        data = await self._request("PATCH", path, json=attribute_payload(spec, for_update=True))
        return RemoteAttributeState.from_remote(data)

    async def delete_attribute(self, table_id: str, name: str) -> None:
        await self._request("DELETE", f"{self._table_path(table_id)}/attributes/{name}")

    async def create_index(self, table_id: str, index: IndexSpec) -> None:
        body: dict[str, Any] = {
            "key": index.key,
            "type": index.type.value,
            "attributes": index.attributes,
        }
        if index.orders:
            body["orders"] = index.orders
        await self._request("POST", f"{self._table_path(table_id)}/indexes", json=body)

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
        body: dict[str, Any] = {"documentId": document_id, "data": data}
        if permissions is not None:
            body["permissions"] = permissions
        return await self._request("POST", f"{self._table_path(table_id)}/documents", json=body)

    async def get_document(self, table_id: str, document_id: str) -> dict[str, Any]:
        return await self._request("GET", f"{self._table_path(table_id)}/documents/{document_id}")

    async def update_document(
        self, table_id: str, document_id: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._request(
            "PATCH",
            f"{self._table_path(table_id)}/documents/{document_id}",
            json={"data": data},
        )

    async def delete_document(self, table_id: str, document_id: str) -> None:
        await self._request("DELETE", f"{self._table_path(table_id)}/documents/{document_id}")

    async def list_documents(
        self, table_id: str, queries: list[str] | None = None
    ) -> tuple[list[dict[str, Any]], int]:
        params = [("queries[]", q) for q in queries or []]
        data = await self._request(
            "GET", f"{self._table_path(table_id)}/documents", params=params or None
        )
        return list(data.get("documents", [])), int(data.get("total", 0))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def create_transport(self) -> RealtimeTransport:
        from appwrite_orm.backends.websocket import AiohttpRealtimeTransport

        return AiohttpRealtimeTransport(
            self.config.realtime_endpoint,
            self.config.project_id,
        )

    async def close(self) -> None:
        await self._client.aclose()
