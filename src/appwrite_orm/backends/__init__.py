"""
Backend clients.

- ``HttpBackendClient``: REST API over httpx, realtime over aiohttp websockets
- ``InMemoryBackend``: in-process backend for development mode and tests
"""

from appwrite_orm.backends.base import UNIQUE_ID, BackendClient, RealtimeTransport
from appwrite_orm.backends.http import HttpBackendClient
from appwrite_orm.backends.memory import InMemoryBackend, InMemoryRealtimeTransport

__all__ = [
    "UNIQUE_ID",
    "BackendClient",
    "HttpBackendClient",
    "InMemoryBackend",
    "InMemoryRealtimeTransport",
    "RealtimeTransport",
]
