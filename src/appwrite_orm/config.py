"""
ORM configuration.

Single source of truth for backend endpoint, credentials and the tunables of
reconciliation, caching and realtime. Values can be passed directly or loaded
from environment variables with ``load_config``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any

from appwrite_orm.errors import ConfigError

_REQUIRED_FIELDS = ("endpoint", "project_id", "database_id")

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ORMConfig:
    """ORM configuration.

    Attributes:
        endpoint: Backend API endpoint, e.g. ``https://cloud.appwrite.io/v1``
        project_id: Project identifier
        database_id: Database holding the declared tables
        api_key: Server API key (required for schema management)
        auto_migrate: Reconcile attributes, indexes and permissions on init
        auto_validate: Check remote structure on init when not migrating
        development: Use the in-memory backend instead of the remote one
        cache_ttl: Default read cache TTL in seconds (0 disables caching)
        realtime: Open the realtime channel for cache invalidation/listeners
        poll_interval: Seconds between attribute status polls
        poll_timeout: Maximum seconds to wait for an attribute to become available
        migration_concurrency: Parallel attribute operations per table
        request_timeout: HTTP timeout in seconds
    """

    endpoint: str = ""
    project_id: str = ""
    database_id: str = ""
    api_key: str | None = None
    auto_migrate: bool = False
    auto_validate: bool = True
    development: bool = False
    cache_ttl: float = 300.0
    realtime: bool = True
    poll_interval: float = 0.5
    poll_timeout: float = 30.0
    migration_concurrency: int = 4
    request_timeout: float = 30.0

    def validate(self) -> None:
        """Raise ``ConfigError`` if required values are missing.

        Development mode runs without a remote backend and skips the check.
        """
        if self.development:
            return
        missing = [name for name in _REQUIRED_FIELDS if not str(getattr(self, name) or "").strip()]
        if missing:
            raise ConfigError(missing)

    @property
    def realtime_endpoint(self) -> str:
        """Websocket endpoint derived from the REST endpoint."""
        endpoint = self.endpoint.rstrip("/")
        if endpoint.startswith("https://"):
            endpoint = "wss://" + endpoint[len("https://") :]
        elif endpoint.startswith("http://"):
            endpoint = "ws://" + endpoint[len("http://") :]
        return f"{endpoint}/realtime"

    def with_overrides(self, **changes: Any) -> ORMConfig:
        return replace(self, **changes)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def load_config(**overrides: Any) -> ORMConfig:
    """Load configuration from environment variables.

    Environment variables:
        - APPWRITE_ENDPOINT → endpoint
        - APPWRITE_PROJECT_ID → project_id
        - APPWRITE_DATABASE_ID → database_id
        - APPWRITE_API_KEY → api_key
        - APPWRITE_ORM_AUTO_MIGRATE → auto_migrate
        - APPWRITE_ORM_DEVELOPMENT → development
        - APPWRITE_ORM_CACHE_TTL → cache_ttl

    Keyword overrides win over the environment.
    """
    config = ORMConfig(
        endpoint=os.environ.get("APPWRITE_ENDPOINT", ""),
        project_id=os.environ.get("APPWRITE_PROJECT_ID", ""),
        database_id=os.environ.get("APPWRITE_DATABASE_ID", ""),
        api_key=os.environ.get("APPWRITE_API_KEY") or None,
        auto_migrate=_env_flag("APPWRITE_ORM_AUTO_MIGRATE", False),
        development=_env_flag("APPWRITE_ORM_DEVELOPMENT", False),
        cache_ttl=float(os.environ.get("APPWRITE_ORM_CACHE_TTL", "300")),
    )
    if overrides:
        config = replace(config, **overrides)
    return config
