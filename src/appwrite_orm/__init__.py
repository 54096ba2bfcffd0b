"""
appwrite-orm: declarative tables over an Appwrite-style document database.

Declare tables, reconcile them against the backend on ``ORM.init``, then read
and write through cached, realtime-invalidated ``Table`` handles.
"""

from __future__ import annotations

import re
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _metadata_version
from pathlib import Path as _Path

from appwrite_orm.config import ORMConfig, load_config
from appwrite_orm.errors import (
    AttributeProvisioningError,
    BackendError,
    ConfigError,
    DeclarationError,
    ErrorContext,
    FieldError,
    ImportBatchError,
    MigrationError,
    NotFoundError,
    ORMError,
    PermissionApplyError,
    RealtimeUnavailableError,
    SchemaConflictError,
    TableUnavailableError,
    TransportDisconnectedError,
    ValidationError,
)
from appwrite_orm.logging import setup_logging
from appwrite_orm.orm import ORM, ReconciliationReport
from appwrite_orm.runtime.query import QueryOptions
from appwrite_orm.runtime.table import Table
from appwrite_orm.specs import AttributeKind, AttributeSpec, IndexSpec, PermissionGrant, TableSpec


def _get_version() -> str:
    """Version from pyproject.toml (editable install) or installed metadata."""
    pyproject = _Path(__file__).parent.parent.parent / "pyproject.toml"
    if pyproject.exists():
        content = pyproject.read_text()
        if match := re.search(r'^version\s*=\s*["\']([^"\']+)["\']', content, re.MULTILINE):
            return match.group(1)

    try:
        return _metadata_version("appwrite-orm")
    except PackageNotFoundError:
        return "0.0.0"


__version__ = _get_version()

__all__ = [
    "ORM",
    "AttributeKind",
    "AttributeProvisioningError",
    "AttributeSpec",
    "BackendError",
    "ConfigError",
    "DeclarationError",
    "ErrorContext",
    "FieldError",
    "ImportBatchError",
    "IndexSpec",
    "MigrationError",
    "NotFoundError",
    "ORMConfig",
    "ORMError",
    "PermissionApplyError",
    "PermissionGrant",
    "QueryOptions",
    "RealtimeUnavailableError",
    "ReconciliationReport",
    "SchemaConflictError",
    "Table",
    "TableSpec",
    "TableUnavailableError",
    "TransportDisconnectedError",
    "ValidationError",
    "__version__",
    "load_config",
    "setup_logging",
]
