"""
Schema specification types.

Declared schema (what the consumer wants) and observed remote state (what
the backend currently has).
"""

from appwrite_orm.specs.remote import (
    AttributeStatus,
    RemoteAttributeState,
    RemoteTableState,
    kind_from_wire,
)
from appwrite_orm.specs.table import (
    DEFAULT_PERMISSIONS,
    AttributeKind,
    AttributeSpec,
    IndexSpec,
    IndexType,
    OnDelete,
    PermissionAction,
    PermissionGrant,
    PermissionRule,
    RelationType,
    TableSpec,
    grants_from_role_map,
    parse_kind,
)

__all__ = [
    "AttributeKind",
    "AttributeSpec",
    "AttributeStatus",
    "DEFAULT_PERMISSIONS",
    "IndexSpec",
    "IndexType",
    "OnDelete",
    "PermissionAction",
    "PermissionGrant",
    "PermissionRule",
    "RelationType",
    "RemoteAttributeState",
    "RemoteTableState",
    "TableSpec",
    "grants_from_role_map",
    "kind_from_wire",
    "parse_kind",
]
