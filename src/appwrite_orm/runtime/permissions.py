"""
Table permission reconciliation.

The backend only accepts whole permission lists, so each rule change is
applied as its own full-list write. A rejected rule is reported and the
remaining rules still run; the next reconciliation retries whatever is left.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from appwrite_orm.backends.base import BackendClient
from appwrite_orm.errors import BackendError, PermissionApplyError
from appwrite_orm.specs.table import PermissionRule

logger = logging.getLogger(__name__)


def parse_permissions(values: Iterable[str]) -> set[PermissionRule]:
    """Parse wire permission strings into a rule set.

    Strings that do not parse are skipped with a warning so one malformed
    remote entry cannot block reconciliation of the rest.
    """
    rules: set[PermissionRule] = set()
    for value in values:
        try:
            rules.update(PermissionRule.from_wire(value))
        except ValueError:
            logger.warning("Ignoring unparseable permission %r", value)
    return rules


def to_wire(rules: Iterable[PermissionRule]) -> list[str]:
    """Wire strings in a stable order."""
    return sorted(rule.to_wire() for rule in rules)


@dataclass
class PermissionResult:
    """Outcome of reconciling one table's permissions."""

    table_id: str
    added: list[PermissionRule] = field(default_factory=list)
    removed: list[PermissionRule] = field(default_factory=list)
    errors: list[PermissionApplyError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def calls(self) -> int:
        return len(self.added) + len(self.removed) + len(self.errors)


class PermissionReconciler:
    """Converges a table's live permissions to the declared rule set."""

    def __init__(self, backend: BackendClient):
        self.backend = backend

    async def reconcile(
        self,
        table_id: str,
        declared: Iterable[PermissionRule],
        live: Iterable[str],
        name: str | None = None,
    ) -> PermissionResult:
        """
        Apply the difference between declared and live permissions.

        Args:
            table_id: Backend table id
            declared: Declared rules
            live: Permission strings currently on the table
            name: Table name to send along with the full-list write

        Returns:
            Applied additions and removals, and a ``PermissionApplyError``
            per rejected rule
        """
        wanted = set(declared)
        current = parse_permissions(live)
        result = PermissionResult(table_id=table_id)

        to_remove = sorted(current - wanted, key=str)
        to_add = sorted(wanted - current, key=str)
        if not to_remove and not to_add:
            return result

        logger.info(
            "Reconciling permissions for %s: +%d -%d", table_id, len(to_add), len(to_remove)
        )

        for operation, rules in (("remove", to_remove), ("add", to_add)):
            for rule in rules:
                candidate = current - {rule} if operation == "remove" else current | {rule}
                try:
                    await self.backend.update_table_permissions(table_id, to_wire(candidate), name=name)
                except BackendError as e:
                    logger.warning("Failed to %s %s on %s: %s", operation, rule, table_id, e.message)
                    result.errors.append(
                        PermissionApplyError(table_id, rule.to_wire(), operation, e.message)
                    )
                    continue
                current = candidate
                (result.removed if operation == "remove" else result.added).append(rule)

        return result
