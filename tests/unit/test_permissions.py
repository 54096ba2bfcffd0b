"""Tests for permission reconciliation."""

from __future__ import annotations

import pytest

from appwrite_orm.backends.memory import InMemoryBackend
from appwrite_orm.errors import PermissionApplyError
from appwrite_orm.runtime.permissions import PermissionReconciler, parse_permissions, to_wire
from appwrite_orm.specs.table import PermissionRule


def rule(role: str, action: str) -> PermissionRule:
    return PermissionRule(role=role, action=action)


class RecordingBackend(InMemoryBackend):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.writes: list[list[str]] = []

    async def update_table_permissions(self, table_id, permissions, name=None):
        self.writes.append(list(permissions))
        await super().update_table_permissions(table_id, permissions, name=name)


async def table_with(backend: InMemoryBackend, permissions: list[str]) -> None:
    await backend.create_database("main")
    await backend.create_table("messages", "messages", permissions)


class TestCodec:
    def test_parse_skips_malformed(self) -> None:
        rules = parse_permissions(['read("any")', "garbage", 'update("users")'])
        assert rules == {rule("any", "read"), rule("users", "update")}

    def test_to_wire_is_sorted(self) -> None:
        assert to_wire({rule("users", "update"), rule("any", "read")}) == [
            'read("any")',
            'update("users")',
        ]


class TestPermissionReconciler:
    @pytest.mark.asyncio
    async def test_converged_makes_no_calls(self) -> None:
        backend = RecordingBackend(database_id="main")
        await table_with(backend, ['read("any")'])

        result = await PermissionReconciler(backend).reconcile(
            "messages", {rule("any", "read")}, ['read("any")']
        )

        assert result.ok
        assert result.calls == 0
        assert backend.writes == []

    @pytest.mark.asyncio
    async def test_removals_before_additions(self) -> None:
        backend = RecordingBackend(database_id="main")
        live = ['read("any")', 'delete("users")']
        await table_with(backend, live)
        declared = {rule("any", "read"), rule("users", "create"), rule("users", "update")}

        result = await PermissionReconciler(backend).reconcile("messages", declared, live)

        assert result.removed == [rule("users", "delete")]
        assert result.added == [rule("users", "create"), rule("users", "update")]
        # One full-list write per rule, removal first
        assert backend.writes == [
            ['read("any")'],
            ['create("users")', 'read("any")'],
            ['create("users")', 'read("any")', 'update("users")'],
        ]
        table = await backend.get_table("messages")
        assert set(table.permissions) == {r.to_wire() for r in declared}

    @pytest.mark.asyncio
    async def test_rejected_rule_does_not_stop_others(self) -> None:
        backend = RecordingBackend(database_id="main", reject_permissions={'create("guests")'})
        await table_with(backend, [])
        declared = {rule("any", "read"), rule("guests", "create"), rule("users", "update")}

        result = await PermissionReconciler(backend).reconcile("messages", declared, [])

        assert not result.ok
        assert len(result.errors) == 1
        error = result.errors[0]
        assert isinstance(error, PermissionApplyError)
        assert error.context.rule == 'create("guests")'
        assert error.operation == "add"
        assert set(result.added) == {rule("any", "read"), rule("users", "update")}
        assert result.calls == 3

        table = await backend.get_table("messages")
        assert set(table.permissions) == {'read("any")', 'update("users")'}

    @pytest.mark.asyncio
    async def test_retry_converges_remaining_rules(self) -> None:
        backend = RecordingBackend(database_id="main", reject_permissions={'create("guests")'})
        await table_with(backend, [])
        declared = {rule("any", "read"), rule("guests", "create")}
        reconciler = PermissionReconciler(backend)

        await reconciler.reconcile("messages", declared, [])
        backend.reject_permissions.clear()
        live = (await backend.get_table("messages")).permissions
        result = await reconciler.reconcile("messages", declared, live)

        assert result.added == [rule("guests", "create")]
        assert result.ok
