"""
Tests for the ORM orchestrator.

These run the whole stack (reconciliation, table access, cache and realtime)
against the in-memory backend.
"""

from __future__ import annotations

import pytest

from appwrite_orm import ORM
from appwrite_orm.backends.memory import InMemoryBackend
from appwrite_orm.config import ORMConfig
from appwrite_orm.errors import (
    AttributeProvisioningError,
    ConfigError,
    DeclarationError,
    MigrationError,
    ORMError,
    PermissionApplyError,
    SchemaConflictError,
    TableUnavailableError,
)
from appwrite_orm.runtime.differ import OperationKind
from appwrite_orm.runtime.realtime import EventType
from appwrite_orm.specs.table import AttributeSpec

# =============================================================================
# Construction
# =============================================================================


class TestConstruction:
    def test_missing_config_raises(self) -> None:
        with pytest.raises(ConfigError):
            ORM(ORMConfig(endpoint="https://x/v1"))

    def test_development_defaults_to_memory_backend(self) -> None:
        orm = ORM(ORMConfig(development=True, database_id="dev"))
        assert isinstance(orm.backend, InMemoryBackend)
        assert orm.backend.database_id == "dev"
        assert orm.bus is not None

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("APPWRITE_ORM_DEVELOPMENT", "true")
        monkeypatch.delenv("APPWRITE_DATABASE_ID", raising=False)

        orm = ORM.from_env(cache_ttl=0)

        assert isinstance(orm.backend, InMemoryBackend)
        assert orm.backend.database_id == "default"
        assert orm.cache.default_ttl == 0

    def test_realtime_disabled_has_no_bus(self, config, backend) -> None:
        orm = ORM(config.with_overrides(realtime=False), backend=backend)
        assert orm.bus is None


# =============================================================================
# Initialization
# =============================================================================


class TestInit:
    @pytest.mark.asyncio
    async def test_creates_and_registers_tables(
        self, config, backend, sleep, messages_spec, users_spec
    ) -> None:
        orm = ORM(config, backend=backend, sleep=sleep)

        report = await orm.init([messages_spec, users_spec])

        assert report.ok
        assert report.succeeded == ["messages", "users"]
        assert report.outcomes["messages"].created
        assert orm.tables == ["messages", "users"]
        remote = await backend.get_table("messages")
        assert {a.name for a in remote.attributes} == {"body", "status", "priority", "author"}
        assert remote.index_keys == {"by_status"}
        assert orm.bus.connected
        await orm.close()

    @pytest.mark.asyncio
    async def test_accepts_declaration_mappings(self, config, backend, sleep) -> None:
        orm = ORM(config, backend=backend, sleep=sleep)

        report = await orm.init(
            [{"name": "People", "id": "people", "schema": {"name": {"type": "str"}}}]
        )

        assert report.ok
        assert orm.table("People") is orm.table("people")
        await orm.close()

    @pytest.mark.asyncio
    async def test_failed_table_does_not_block_others(
        self, config, sleep, messages_spec, users_spec
    ) -> None:
        backend = InMemoryBackend(database_id="main", stuck_attributes={"age"})
        orm = ORM(config, backend=backend, sleep=sleep)

        report = await orm.init([users_spec, messages_spec])

        assert report.succeeded == ["messages"]
        assert report.failed == ["users"]
        error = report.failures["users"]
        assert isinstance(error, AttributeProvisioningError)
        assert error.status == "timeout"
        assert error.context.attribute == "age"

        await orm.table("messages").create({"body": "still works"})
        with pytest.raises(TableUnavailableError) as exc_info:
            orm.table("users")
        assert exc_info.value.cause is error
        with pytest.raises(AttributeProvisioningError):
            report.raise_for_errors()
        await orm.close()

    @pytest.mark.asyncio
    async def test_invalid_declaration_does_not_block_others(self, config, backend, sleep) -> None:
        orm = ORM(config, backend=backend, sleep=sleep)

        report = await orm.init(
            [
                {"name": "notes", "attributes": {"body": {"type": "string"}}},
                {"name": "bad", "attributes": {"x": {"type": "enum"}}},
                {"name": "tags", "attributes": {"label": {"type": "string"}}},
            ]
        )

        assert report.succeeded == ["notes", "tags"]
        error = report.failures["bad"]
        assert isinstance(error, DeclarationError)
        assert isinstance(error, MigrationError)
        assert error.table == "bad"
        assert "enum_values" in error.message
        with pytest.raises(TableUnavailableError) as exc_info:
            orm.table("bad")
        assert exc_info.value.cause is error
        await orm.close()

    @pytest.mark.asyncio
    async def test_retry_resumes_failed_table(self, config, sleep, users_spec) -> None:
        backend = InMemoryBackend(database_id="main", stuck_attributes={"age"})
        orm = ORM(config, backend=backend, sleep=sleep)
        await orm.init([users_spec])

        backend.stuck_attributes.clear()
        report = await orm.init([users_spec])

        assert report.ok
        assert orm.table("users").table_id == "users"
        steps = orm.history.for_table("users")
        assert sorted(s.attribute for s in steps) == ["age", "name"]
        assert all(s.action == OperationKind.CREATE for s in steps)
        await orm.close()

    @pytest.mark.asyncio
    async def test_kind_change_is_reported(self, config, backend, sleep, users_spec) -> None:
        backend.provisioning_polls = 0
        await backend.create_database("main")
        await backend.create_table("users", "users", ['read("any")'])
        await backend.create_attribute("users", AttributeSpec(name="age", kind="string"))
        orm = ORM(config, backend=backend, sleep=sleep)

        report = await orm.init([users_spec])

        assert isinstance(report.failures["users"], SchemaConflictError)
        assert (await backend.get_table("users")).attributes[0].kind == "string"
        await orm.close()

    @pytest.mark.asyncio
    async def test_rejected_permission_keeps_table_available(
        self, config, sleep, messages_spec
    ) -> None:
        backend = InMemoryBackend(database_id="main", reject_permissions={'create("users")'})
        await backend.create_database("main")
        await backend.create_table("messages", "messages", [])
        orm = ORM(config, backend=backend, sleep=sleep)

        report = await orm.init([messages_spec])

        assert report.failed == []
        assert not report.ok
        assert len(report.permission_errors) == 1
        assert orm.table("messages") is not None
        with pytest.raises(PermissionApplyError):
            report.raise_for_errors()
        await orm.close()

    @pytest.mark.asyncio
    async def test_validate_only_mode(self, config, backend, sleep, users_spec) -> None:
        validating = ORM(config.with_overrides(auto_migrate=False), backend=backend, sleep=sleep)

        report = await validating.init([users_spec])
        assert isinstance(report.failures["users"], MigrationError)
        assert backend.calls["create_table"] == 0

        migrating = ORM(config, backend=backend, sleep=sleep)
        await migrating.init([users_spec])

        report = await validating.init([users_spec])
        assert report.ok
        assert validating.table("users").name == "users"
        await migrating.close()
        await validating.close()

    def test_unknown_table(self, config, backend) -> None:
        orm = ORM(config, backend=backend)
        with pytest.raises(TableUnavailableError, match="not registered"):
            orm.table("nope")


# =============================================================================
# Joins
# =============================================================================


class TestJoins:
    @pytest.mark.asyncio
    async def test_left_and_inner_join(
        self, config, backend, sleep, messages_spec, users_spec
    ) -> None:
        orm = ORM(config, backend=backend, sleep=sleep)
        await orm.init([messages_spec, users_spec])
        users, messages = orm.table("users"), orm.table("messages")
        await users.create({"name": "Ann"}, document_id="u1")
        await users.create({"name": "Bob"}, document_id="u2")
        await messages.create({"body": "m1", "author": "u1"}, document_id="m1")
        await messages.create({"body": "m2", "author": "u2"}, document_id="m2")
        await messages.create({"body": "m3"}, document_id="m3")
        await messages.create({"body": "m4", "author": "ghost"}, document_id="m4")

        rows = await orm.left_join("messages", "users", "author", alias="writer")
        joined = {d["$id"]: d for d in rows}

        assert joined["m1"]["writer"]["name"] == "Ann"
        assert joined["m2"]["writer"]["name"] == "Bob"
        assert joined["m3"]["writer"] is None
        assert joined["m4"]["writer"] is None

        inner = await orm.inner_join("messages", "users", "author")
        assert sorted(d["users"]["name"] for d in inner) == ["Ann", "Bob"]
        await orm.close()

    @pytest.mark.asyncio
    async def test_join_with_several_matches(self, config, backend, sleep, messages_spec) -> None:
        orm = ORM(config, backend=backend, sleep=sleep)
        tags_declaration = {
            "name": "tags",
            "attributes": {"message": {"type": "string"}, "label": {"type": "string"}},
        }
        await orm.init([messages_spec, tags_declaration])
        await orm.table("messages").create({"body": "hi"}, document_id="m1")
        await orm.table("tags").create({"message": "m1", "label": "a"})
        await orm.table("tags").create({"message": "m1", "label": "b"})

        joined = await orm.join("tags", "messages", "message", alias="parent")
        assert [d["parent"]["body"] for d in joined] == ["hi", "hi"]

        (reverse,) = await orm.join("messages", "tags", "$id", reference_key="message")
        assert sorted(t["label"] for t in reverse["tags"]) == ["a", "b"]
        await orm.close()


# =============================================================================
# Export / import
# =============================================================================


class TestExportImport:
    @pytest.mark.asyncio
    async def test_export_includes_failed_tables(
        self, config, sleep, messages_spec, users_spec
    ) -> None:
        backend = InMemoryBackend(database_id="main", stuck_attributes={"age"})
        orm = ORM(config, backend=backend, sleep=sleep)
        await orm.init([messages_spec, users_spec])

        sql = orm.export_sql()

        assert "CREATE TABLE messages (" in sql
        assert "CREATE TABLE users (" in sql
        assert "Collection: users" in orm.export_text()
        rules = orm.export_firebase()
        assert '"messages": {' in rules
        assert '"users": {' in rules
        await orm.close()

    @pytest.mark.asyncio
    async def test_import_into_declared_table(self, config, backend, sleep, users_spec) -> None:
        orm = ORM(config, backend=backend, sleep=sleep)
        await orm.init([users_spec])

        summary = await orm.import_into("users", [{"name": "a"}, {"age": 3}], batch_size=1)

        assert (summary.created, summary.failed, summary.batches) == (1, 1, 2)
        await orm.close()

    @pytest.mark.asyncio
    async def test_import_into_new_table_infers_schema(self, config, backend, sleep) -> None:
        orm = ORM(config, backend=backend, sleep=sleep)
        records = ({"email": f"u{i}@example.com", "age": i or None} for i in range(5))

        summary = await orm.import_into("contacts", records)

        assert summary.created == 5
        assert "contacts" in orm.tables
        assert await orm.table("contacts").count() == 5
        remote = await backend.get_table("contacts")
        kinds = {a.name: a.kind for a in remote.attributes}
        assert kinds == {"email": "string", "age": "integer"}
        assert "CREATE TABLE contacts (" in orm.export_sql()
        await orm.close()

    @pytest.mark.asyncio
    async def test_import_nothing_into_unknown_table(self, config, backend, sleep) -> None:
        orm = ORM(config, backend=backend, sleep=sleep)
        with pytest.raises(TableUnavailableError):
            await orm.import_into("empty", [])


# =============================================================================
# Realtime
# =============================================================================


class TestRealtime:
    @pytest.mark.asyncio
    async def test_listener_receives_changes(
        self, config, backend, sleep, until, messages_spec
    ) -> None:
        orm = ORM(config, backend=backend, sleep=sleep)
        await orm.init([messages_spec])
        messages = orm.table("messages")
        changes = []
        messages.listen_to_documents(changes.append, event_types=["create", "delete"])

        created = await messages.create({"body": "hi"})
        await messages.update(created["$id"], {"status": "sent"})
        await messages.delete(created["$id"])
        await until(lambda: len(changes) == 2)

        assert [c.event_type for c in changes] == [EventType.CREATE, EventType.DELETE]
        assert changes[0].document_id == created["$id"]
        await orm.close()

    @pytest.mark.asyncio
    async def test_document_listener(self, config, backend, sleep, until, messages_spec) -> None:
        orm = ORM(config, backend=backend, sleep=sleep)
        await orm.init([messages_spec])
        messages = orm.table("messages")
        a = await messages.create({"body": "a"})
        b = await messages.create({"body": "b"})
        seen, updates = [], []
        subscription = messages.listen_to_document(
            a["$id"], lambda c: seen.append(c.payload["body"])
        )
        messages.listen_to_documents(updates.append, event_types=["update"])

        await messages.update(b["$id"], {"body": "b2"})
        await messages.update(a["$id"], {"body": "a2"})
        await until(lambda: seen == ["a2"])

        subscription.cancel()
        await messages.update(a["$id"], {"body": "a3"})
        await until(lambda: len(updates) == 3)
        assert seen == ["a2"]
        await orm.close()

    @pytest.mark.asyncio
    async def test_table_and_database_listeners(
        self, config, backend, sleep, until, messages_spec
    ) -> None:
        orm = ORM(config, backend=backend, sleep=sleep)
        await orm.init([messages_spec])
        messages = orm.table("messages")
        table_events, database_events = [], []
        connects = backend.connect_count

        messages.listen_to_table(table_events.append)
        messages.listen_to_database(database_events.append, event_types=[EventType.CREATE])
        await until(lambda: backend.connect_count == connects + 1 and orm.bus.connected)

        await messages.create({"body": "hi"})
        await backend.create_table("audit", "audit", [])
        await until(lambda: len(database_events) == 2)

        assert [(e.table_id, e.document_event) for e in table_events] == [("messages", True)]
        assert [(e.table_id, e.document_event) for e in database_events] == [
            ("messages", True),
            ("audit", False),
        ]
        await orm.close()

    @pytest.mark.asyncio
    async def test_external_change_invalidates_cache(
        self, config, backend, sleep, until, messages_spec
    ) -> None:
        orm = ORM(config, backend=backend, sleep=sleep)
        await orm.init([messages_spec])
        messages = orm.table("messages")
        assert await messages.count() == 0

        # Written by another client, bypassing this ORM's write path
        await backend.create_document("messages", {"body": "external"})
        await until(lambda: len(orm.cache) == 0)

        assert await messages.count() == 1
        await orm.close()

    @pytest.mark.asyncio
    async def test_listen_when_realtime_disabled(self, config, backend, sleep, messages_spec) -> None:
        orm = ORM(config.with_overrides(realtime=False), backend=backend, sleep=sleep)
        await orm.init([messages_spec])

        with pytest.raises(ORMError, match="Realtime is disabled"):
            orm.table("messages").listen_to_documents(lambda change: None)
        await orm.close()

    @pytest.mark.asyncio
    async def test_close_cancels_subscriptions(self, config, backend, sleep, messages_spec) -> None:
        async with ORM(config, backend=backend, sleep=sleep) as orm:
            await orm.init([messages_spec])
            subscription = orm.table("messages").listen_to_documents(lambda change: None)
            assert orm.bus.connected

        assert not subscription.active
        assert not orm.bus.connected
        assert orm.bus.subscriptions == []
        assert backend._transports == []
