"""Shared pytest fixtures for appwrite-orm tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from appwrite_orm.backends.memory import InMemoryBackend
from appwrite_orm.config import ORMConfig
from appwrite_orm.specs.table import TableSpec


class SleepRecorder:
    """Awaitable ``sleep`` replacement that records delays and only yields."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], rounds: int = 200) -> None:
    """Yield to the event loop until ``predicate`` holds."""
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def backend() -> InMemoryBackend:
    """In-memory backend where attributes need one poll to become available."""
    return InMemoryBackend(database_id="main", provisioning_polls=1)


@pytest.fixture
def config() -> ORMConfig:
    return ORMConfig(
        database_id="main",
        development=True,
        auto_migrate=True,
        poll_interval=0.01,
        poll_timeout=0.05,
    )


@pytest.fixture
def messages_spec() -> TableSpec:
    return TableSpec.from_declaration(
        {
            "name": "messages",
            "attributes": {
                "body": {"type": "string", "required": True, "size": 200},
                "status": {"type": ["draft", "sent"], "default": "draft"},
                "priority": {"type": "integer", "min": 0, "max": 10},
                "author": {"type": "string"},
            },
            "indexes": [{"key": "by_status", "attributes": ["status"]}],
            "permissions": [
                {"role": "any", "actions": ["read"]},
                {"role": "users", "actions": ["create", "update"]},
            ],
        }
    )


@pytest.fixture
def users_spec() -> TableSpec:
    return TableSpec.from_declaration(
        {
            "name": "users",
            "attributes": {
                "name": {"type": "string", "required": True},
                "age": {"type": "integer"},
            },
        }
    )


@pytest.fixture
def until() -> Callable[..., object]:
    """``await until(lambda: ...)`` waits for background tasks to catch up."""
    return wait_until
