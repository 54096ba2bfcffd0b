"""
Realtime event bus.

One transport connection per bus carries the channels of every watched
table. Each incoming event first invalidates the read cache and then fans
out to matching subscriptions: document listeners get one
``DocumentChange`` per event type, table and database listeners get the
whole ``RealtimeEvent``.

Features:
- Subscriptions scoped to a table's documents, a single document, a whole
  table or the whole database, filtered by event type
- Sync and async callbacks; a failing callback never affects the others
- Malformed frames are logged and skipped
- Reconnect with exponential backoff and jitter; subscriptions persist
- ``RealtimeUnavailableError`` once reconnect attempts are exhausted

Example:
    bus = RealtimeBus(backend.create_transport, backend.channel_for, cache=cache)
    sub = bus.subscribe("messages", on_change, event_types={EventType.CREATE})
    await bus.connect()
    ...
    sub.cancel()
    await bus.close()
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import random
import threading
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from appwrite_orm.backends.base import RealtimeTransport
from appwrite_orm.errors import RealtimeUnavailableError, TransportDisconnectedError
from appwrite_orm.logging import get_logger
from appwrite_orm.runtime.cache import CacheStore
from appwrite_orm.runtime.retry import BackoffPolicy

logger = get_logger("Realtime")

# =============================================================================
# Event Types
# =============================================================================


class EventType(StrEnum):
    """Mutation kinds carried by realtime events."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SubscriptionScope(StrEnum):
    """What a subscription listens to."""

    DOCUMENTS = "documents"
    TABLE = "table"
    DATABASE = "database"


_EVENT_ORDER = list(EventType)
_EVENT_NAMES = {e.value for e in EventType}


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


@dataclass(frozen=True)
class RealtimeEvent:
    """A parsed realtime event.

    ``events`` holds the raw qualified event names as received, e.g.
    ``databases.main.collections.messages.documents.42.update``. Events about
    a table itself or its attributes have ``document_event`` unset and no
    ``document_id``; events about the database have no ``table_id`` either.
    """

    table_id: str | None
    document_id: str | None
    event_types: frozenset[EventType]
    payload: dict[str, Any] = field(default_factory=dict, hash=False)
    events: tuple[str, ...] = ()
    timestamp: str | None = None
    database_id: str | None = None
    document_event: bool = True

    @classmethod
    def from_message(cls, data: Any) -> RealtimeEvent | None:
        """Parse the ``data`` object of an event message.

        Returns ``None`` for events outside the databases service and for
        malformed data (non-object data or payload, non-list events).
        """
        if not isinstance(data, dict):
            return None
        raw_events = data.get("events") or ()
        payload = data.get("payload") or {}
        if not isinstance(raw_events, list | tuple) or not isinstance(payload, dict):
            return None
        events = tuple(name for name in raw_events if isinstance(name, str))

        seen = False
        database_id: str | None = None
        table_id: str | None = None
        document_id: str | None = None
        document_event = False
        types: set[EventType] = set()
        for name in events:
            parts = name.split(".")
            if len(parts) < 2 or parts[0] != "databases":
                continue
            seen = True
            if parts[1] != "*":
                database_id = database_id or parts[1]
            if len(parts) >= 4 and parts[2] == "collections" and parts[3] != "*":
                table_id = table_id or parts[3]
            if len(parts) >= 6 and parts[2] == "collections" and parts[4] == "documents":
                document_event = True
                if parts[5] != "*":
                    document_id = document_id or parts[5]
            # Resource paths alternate kind and id; a trailing odd segment is the action
            if len(parts) >= 3 and len(parts) % 2 == 1 and parts[-1] in _EVENT_NAMES:
                types.add(EventType(parts[-1]))

        if not seen or not types:
            return None
        database_id = database_id or _text(payload.get("$databaseId"))
        if document_event:
            table_id = table_id or _text(payload.get("$collectionId"))
            document_id = document_id or _text(payload.get("$id"))
            if not table_id:
                return None
        timestamp = data.get("timestamp")
        return cls(
            table_id=table_id,
            document_id=document_id,
            event_types=frozenset(types),
            payload=payload,
            events=events,
            timestamp=timestamp if isinstance(timestamp, str) else None,
            database_id=database_id,
            document_event=document_event,
        )

    def changes(self) -> list[DocumentChange]:
        """One change per event type, in create/update/delete order; empty unless a document event."""
        if not self.document_event or self.table_id is None:
            return []
        return [
            DocumentChange(
                table_id=self.table_id,
                document_id=self.document_id,
                event_type=event_type,
                payload=self.payload,
                timestamp=self.timestamp,
            )
            for event_type in _EVENT_ORDER
            if event_type in self.event_types
        ]


@dataclass(frozen=True)
class DocumentChange:
    """A single document change as delivered to document listeners."""

    table_id: str
    document_id: str | None
    event_type: EventType
    payload: dict[str, Any] = field(default_factory=dict, hash=False)
    timestamp: str | None = None


ChangeCallback = Callable[[DocumentChange], Awaitable[None] | None]
EventCallback = Callable[[RealtimeEvent], Awaitable[None] | None]


def _event_filter(event_types: Iterable[EventType | str] | None) -> frozenset[EventType] | None:
    return frozenset(EventType(t) for t in event_types) if event_types else None


# =============================================================================
# Subscriptions
# =============================================================================


@dataclass(eq=False)
class Subscription:
    """
    Handle for one registered listener.

    ``cancel`` is idempotent and safe to call from inside the listener's own
    callback; nothing is delivered to a cancelled subscription.
    """

    id: str
    table_id: str | None
    callback: ChangeCallback | EventCallback
    document_id: str | None = None
    event_types: frozenset[EventType] | None = None
    scope: SubscriptionScope = SubscriptionScope.DOCUMENTS
    active: bool = True
    _on_cancel: Callable[[Subscription], None] | None = field(default=None, repr=False)

    def matches(self, change: DocumentChange) -> bool:
        """Whether a document listener takes ``change``."""
        if self.scope is not SubscriptionScope.DOCUMENTS or change.table_id != self.table_id:
            return False
        if self.document_id is not None and change.document_id != self.document_id:
            return False
        if self.event_types is not None and change.event_type not in self.event_types:
            return False
        return True

    def matches_event(self, event: RealtimeEvent) -> bool:
        """Whether a table or database listener takes ``event``."""
        if self.scope is SubscriptionScope.DOCUMENTS:
            return False
        if self.scope is SubscriptionScope.TABLE and event.table_id != self.table_id:
            return False
        if self.event_types is not None and not event.event_types & self.event_types:
            return False
        return True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._on_cancel is not None:
            self._on_cancel(self)


# =============================================================================
# Bus
# =============================================================================


class RealtimeBus:
    """
    Realtime subscription registry and connection supervisor.

    Args:
        transport_factory: Creates a fresh transport for each connection
        channel_for: Maps a table id to its document channel
        cache: Cache to invalidate on incoming events
        backoff: Reconnect policy
        sleep: Awaitable sleep, injectable for tests
        rng: Jitter source, injectable for tests
        table_channel_for: Maps a table id to its table channel (table listeners)
        database_channel: Channel of the whole database (database listeners)
    """

    def __init__(
        self,
        transport_factory: Callable[[], RealtimeTransport],
        channel_for: Callable[[str], str],
        cache: CacheStore | None = None,
        backoff: BackoffPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        table_channel_for: Callable[[str], str] | None = None,
        database_channel: str | None = None,
    ):
        self._transport_factory = transport_factory
        self._channel_for = channel_for
        self._table_channel_for = table_channel_for
        self._database_channel = database_channel
        self.cache = cache
        self.backoff = backoff or BackoffPolicy()
        self._sleep = sleep
        self._rng = rng

        self._lock = threading.RLock()
        self._subscriptions: dict[str, Subscription] = {}
        self._watched: set[str] = set()
        self._unavailable_callbacks: list[Callable[[RealtimeUnavailableError], Any]] = []

        self._task: asyncio.Task[None] | None = None
        self._refresh = asyncio.Event()
        self._attempted = asyncio.Event()
        self._connected_channels: frozenset[str] = frozenset()
        self._connected = False
        self._closing = False
        self.error: RealtimeUnavailableError | None = None

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    @property
    def channels(self) -> frozenset[str]:
        with self._lock:
            watched = set(self._watched)
            subscriptions = list(self._subscriptions.values())
        channels = {self._channel_for(t) for t in watched}
        for subscription in subscriptions:
            channels.add(self._channel_of(subscription))
        return frozenset(channels)

    def _channel_of(self, subscription: Subscription) -> str:
        if subscription.scope is SubscriptionScope.TABLE and self._table_channel_for is not None:
            return self._table_channel_for(subscription.table_id)
        if subscription.scope is SubscriptionScope.DATABASE and self._database_channel is not None:
            return self._database_channel
        return self._channel_for(subscription.table_id)

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def subscriptions(self) -> list[Subscription]:
        with self._lock:
            return list(self._subscriptions.values())

    def watch(self, table_id: str) -> None:
        """Receive events for a table (for cache invalidation) without a listener."""
        with self._lock:
            if table_id in self._watched:
                return
            self._watched.add(table_id)
        self._channels_changed()

    def unwatch(self, table_id: str) -> None:
        with self._lock:
            self._watched.discard(table_id)
        self._channels_changed()

    def subscribe(
        self,
        table_id: str,
        callback: ChangeCallback,
        document_id: str | None = None,
        event_types: Iterable[EventType | str] | None = None,
    ) -> Subscription:
        """
        Register a listener for document changes in a table or of one document.

        Args:
            table_id: Table to listen to
            callback: Called with each matching ``DocumentChange``; may be a coroutine function
            document_id: Only deliver changes for this document
            event_types: Only deliver these event types (default: all)
        """
        return self._add(
            Subscription(
                id=uuid.uuid4().hex,
                table_id=table_id,
                callback=callback,
                document_id=document_id,
                event_types=_event_filter(event_types),
            )
        )

    def subscribe_table(
        self,
        table_id: str,
        callback: EventCallback,
        event_types: Iterable[EventType | str] | None = None,
    ) -> Subscription:
        """Register a listener for every event under a table: the table, its attributes and documents."""
        if self._table_channel_for is None:
            raise ValueError("This bus has no table channel configured")
        return self._add(
            Subscription(
                id=uuid.uuid4().hex,
                table_id=table_id,
                callback=callback,
                event_types=_event_filter(event_types),
                scope=SubscriptionScope.TABLE,
            )
        )

    def subscribe_database(
        self,
        callback: EventCallback,
        event_types: Iterable[EventType | str] | None = None,
    ) -> Subscription:
        """Register a listener for every event in the database."""
        if self._database_channel is None:
            raise ValueError("This bus has no database channel configured")
        return self._add(
            Subscription(
                id=uuid.uuid4().hex,
                table_id=None,
                callback=callback,
                event_types=_event_filter(event_types),
                scope=SubscriptionScope.DATABASE,
            )
        )

    def _add(self, subscription: Subscription) -> Subscription:
        subscription._on_cancel = self._remove
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        logger.debug(
            "Subscribed %s to %s %s", subscription.id, subscription.scope.value, subscription.table_id or "*"
        )
        self._channels_changed()
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.id, None)
        self._channels_changed()

    def _channels_changed(self) -> None:
        if self._task is not None and self.channels != self._connected_channels:
            self._refresh.set()

    def on_unavailable(self, callback: Callable[[RealtimeUnavailableError], Any]) -> None:
        """Register a callback for when reconnect attempts are exhausted."""
        self._unavailable_callbacks.append(callback)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def dispatch(self, event: RealtimeEvent) -> int:
        """
        Invalidate the cache for ``event`` and deliver it to matching subscriptions.

        Returns:
            Number of callback invocations
        """
        if self.cache is not None and event.table_id is not None:
            if (
                event.document_event
                and event.document_id is not None
                and not event.event_types & {EventType.CREATE, EventType.DELETE}
            ):
                self.cache.invalidate(event.table_id, event.document_id)
            else:
                self.cache.invalidate(event.table_id)

        delivered = 0
        for change in event.changes():
            with self._lock:
                candidates = [s for s in self._subscriptions.values() if s.table_id == change.table_id]
            for subscription in candidates:
                # Re-checked per call: an earlier callback may have cancelled it
                if not subscription.active or not subscription.matches(change):
                    continue
                delivered += 1
                await self._invoke(subscription, change, f"{change.table_id}:{change.event_type.value}")

        with self._lock:
            candidates = [
                s for s in self._subscriptions.values() if s.scope is not SubscriptionScope.DOCUMENTS
            ]
        for subscription in candidates:
            if not subscription.active or not subscription.matches_event(event):
                continue
            delivered += 1
            await self._invoke(subscription, event, event.table_id or event.database_id or "database")
        return delivered

    async def _invoke(self, subscription: Subscription, item: DocumentChange | RealtimeEvent, label: str) -> None:
        try:
            result = subscription.callback(item)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(
                "Realtime callback %s failed for %s",
                getattr(subscription.callback, "__name__", subscription.callback),
                label,
            )

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> bool:
        """
        Start the connection supervisor and wait for the first connect attempt.

        Returns:
            Whether the bus is connected
        """
        if self._task is None or self._task.done():
            self._closing = False
            self.error = None
            self._attempted.clear()
            self._task = asyncio.create_task(self._run())
        waiter = asyncio.ensure_future(self._attempted.wait())
        await asyncio.wait({waiter, self._task}, return_when=asyncio.FIRST_COMPLETED)
        waiter.cancel()
        return self._connected

    async def close(self) -> None:
        """Stop the supervisor and close the transport. Subscriptions stay registered."""
        self._closing = True
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._connected = False

    async def wait_closed(self) -> None:
        """
        Wait for the supervisor to stop.

        Raises:
            RealtimeUnavailableError: The bus stopped because reconnects were exhausted
        """
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        if self.error is not None:
            raise self.error

    async def _run(self) -> None:
        failures = 0
        reconnecting = False
        last_error: BaseException | None = None

        while not self._closing:
            channels = self.channels
            if not channels:
                # Nothing to listen to: stay disconnected until a table is watched
                self._attempted.set()
                self._refresh.clear()
                await self._refresh.wait()
                continue

            if reconnecting:
                delay = self.backoff.delay(failures, self._rng)
                logger.info("Reconnecting realtime in %.2fs (attempt %d)", delay, failures + 1)
                await self._sleep(delay)

            transport = self._transport_factory()
            self._refresh.clear()
            try:
                await transport.connect(sorted(channels))
            except Exception as e:
                failures += 1
                last_error = e
                reconnecting = True
                logger.warning("Realtime connect failed (%d): %s", failures, e)
                await self._close_transport(transport)
                self._attempted.set()
                if self.backoff.exhausted(failures):
                    self._give_up(RealtimeUnavailableError(failures, last_error))
                    return
                continue

            if reconnecting:
                logger.info("Realtime reconnected after %d failed attempts", failures)
            failures = 0
            self._connected_channels = channels
            self._connected = True
            self._attempted.set()

            try:
                await self._pump(transport)
                reconnecting = False
            except TransportDisconnectedError as e:
                last_error = e
                reconnecting = True
                logger.warning("Realtime disconnected: %s", e)
            except Exception as e:
                last_error = e
                reconnecting = True
                logger.exception("Realtime transport failed")
            finally:
                self._connected = False
                self._connected_channels = frozenset()
                await self._close_transport(transport)

    async def _pump(self, transport: RealtimeTransport) -> None:
        """Deliver events until the transport drops or the channel set changes."""
        while not self._closing:
            receive = asyncio.ensure_future(transport.receive())
            refresh = asyncio.ensure_future(self._refresh.wait())
            try:
                done, _ = await asyncio.wait({receive, refresh}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                refresh.cancel()
                if not receive.done():
                    receive.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await receive

            if receive in done:
                await self._handle(receive.result())
                continue

            self._refresh.clear()
            if self.channels != self._connected_channels:
                logger.debug("Realtime channel set changed, reconnecting")
                return

    async def _handle(self, data: Any) -> None:
        try:
            event = RealtimeEvent.from_message(data)
        except Exception:
            logger.warning("Skipping malformed realtime event", exc_info=True)
            return
        if event is None:
            logger.debug("Skipping realtime message without a database event")
            return
        try:
            await self.dispatch(event)
        except Exception:
            logger.exception("Realtime dispatch failed for %s", event.events)

    async def _close_transport(self, transport: RealtimeTransport) -> None:
        try:
            await transport.close()
        except Exception:
            logger.debug("Error closing realtime transport", exc_info=True)

    def _give_up(self, error: RealtimeUnavailableError) -> None:
        logger.error("%s", error)
        self.error = error
        for callback in list(self._unavailable_callbacks):
            try:
                callback(error)
            except Exception:
                logger.exception("Realtime unavailable callback failed")
