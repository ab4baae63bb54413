"""Wallet subscription manager.

Packs monitored wallets first-fit into capacity-bounded event source
connections, de-duplicates replayed notifications and republishes them
as :class:`TradeEvent` values.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from supermolt_arena.monitor.dedup import RecentKeyCache
from supermolt_arena.monitor.models import (
    ConnectionStats,
    MalformedEventError,
    MonitorStats,
    SubscriptionHandle,
    TradeEvent,
    WalletSubscription,
    short_address,
)
from supermolt_arena.monitor.source import (
    MonitorError,
    NotificationCallback,
    ReconnectCallback,
)

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 100
DEFAULT_DEDUP_CACHE_SIZE = 500

TradeCallback = Callable[[TradeEvent], Awaitable[None]]


class EventSource(Protocol):
    """The part of :class:`ChainEventSource` the manager relies on."""

    connection_id: str
    chain: str

    @property
    def stats(self) -> ConnectionStats: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def add_address(self, address: str) -> None: ...

    async def remove_address(self, address: str) -> None: ...


class SourceFactory(Protocol):
    def __call__(
        self,
        *,
        chain: str,
        connection_id: str,
        on_notification: NotificationCallback,
        on_reconnect: ReconnectCallback,
    ) -> EventSource: ...


@dataclass
class _Connection:
    source: EventSource
    chain: str
    addresses: set[str] = field(default_factory=set)
    task: asyncio.Task[None] | None = None


class WalletSubscriptionManager:
    """Owns pools of event source connections, one pool per chain.

    Example:
        ```python
        manager = WalletSubscriptionManager(source_factory=factory)
        handle = await manager.subscribe(wallet, "solana")
        async for event in manager.events():
            await ledger.record_trade(event)
        ```
    """

    def __init__(
        self,
        *,
        source_factory: SourceFactory,
        capacity: int = DEFAULT_CAPACITY,
        dedup_cache_size: int = DEFAULT_DEDUP_CACHE_SIZE,
        on_trade: TradeCallback | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self._source_factory = source_factory
        self._capacity = capacity
        self._on_trade = on_trade
        self._clock = clock

        self._lock = asyncio.Lock()
        self._connections: dict[str, _Connection] = {}
        self._subscriptions: dict[tuple[str, str], WalletSubscription] = {}
        self._dedup = RecentKeyCache(dedup_cache_size)
        self._queue: asyncio.Queue[TradeEvent] = asyncio.Queue()
        self._tokens = itertools.count(1)
        self._connection_seq = itertools.count(1)
        self._stats = MonitorStats()
        self._closed = False

    @property
    def stats(self) -> MonitorStats:
        self._stats.per_connection = {cid: conn.source.stats for cid, conn in self._connections.items()}
        return self._stats

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def connection_ids(self, chain: str | None = None) -> list[str]:
        return [cid for cid, conn in self._connections.items() if chain is None or conn.chain == chain]

    def connection_load(self, connection_id: str) -> int:
        conn = self._connections.get(connection_id)
        return len(conn.addresses) if conn else 0

    def get_subscription(self, address: str, chain: str) -> WalletSubscription | None:
        return self._subscriptions.get((chain, address))

    async def subscribe(self, address: str, chain: str = "solana") -> SubscriptionHandle:
        """Start monitoring ``address``. Subscribing an address twice returns the same handle."""
        if not address:
            raise ValueError("address must not be empty")
        async with self._lock:
            if self._closed:
                raise MonitorError("subscription manager is stopped")
            existing = self._subscriptions.get((chain, address))
            if existing is not None:
                return self._handle_for(existing)

            conn = self._first_fit(chain)
            if conn is None:
                conn = self._open_connection(chain)
            await conn.source.add_address(address)
            conn.addresses.add(address)

            sub = WalletSubscription(
                address=address,
                chain=chain,
                connection_id=conn.source.connection_id,
                token=next(self._tokens),
            )
            self._subscriptions[(chain, address)] = sub
        logger.info("Subscribed wallet %s on %s (%s)", short_address(address), sub.connection_id, chain)
        return self._handle_for(sub)

    async def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        """Stop monitoring the wallet behind ``handle``.

        No event for the handle is emitted after this returns; events
        already queued may still be consumed.

        Returns:
            False if the handle is stale or was already unsubscribed.
        """
        async with self._lock:
            key = (handle.chain, handle.address)
            sub = self._subscriptions.get(key)
            if sub is None or sub.token != handle.token:
                return False
            del self._subscriptions[key]

            conn = self._connections.get(sub.connection_id)
            if conn is not None:
                conn.addresses.discard(handle.address)
                await conn.source.remove_address(handle.address)
                if not conn.addresses:
                    await self._retire(conn)
        logger.info("Unsubscribed wallet %s from %s", short_address(handle.address), sub.connection_id)
        return True

    async def events(self) -> AsyncIterator[TradeEvent]:
        """Yield trade events as they arrive (runs until cancelled)."""
        while True:
            yield await self._queue.get()

    def drain(self) -> list[TradeEvent]:
        """Return every event currently queued without waiting."""
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    async def stop(self) -> None:
        """Stop every connection and reject further subscriptions."""
        async with self._lock:
            self._closed = True
            connections = list(self._connections.values())
            for conn in connections:
                await self._retire(conn)
            self._subscriptions.clear()
        logger.info("Subscription manager stopped (%d connections closed)", len(connections))

    def _handle_for(self, sub: WalletSubscription) -> SubscriptionHandle:
        return SubscriptionHandle(
            address=sub.address,
            chain=sub.chain,
            connection_id=sub.connection_id,
            token=sub.token,
        )

    def _first_fit(self, chain: str) -> _Connection | None:
        for conn in self._connections.values():
            if conn.chain == chain and len(conn.addresses) < self._capacity:
                return conn
        return None

    def _open_connection(self, chain: str) -> _Connection:
        connection_id = f"{chain}-{next(self._connection_seq)}"
        source = self._source_factory(
            chain=chain,
            connection_id=connection_id,
            on_notification=self._handle_notification,
            on_reconnect=self._handle_reconnect,
        )
        conn = _Connection(source=source, chain=chain)
        conn.task = asyncio.create_task(self._run_source(source), name=f"event-source-{connection_id}")
        self._connections[connection_id] = conn
        self._stats.connections_opened += 1
        logger.info("Opened event source connection %s", connection_id)
        return conn

    async def _run_source(self, source: EventSource) -> None:
        try:
            await source.start()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Event source %s stopped unexpectedly: %s", source.connection_id, e)

    async def _retire(self, conn: _Connection) -> None:
        connection_id = conn.source.connection_id
        self._connections.pop(connection_id, None)
        await conn.source.stop()
        if conn.task is not None:
            conn.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await conn.task
        self._stats.connections_retired += 1
        logger.info("Retired event source connection %s", connection_id)

    async def _handle_reconnect(self, connection_id: str) -> None:
        for sub in self._subscriptions.values():
            if sub.connection_id == connection_id:
                sub.reconnect_count += 1

    async def _handle_notification(self, connection_id: str, address: str, result: dict[str, Any]) -> None:
        conn = self._connections.get(connection_id)
        sub = self._subscriptions.get((conn.chain, address)) if conn else None
        if sub is None or sub.connection_id != connection_id:
            self._stats.inactive_dropped += 1
            return

        signature = result.get("signature")
        key = (signature, address) if isinstance(signature, str) and signature else None
        if key is not None and key in self._dedup:
            self._stats.duplicates_dropped += 1
            logger.debug("Dropping replayed notification %s for %s", signature[:12], short_address(address))
            return

        try:
            event = TradeEvent.from_transaction_notification(
                result, wallet_address=address, chain=sub.chain, received_at=self._clock()
            )
        except MalformedEventError as e:
            # Not remembered, so a well-formed redelivery still gets through.
            self._stats.malformed_dropped += 1
            logger.warning("Dropping malformed notification for %s: %s", short_address(address), e)
            return

        if key is not None:
            self._dedup.check_and_add(key)

        if event is None:
            self._stats.ignored_notifications += 1
            return

        sub.last_event_at = self._clock()
        self._queue.put_nowait(event)
        self._stats.events_emitted += 1

        if self._on_trade:
            try:
                await self._on_trade(event)
            except Exception as e:
                self._stats.handler_errors += 1
                logger.error("Error in trade callback for %s: %s", event.tx_signature[:12], e)
