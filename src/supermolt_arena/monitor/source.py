"""Chain event stream client (JSON-RPC transaction subscriptions over WebSocket).

One :class:`ChainEventSource` is one upstream connection carrying up to
``capacity`` wallet subscriptions. It reconnects forever with backoff and
re-subscribes every address it carries after each reconnect.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import random
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection

from supermolt_arena.monitor.backoff import (
    BackoffPolicy,
    BackoffState,
    on_connected,
    on_disconnected,
    seconds_until_retry,
)
from supermolt_arena.monitor.models import ConnectionStats, short_address

logger = logging.getLogger(__name__)

DEFAULT_PING_INTERVAL = 30  # seconds
DEFAULT_CAPACITY = 100

SUBSCRIBE_METHOD = "transactionSubscribe"
UNSUBSCRIBE_METHOD = "transactionUnsubscribe"
NOTIFICATION_METHOD = "transactionNotification"

SUBSCRIBE_OPTIONS: dict[str, Any] = {
    "commitment": "confirmed",
    "encoding": "jsonParsed",
    "transactionDetails": "full",
    "maxSupportedTransactionVersion": 0,
}


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class MonitorError(Exception):
    """Base exception for wallet monitor errors."""


class SourceConnectionError(MonitorError):
    """Raised when connection to the event stream fails."""


class ConnectionFullError(MonitorError):
    """Raised when adding an address to a connection at capacity."""


NotificationCallback = Callable[[str, str, dict[str, Any]], Awaitable[None]]
ReconnectCallback = Callable[[str], Awaitable[None]]
StateCallback = Callable[[str, ConnectionState], Awaitable[None]]


class ChainEventSource:
    """WebSocket client for per-wallet transaction notifications."""

    def __init__(
        self,
        *,
        connection_id: str,
        url: str,
        chain: str,
        on_notification: NotificationCallback,
        on_reconnect: ReconnectCallback | None = None,
        on_state_change: StateCallback | None = None,
        capacity: int = DEFAULT_CAPACITY,
        ping_interval: int = DEFAULT_PING_INTERVAL,
        backoff: BackoffPolicy | None = None,
        rng: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self.connection_id = connection_id
        self.chain = chain
        self._url = url
        self._on_notification = on_notification
        self._on_reconnect = on_reconnect
        self._on_state_change = on_state_change
        self._capacity = capacity
        self._ping_interval = ping_interval
        self._policy = backoff or BackoffPolicy()
        self._rng = rng
        self._clock = clock

        self._state = ConnectionState.DISCONNECTED
        self._stats = ConnectionStats()
        self._backoff = BackoffState()

        self._ws: ClientConnection | None = None
        self._running = False
        self._stop_event: asyncio.Event | None = None

        self._request_ids = itertools.count(1)
        self._addresses_lock = asyncio.Lock()
        self._addresses: set[str] = set()
        self._pending_subscribe: set[str] = set()
        self._pending_unsubscribe: set[int] = set()
        # JSON-RPC request id -> address awaiting a subscription id.
        self._inflight: dict[int, str] = {}
        self._sub_to_address: dict[int, str] = {}
        self._address_to_sub: dict[str, int] = {}

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def stats(self) -> ConnectionStats:
        return self._stats

    @property
    def backoff_state(self) -> BackoffState:
        return self._backoff

    @property
    def address_count(self) -> int:
        return len(self._addresses)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def is_full(self) -> bool:
        return len(self._addresses) >= self._capacity

    def carries(self, address: str) -> bool:
        return address in self._addresses

    async def _set_state(self, new_state: ConnectionState) -> None:
        if self._state != new_state:
            old = self._state
            self._state = new_state
            logger.info(
                "Event source %s state: %s -> %s", self.connection_id, old.value, new_state.value
            )
            if self._on_state_change:
                try:
                    await self._on_state_change(self.connection_id, new_state)
                except Exception as e:  # pragma: no cover
                    logger.error("Error in state change callback: %s", e)

    async def add_address(self, address: str) -> None:
        """Start carrying ``address``; the subscription is sent on the next flush."""
        async with self._addresses_lock:
            if address in self._addresses:
                return
            if len(self._addresses) >= self._capacity:
                raise ConnectionFullError(
                    f"connection {self.connection_id} already carries {self._capacity} addresses"
                )
            self._addresses.add(address)
            self._pending_subscribe.add(address)

    async def remove_address(self, address: str) -> None:
        """Stop carrying ``address``; notifications for it are dropped from now on."""
        async with self._addresses_lock:
            self._addresses.discard(address)
            self._pending_subscribe.discard(address)
            sub_id = self._address_to_sub.pop(address, None)
            if sub_id is not None:
                self._sub_to_address.pop(sub_id, None)
                self._pending_unsubscribe.add(sub_id)

    async def _send_subscription_messages(self, ws: ClientConnection) -> None:
        async with self._addresses_lock:
            subscribe = sorted(self._pending_subscribe)
            unsubscribe = sorted(self._pending_unsubscribe)
            self._pending_subscribe.clear()
            self._pending_unsubscribe.clear()
            requests: list[dict[str, Any]] = []
            for sub_id in unsubscribe:
                req_id = next(self._request_ids)
                requests.append({"jsonrpc": "2.0", "id": req_id, "method": UNSUBSCRIBE_METHOD, "params": [sub_id]})
            for address in subscribe:
                req_id = next(self._request_ids)
                self._inflight[req_id] = address
                requests.append(
                    {
                        "jsonrpc": "2.0",
                        "id": req_id,
                        "method": SUBSCRIBE_METHOD,
                        "params": [{"accountInclude": [address]}, SUBSCRIBE_OPTIONS],
                    }
                )

        for msg in requests:
            await ws.send(json.dumps(msg))

    async def _handle_response(self, data: dict[str, Any]) -> None:
        req_id = data.get("id")
        if not isinstance(req_id, int):
            return
        async with self._addresses_lock:
            address = self._inflight.pop(req_id, None)
            if address is None:
                return
            if "error" in data:
                logger.warning(
                    "Subscribe for %s rejected on %s: %s", short_address(address), self.connection_id, data["error"]
                )
                self._stats.last_error = str(data["error"])
                if address in self._addresses:
                    self._pending_subscribe.add(address)
                return
            sub_id = data.get("result")
            if not isinstance(sub_id, int):
                logger.warning("Unexpected subscribe response on %s: %r", self.connection_id, data)
                return
            if address not in self._addresses:
                # Removed while the request was in flight.
                self._pending_unsubscribe.add(sub_id)
                return
            self._sub_to_address[sub_id] = address
            self._address_to_sub[address] = sub_id
        logger.debug("Subscribed %s on %s (sub=%d)", short_address(address), self.connection_id, sub_id)

    async def _handle_message(self, message: str) -> None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("Invalid JSON message on event source %s", self.connection_id)
            return
        if not isinstance(data, dict):
            logger.debug("Ignoring non-object message on %s", self.connection_id)
            return

        if "id" in data and data.get("method") is None:
            await self._handle_response(data)
            return

        if data.get("method") != NOTIFICATION_METHOD:
            logger.debug("Ignoring method=%r on %s", data.get("method"), self.connection_id)
            return

        params = data.get("params") or {}
        sub_id = params.get("subscription")
        result = params.get("result")
        address = self._sub_to_address.get(sub_id) if isinstance(sub_id, int) else None
        if address is None or address not in self._addresses or not isinstance(result, dict):
            logger.debug("Dropping notification for unknown subscription %r", sub_id)
            return

        self._stats.notifications_received += 1
        self._stats.last_message_time = time.time()
        await self._on_notification(self.connection_id, address, result)

    async def _reset_subscriptions(self) -> None:
        """Forget server-side subscription ids and queue every address again."""
        async with self._addresses_lock:
            self._inflight.clear()
            self._sub_to_address.clear()
            self._address_to_sub.clear()
            self._pending_unsubscribe.clear()
            self._pending_subscribe = set(self._addresses)

    async def _connect(self) -> ClientConnection:
        await self._set_state(ConnectionState.CONNECTING)
        try:
            ws = await websockets.connect(
                self._url,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_interval * 2,
            )
        except Exception as e:
            self._stats.last_error = str(e)
            raise SourceConnectionError(f"Failed to connect event source {self.connection_id}: {e}") from e

        await self._reset_subscriptions()
        await self._set_state(ConnectionState.CONNECTED)
        self._stats.connected_since = time.time()
        self._backoff = on_connected(self._backoff, self._clock())
        logger.info("Event source %s connected (%d addresses)", self.connection_id, len(self._addresses))
        return ws

    async def _listen(self, ws: ClientConnection) -> None:
        try:
            while self._running:
                await self._send_subscription_messages(ws)
                try:
                    message = await asyncio.wait_for(ws.recv(), timeout=1.0)
                except TimeoutError:
                    message = None

                if isinstance(message, str):
                    await self._handle_message(message)
                elif message is not None:
                    logger.debug("Ignoring non-text message on %s", self.connection_id)
        except websockets.ConnectionClosed as e:
            logger.warning("Event source %s connection closed: %s", self.connection_id, e)
            raise

    async def _wait_before_retry(self) -> None:
        assert self._stop_event is not None
        delay = seconds_until_retry(self._backoff, self._clock())
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)

    async def start(self) -> None:
        """Run the connection until :meth:`stop` is called. Never raises on network errors."""
        if self._running:
            raise RuntimeError("Event source already running")
        self._running = True
        self._stop_event = asyncio.Event()

        connected_before = False
        while self._running and not self._stop_event.is_set():
            try:
                self._ws = await self._connect()
                if connected_before and self._on_reconnect:
                    await self._on_reconnect(self.connection_id)
                connected_before = True
                await self._listen(self._ws)
            except Exception as e:
                if not self._running:
                    break
                if isinstance(e, SourceConnectionError):
                    self._stats.failed_connects += 1
                self._stats.reconnect_count += 1
                self._stats.last_error = str(e)
                self._backoff = on_disconnected(self._backoff, self._policy, now=self._clock(), rand=self._rng())
                level = logging.ERROR if self._backoff.attempt >= 5 else logging.WARNING
                logger.log(
                    level,
                    "Event source %s unavailable (attempt %d), retrying in %.1fs: %s",
                    self.connection_id,
                    self._backoff.attempt,
                    seconds_until_retry(self._backoff, self._clock()),
                    e,
                )
                await self._set_state(ConnectionState.RECONNECTING)
                await self._wait_before_retry()
            finally:
                with contextlib.suppress(Exception):
                    if self._ws:
                        await self._ws.close()
                self._ws = None

        self._running = False
        await self._set_state(ConnectionState.DISCONNECTED)

    async def stop(self) -> None:
        self._running = False
        if self._stop_event:
            self._stop_event.set()
        if self._ws:
            with contextlib.suppress(Exception):
                await self._ws.close()
