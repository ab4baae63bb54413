"""Tests for the chain event source connection."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
import websockets

from supermolt_arena.monitor.backoff import BackoffPolicy
from supermolt_arena.monitor.source import (
    NOTIFICATION_METHOD,
    SUBSCRIBE_METHOD,
    UNSUBSCRIBE_METHOD,
    ChainEventSource,
    ConnectionFullError,
    ConnectionState,
)

WALLET = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
OTHER = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"

FAST_BACKOFF = BackoffPolicy(initial_seconds=0.01, max_seconds=0.02, jitter=0.0)

_CLOSED = object()


class FakeWebSocket:
    """In-memory stand-in for a websocket client connection."""

    def __init__(self, *, fail_on_recv: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.incoming: asyncio.Queue[Any] = asyncio.Queue()
        self.fail_on_recv = fail_on_recv
        self.closed = False

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    async def recv(self) -> str:
        if self.fail_on_recv:
            raise websockets.ConnectionClosed(None, None)
        item = await self.incoming.get()
        if item is _CLOSED:
            raise websockets.ConnectionClosed(None, None)
        return item

    async def close(self) -> None:
        self.closed = True
        self.incoming.put_nowait(_CLOSED)


async def _wait_until(predicate: Any, timeout: float = 3.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def received() -> list[tuple[str, str, dict[str, Any]]]:
    return []


@pytest.fixture
def source(received: list[tuple[str, str, dict[str, Any]]]) -> ChainEventSource:
    async def on_notification(connection_id: str, address: str, result: dict[str, Any]) -> None:
        received.append((connection_id, address, result))

    return ChainEventSource(
        connection_id="solana-1",
        url="wss://stream.example",
        chain="solana",
        on_notification=on_notification,
        capacity=2,
        backoff=FAST_BACKOFF,
    )


def _notification(sub_id: int, signature: str = "sig-1") -> str:
    return json.dumps(
        {
            "jsonrpc": "2.0",
            "method": NOTIFICATION_METHOD,
            "params": {"subscription": sub_id, "result": {"signature": signature, "transaction": {}}},
        }
    )


class TestSubscriptionMessages:
    """Tests for subscribe/unsubscribe bookkeeping."""

    @pytest.mark.asyncio
    async def test_capacity_is_enforced(self, source: ChainEventSource) -> None:
        await source.add_address(WALLET)
        await source.add_address(OTHER)
        assert source.is_full
        with pytest.raises(ConnectionFullError):
            await source.add_address("third-wallet-address")
        # Re-adding a carried address is not a capacity violation
        await source.add_address(WALLET)

    @pytest.mark.asyncio
    async def test_flush_sends_subscribe_per_address(self, source: ChainEventSource) -> None:
        ws = FakeWebSocket()
        await source.add_address(WALLET)
        await source._send_subscription_messages(ws)  # type: ignore[arg-type]

        assert len(ws.sent) == 1
        assert ws.sent[0]["method"] == SUBSCRIBE_METHOD
        assert ws.sent[0]["params"][0] == {"accountInclude": [WALLET]}

        # Nothing new to send on the next flush
        await source._send_subscription_messages(ws)  # type: ignore[arg-type]
        assert len(ws.sent) == 1

    @pytest.mark.asyncio
    async def test_notification_routed_to_address(
        self, source: ChainEventSource, received: list[tuple[str, str, dict[str, Any]]]
    ) -> None:
        ws = FakeWebSocket()
        await source.add_address(WALLET)
        await source._send_subscription_messages(ws)  # type: ignore[arg-type]
        req_id = ws.sent[0]["id"]

        await source._handle_message(json.dumps({"jsonrpc": "2.0", "id": req_id, "result": 42}))
        await source._handle_message(_notification(42))

        assert len(received) == 1
        assert received[0][0] == "solana-1"
        assert received[0][1] == WALLET
        assert received[0][2]["signature"] == "sig-1"
        assert source.stats.notifications_received == 1

    @pytest.mark.asyncio
    async def test_removed_address_drops_notifications_and_unsubscribes(
        self, source: ChainEventSource, received: list[tuple[str, str, dict[str, Any]]]
    ) -> None:
        ws = FakeWebSocket()
        await source.add_address(WALLET)
        await source._send_subscription_messages(ws)  # type: ignore[arg-type]
        await source._handle_message(json.dumps({"jsonrpc": "2.0", "id": ws.sent[0]["id"], "result": 42}))

        await source.remove_address(WALLET)
        await source._handle_message(_notification(42))
        assert received == []

        await source._send_subscription_messages(ws)  # type: ignore[arg-type]
        assert ws.sent[-1]["method"] == UNSUBSCRIBE_METHOD
        assert ws.sent[-1]["params"] == [42]

    @pytest.mark.asyncio
    async def test_rejected_subscribe_is_retried(self, source: ChainEventSource) -> None:
        ws = FakeWebSocket()
        await source.add_address(WALLET)
        await source._send_subscription_messages(ws)  # type: ignore[arg-type]
        await source._handle_message(
            json.dumps({"jsonrpc": "2.0", "id": ws.sent[0]["id"], "error": {"code": -32603, "message": "busy"}})
        )

        await source._send_subscription_messages(ws)  # type: ignore[arg-type]
        assert [m["method"] for m in ws.sent] == [SUBSCRIBE_METHOD, SUBSCRIBE_METHOD]

    @pytest.mark.asyncio
    async def test_unknown_subscription_and_garbage_are_ignored(
        self, source: ChainEventSource, received: list[tuple[str, str, dict[str, Any]]]
    ) -> None:
        await source._handle_message("not json")
        await source._handle_message(json.dumps([1, 2, 3]))
        await source._handle_message(_notification(999))
        assert received == []


class TestConnectionLoop:
    """Tests for the reconnect loop."""

    @pytest.mark.asyncio
    async def test_keeps_retrying_failed_connects(self, source: ChainEventSource) -> None:
        with patch(
            "supermolt_arena.monitor.source.websockets.connect",
            new=AsyncMock(side_effect=OSError("connection refused")),
        ):
            task = asyncio.create_task(source.start())
            await _wait_until(lambda: source.stats.failed_connects >= 3)
            await source.stop()
            await asyncio.wait_for(task, timeout=2.0)

        assert source.state is ConnectionState.DISCONNECTED
        assert source.backoff_state.attempt >= 3

    @pytest.mark.asyncio
    async def test_resubscribes_after_reconnect(self) -> None:
        reconnects: list[str] = []

        async def on_notification(connection_id: str, address: str, result: dict[str, Any]) -> None:
            return None

        async def on_reconnect(connection_id: str) -> None:
            reconnects.append(connection_id)

        source = ChainEventSource(
            connection_id="solana-1",
            url="wss://stream.example",
            chain="solana",
            on_notification=on_notification,
            on_reconnect=on_reconnect,
            backoff=FAST_BACKOFF,
        )
        await source.add_address(WALLET)
        first = FakeWebSocket(fail_on_recv=True)
        second = FakeWebSocket()

        with patch(
            "supermolt_arena.monitor.source.websockets.connect",
            new=AsyncMock(side_effect=[first, second]),
        ):
            task = asyncio.create_task(source.start())
            await _wait_until(lambda: len(second.sent) == 1)
            await source.stop()
            await asyncio.wait_for(task, timeout=3.0)

        assert reconnects == ["solana-1"]
        assert first.sent[0]["params"][0] == {"accountInclude": [WALLET]}
        assert second.sent[0]["params"][0] == {"accountInclude": [WALLET]}
        assert source.stats.reconnect_count == 1
