"""Data models for the wallet monitor."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from supermolt_arena.storage.models import TradeAction

NATIVE_MINT = "So11111111111111111111111111111111111111112"
LAMPORTS_PER_SOL = Decimal(1_000_000_000)


def short_address(address: str) -> str:
    """Truncate a wallet address for log lines."""
    return f"{address[:8]}..." if len(address) > 12 else address


class MalformedEventError(ValueError):
    """Raised when a transaction notification cannot be parsed."""


@dataclass(frozen=True)
class TradeEvent:
    """A normalized trade observed on a monitored wallet."""

    wallet_address: str
    tx_signature: str
    token_mint: str
    action: TradeAction
    quantity: Decimal
    price: Decimal
    timestamp: datetime
    chain: str = "solana"

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.tx_signature, self.wallet_address)

    @property
    def notional(self) -> Decimal:
        return self.quantity * self.price

    @classmethod
    def from_transaction_notification(
        cls,
        result: dict[str, Any],
        *,
        wallet_address: str,
        chain: str,
        received_at: datetime | None = None,
    ) -> TradeEvent | None:
        """Build a TradeEvent from a ``transactionNotification`` result.

        The traded token is the mint whose balance owned by ``wallet_address``
        changed the most; a growing balance is a BUY. The price is the
        wallet's native balance change per token unit.

        Returns:
            The trade, or None when the transaction failed or moved no
            tokens for the wallet.

        Raises:
            MalformedEventError: If required fields are missing or invalid.
        """
        try:
            signature = str(result["signature"])
            tx = result["transaction"]
            meta = tx["meta"]
        except (KeyError, TypeError) as e:
            raise MalformedEventError(f"missing field in notification: {e}") from e
        if not signature:
            raise MalformedEventError("empty signature")
        if meta is None or meta.get("err") is not None:
            return None

        try:
            deltas = _token_deltas(meta, wallet_address)
            native_delta = _native_delta(tx, meta, wallet_address)
        except (KeyError, TypeError, InvalidOperation) as e:
            raise MalformedEventError(f"invalid balance data: {e}") from e

        if not deltas:
            return None
        mint, delta = max(deltas.items(), key=lambda item: (abs(item[1]), item[0]))
        if delta == 0:
            return None

        quantity = abs(delta)
        price = (abs(native_delta) / LAMPORTS_PER_SOL) / quantity

        block_time = result.get("blockTime", tx.get("blockTime"))
        if block_time is not None:
            timestamp = datetime.fromtimestamp(int(block_time), tz=UTC)
        else:
            timestamp = received_at or datetime.now(UTC)

        return cls(
            wallet_address=wallet_address,
            tx_signature=signature,
            token_mint=mint,
            action=TradeAction.BUY if delta > 0 else TradeAction.SELL,
            quantity=quantity,
            price=price,
            timestamp=timestamp,
            chain=chain,
        )


def _ui_amount(balance: dict[str, Any]) -> Decimal:
    token_amount = balance.get("uiTokenAmount") or {}
    return Decimal(str(token_amount.get("uiAmountString") or "0"))


def _token_deltas(meta: dict[str, Any], owner: str) -> dict[str, Decimal]:
    """Per-mint balance change of token accounts owned by ``owner`` (native mint excluded)."""
    deltas: dict[str, Decimal] = {}
    for sign, balances in ((-1, meta.get("preTokenBalances") or []), (1, meta.get("postTokenBalances") or [])):
        for balance in balances:
            if balance.get("owner") != owner:
                continue
            mint = balance["mint"]
            if mint == NATIVE_MINT:
                continue
            deltas[mint] = deltas.get(mint, Decimal(0)) + sign * _ui_amount(balance)
    return deltas


def _account_keys(tx: dict[str, Any]) -> list[str]:
    inner = tx.get("transaction")
    if not isinstance(inner, dict):
        return []
    keys = (inner.get("message") or {}).get("accountKeys") or []
    return [k["pubkey"] if isinstance(k, dict) else str(k) for k in keys]


def _native_delta(tx: dict[str, Any], meta: dict[str, Any], owner: str) -> Decimal:
    """Change of the wallet's native balance in lamports, fee excluded.

    Zero when the wallet is not among the account keys: its tokens were
    moved by another account and it paid nothing, so the fee payer's
    balance says nothing about a price.
    """
    pre = meta.get("preBalances") or []
    post = meta.get("postBalances") or []
    keys = _account_keys(tx)
    if owner not in keys:
        return Decimal(0)
    index = keys.index(owner)
    if index >= len(pre) or index >= len(post):
        return Decimal(0)
    delta = Decimal(int(post[index]) - int(pre[index]))
    if index == 0:
        delta += Decimal(int(meta.get("fee") or 0))
    return delta


@dataclass
class WalletSubscription:
    """A monitored wallet and the connection currently carrying it."""

    address: str
    chain: str
    connection_id: str
    token: int
    last_event_at: datetime | None = None
    reconnect_count: int = 0


@dataclass(frozen=True)
class SubscriptionHandle:
    """Opaque handle returned by ``subscribe``; required to unsubscribe."""

    address: str
    chain: str
    connection_id: str
    token: int


@dataclass
class ConnectionStats:
    """Counters kept by one chain event source connection."""

    notifications_received: int = 0
    reconnect_count: int = 0
    failed_connects: int = 0
    last_message_time: float | None = None
    connected_since: float | None = None
    last_error: str | None = None


@dataclass
class MonitorStats:
    """Aggregate counters of the subscription manager."""

    events_emitted: int = 0
    duplicates_dropped: int = 0
    malformed_dropped: int = 0
    ignored_notifications: int = 0
    inactive_dropped: int = 0
    connections_opened: int = 0
    connections_retired: int = 0
    handler_errors: int = 0
    per_connection: dict[str, ConnectionStats] = field(default_factory=dict)
