"""Wallet monitor - event stream connections and subscription management."""

from supermolt_arena.monitor.backoff import BackoffPolicy, BackoffState
from supermolt_arena.monitor.dedup import RecentKeyCache
from supermolt_arena.monitor.manager import WalletSubscriptionManager
from supermolt_arena.monitor.models import (
    MalformedEventError,
    MonitorStats,
    SubscriptionHandle,
    TradeEvent,
    WalletSubscription,
)
from supermolt_arena.monitor.source import (
    ChainEventSource,
    ConnectionFullError,
    ConnectionState,
    MonitorError,
    SourceConnectionError,
)

__all__ = [
    "BackoffPolicy",
    "BackoffState",
    "ChainEventSource",
    "ConnectionFullError",
    "ConnectionState",
    "MalformedEventError",
    "MonitorError",
    "MonitorStats",
    "RecentKeyCache",
    "SourceConnectionError",
    "SubscriptionHandle",
    "TradeEvent",
    "WalletSubscription",
    "WalletSubscriptionManager",
]
