"""Trade ledger - trade persistence and epoch performance metrics."""

from supermolt_arena.ledger.ledger import (
    LedgerError,
    SqlTradeLedger,
    TradeLedger,
    UnknownAgentError,
    UnknownEpochError,
)
from supermolt_arena.ledger.metrics import EpochMetrics, compute_metrics

__all__ = [
    "EpochMetrics",
    "LedgerError",
    "SqlTradeLedger",
    "TradeLedger",
    "UnknownAgentError",
    "UnknownEpochError",
    "compute_metrics",
]
