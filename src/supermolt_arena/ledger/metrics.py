"""Per-epoch performance metrics derived from an agent's trades.

Closing trades (SELLs against an open position) are matched against the
average cost basis of the token; each close yields one realized PnL
value. Ratios are computed over that PnL series:

- sortino: mean PnL over the standard deviation of the losing closes;
  10 when there are no losses and the mean is positive.
- win_rate: share of closes with positive PnL, in [0, 1].
- consistency: ``100 - 10 * stdev(PnL)``, floored at 0.
- recovery_factor: total PnL over the maximum peak-to-trough drawdown of
  cumulative PnL; 0 without a drawdown.
- volume: sum of ``quantity * price`` over every trade.

All metrics are clamped to be non-negative.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

NO_DOWNSIDE_SORTINO = 10.0


class TradeLike(Protocol):
    token_mint: str
    action: str
    quantity: Decimal
    price: Decimal


@dataclass(frozen=True)
class EpochMetrics:
    sortino: float = 0.0
    win_rate: float = 0.0
    consistency: float = 0.0
    recovery_factor: float = 0.0
    volume: float = 0.0

    def as_dict(self) -> dict[str, float]:
        return {
            "sortino": self.sortino,
            "win_rate": self.win_rate,
            "consistency": self.consistency,
            "recovery_factor": self.recovery_factor,
            "volume": self.volume,
        }


def realized_pnl(trades: Iterable[TradeLike]) -> tuple[list[float], Decimal]:
    """Return (PnL per closing trade, total traded notional)."""
    positions: dict[str, tuple[Decimal, Decimal]] = {}  # mint -> (quantity, cost)
    pnls: list[float] = []
    volume = Decimal(0)
    for trade in trades:
        qty = Decimal(trade.quantity)
        price = Decimal(trade.price)
        volume += qty * price
        held, cost = positions.get(trade.token_mint, (Decimal(0), Decimal(0)))
        action = getattr(trade.action, "value", trade.action)
        if action == "BUY":
            positions[trade.token_mint] = (held + qty, cost + qty * price)
            continue
        if held <= 0:
            # Selling tokens acquired before the window; no basis to close against.
            continue
        matched = min(qty, held)
        avg_cost = cost / held
        pnls.append(float((price - avg_cost) * matched))
        positions[trade.token_mint] = (held - matched, cost - avg_cost * matched)
    return pnls, volume


def _pstdev(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    mean = math.fsum(values) / len(values)
    return math.sqrt(math.fsum((v - mean) ** 2 for v in values) / len(values))


def sortino_ratio(pnls: Sequence[float]) -> float:
    if not pnls:
        return 0.0
    mean = math.fsum(pnls) / len(pnls)
    downside = _pstdev([p for p in pnls if p < 0])
    if downside > 0:
        return mean / downside
    if mean > 0:
        return NO_DOWNSIDE_SORTINO
    return 0.0


def max_drawdown(pnls: Sequence[float]) -> float:
    peak = 0.0
    cumulative = 0.0
    worst = 0.0
    for pnl in pnls:
        cumulative += pnl
        peak = max(peak, cumulative)
        worst = max(worst, peak - cumulative)
    return worst


def compute_metrics(trades: Iterable[TradeLike]) -> EpochMetrics:
    pnls, volume = realized_pnl(trades)
    if not pnls:
        return EpochMetrics(volume=max(0.0, float(volume)))

    wins = sum(1 for p in pnls if p > 0)
    drawdown = max_drawdown(pnls)
    total = math.fsum(pnls)
    recovery = total / drawdown if drawdown > 0 else 0.0

    return EpochMetrics(
        sortino=max(0.0, sortino_ratio(pnls)),
        win_rate=wins / len(pnls),
        consistency=max(0.0, 100.0 - _pstdev(pnls) * 10.0),
        recovery_factor=max(0.0, recovery),
        volume=max(0.0, float(volume)),
    )
