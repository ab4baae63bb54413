"""Reward allocation math and distribution result types."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Protocol

from supermolt_arena.config import DEFAULT_RANK_MULTIPLIERS
from supermolt_arena.storage.models import TransferStatus
from supermolt_arena.storage.repos import RewardTransferDTO

CENT = Decimal("0.01")
DEFAULT_ADJUSTMENT_FLOOR = 0.5


class RankedAgent(Protocol):
    agent_id: str
    rank: int
    normalized_score: float


@dataclass(frozen=True)
class Allocation:
    """Computed payout for one ranked agent."""

    agent_id: str
    rank: int
    multiplier: float
    performance_adjustment: float
    amount: Decimal


def rank_multiplier(rank: int, table: Sequence[float] = DEFAULT_RANK_MULTIPLIERS) -> float:
    """Multiplier for a 1-based rank; ranks past the table use its last entry."""
    if rank < 1:
        raise ValueError("rank must be >= 1")
    if not table:
        raise ValueError("rank multiplier table must not be empty")
    return float(table[min(rank, len(table)) - 1])


def performance_adjustment(normalized_score: float, floor: float = DEFAULT_ADJUSTMENT_FLOOR) -> float:
    """Normalized score clamped to [floor, 1]."""
    return min(1.0, max(floor, normalized_score))


def reward_amount(base_allocation: Decimal, multiplier: float, adjustment: float) -> Decimal:
    amount = Decimal(base_allocation) * Decimal(str(multiplier)) * Decimal(str(adjustment))
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_allocations(
    ranked: Sequence[RankedAgent],
    *,
    base_allocation: Decimal,
    pool_size: Decimal | None = None,
    rank_multipliers: Sequence[float] = DEFAULT_RANK_MULTIPLIERS,
    adjustment_floor: float = DEFAULT_ADJUSTMENT_FLOOR,
    scale_to_pool: bool = False,
) -> list[Allocation]:
    """Compute every payout of an epoch. Pure.

    amount = base_allocation * rank_multiplier(rank) * performance_adjustment(score),
    rounded half-up to cents. With ``scale_to_pool`` and a total above
    ``pool_size``, every amount is scaled by pool/total and rounded down,
    so the total never exceeds the pool.
    """
    allocations = []
    for agent in sorted(ranked, key=lambda a: (a.rank, a.agent_id)):
        multiplier = rank_multiplier(agent.rank, rank_multipliers)
        adjustment = performance_adjustment(agent.normalized_score, adjustment_floor)
        allocations.append(
            Allocation(
                agent_id=agent.agent_id,
                rank=agent.rank,
                multiplier=multiplier,
                performance_adjustment=adjustment,
                amount=reward_amount(base_allocation, multiplier, adjustment),
            )
        )

    total = sum((a.amount for a in allocations), Decimal(0))
    if scale_to_pool and pool_size is not None and total > pool_size > 0:
        factor = Decimal(pool_size) / total
        allocations = [
            Allocation(
                agent_id=a.agent_id,
                rank=a.rank,
                multiplier=a.multiplier,
                performance_adjustment=a.performance_adjustment,
                amount=(a.amount * factor).quantize(CENT, rounding=ROUND_DOWN),
            )
            for a in allocations
        ]
    return allocations


@dataclass
class DistributionResult:
    epoch_id: int
    all_confirmed: bool
    transfers: list[RewardTransferDTO] = field(default_factory=list)
    dry_run: bool = False

    @property
    def failed(self) -> list[RewardTransferDTO]:
        return [t for t in self.transfers if t.status is TransferStatus.FAILED]

    @property
    def total_confirmed(self) -> Decimal:
        return sum((t.amount for t in self.transfers if t.status is TransferStatus.CONFIRMED), Decimal(0))


@dataclass
class AgentRewardHistory:
    agent_id: str
    transfers: list[RewardTransferDTO]
    total_earned: Decimal


@dataclass
class TreasuryStatus:
    balance: Decimal | None
    allocated_pending: Decimal
    distributed: Decimal

    @property
    def available(self) -> Decimal | None:
        if self.balance is None:
            return None
        return self.balance - self.allocated_pending
