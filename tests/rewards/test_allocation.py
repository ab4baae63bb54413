"""Tests for reward allocation math."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

import pytest

from supermolt_arena.rewards.models import (
    TreasuryStatus,
    compute_allocations,
    performance_adjustment,
    rank_multiplier,
    reward_amount,
)


@dataclass
class Ranked:
    agent_id: str
    rank: int
    normalized_score: float


class TestRankMultiplier:
    """Tests for rank_multiplier."""

    def test_default_table(self) -> None:
        assert [rank_multiplier(r) for r in range(1, 6)] == [2.0, 1.5, 1.0, 0.75, 0.5]

    def test_ranks_past_table_use_last_entry(self) -> None:
        assert rank_multiplier(6) == 0.5
        assert rank_multiplier(250) == 0.5

    def test_invalid_rank(self) -> None:
        with pytest.raises(ValueError):
            rank_multiplier(0)


class TestPerformanceAdjustment:
    """Tests for performance_adjustment."""

    @pytest.mark.parametrize(
        ("score", "expected"),
        [(1.0, 1.0), (0.8, 0.8), (0.5, 0.5), (0.2, 0.5), (0.0, 0.5), (1.3, 1.0)],
    )
    def test_clamped_to_floor_and_one(self, score: float, expected: float) -> None:
        assert performance_adjustment(score) == expected


class TestComputeAllocations:
    """Tests for compute_allocations."""

    def test_top_five_with_perfect_scores(self) -> None:
        ranked = [Ranked(f"agent-{r}", r, 1.0) for r in range(1, 6)]
        amounts = [a.amount for a in compute_allocations(ranked, base_allocation=Decimal("200"))]
        assert amounts == [Decimal("400.00"), Decimal("300.00"), Decimal("200.00"), Decimal("150.00"), Decimal("100.00")]

    def test_low_score_hits_floor(self) -> None:
        (allocation,) = compute_allocations([Ranked("agent-5", 5, 0.1)], base_allocation=Decimal("200"))
        assert allocation.performance_adjustment == 0.5
        assert allocation.amount == Decimal("50.00")

    def test_partial_score(self) -> None:
        (allocation,) = compute_allocations([Ranked("agent-1", 1, 0.8)], base_allocation=Decimal("200"))
        assert allocation.amount == Decimal("320.00")

    def test_better_rank_never_earns_less_at_equal_score(self) -> None:
        ranked = [Ranked(f"agent-{r}", r, 0.7) for r in range(1, 9)]
        amounts = [a.amount for a in compute_allocations(ranked, base_allocation=Decimal("200"))]
        assert amounts == sorted(amounts, reverse=True)

    def test_amounts_are_whole_cents(self) -> None:
        assert reward_amount(Decimal("333.33"), 0.75, 0.6667) == Decimal("166.67")

    def test_output_sorted_by_rank(self) -> None:
        ranked = [Ranked("b", 2, 1.0), Ranked("a", 1, 1.0)]
        assert [a.agent_id for a in compute_allocations(ranked, base_allocation=Decimal("200"))] == ["a", "b"]

    def test_empty_cohort(self) -> None:
        assert compute_allocations([], base_allocation=Decimal("200")) == []

    def test_pool_scaling_disabled_by_default(self) -> None:
        ranked = [Ranked(f"agent-{r}", r, 1.0) for r in range(1, 6)]
        allocations = compute_allocations(ranked, base_allocation=Decimal("200"), pool_size=Decimal("1000"))
        assert sum(a.amount for a in allocations) == Decimal("1150.00")

    def test_pool_scaling_never_exceeds_pool(self) -> None:
        ranked = [Ranked(f"agent-{r}", r, 1.0) for r in range(1, 6)]
        allocations = compute_allocations(
            ranked,
            base_allocation=Decimal("200"),
            pool_size=Decimal("1000"),
            scale_to_pool=True,
        )
        assert sum(a.amount for a in allocations) <= Decimal("1000")
        assert allocations[0].amount == Decimal("347.82")


class TestTreasuryStatus:
    """Tests for TreasuryStatus."""

    def test_available(self) -> None:
        status = TreasuryStatus(balance=Decimal("5000"), allocated_pending=Decimal("1150"), distributed=Decimal("0"))
        assert status.available == Decimal("3850")
        assert TreasuryStatus(balance=None, allocated_pending=Decimal(0), distributed=Decimal(0)).available is None
