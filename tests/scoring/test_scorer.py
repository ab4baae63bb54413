"""Tests for the composite performance scorer."""

from __future__ import annotations

import math

import pytest

from supermolt_arena.config import DEFAULT_SCORING_WEIGHTS
from supermolt_arena.ledger.metrics import EpochMetrics
from supermolt_arena.scoring.scorer import PerformanceScorer, normalize, rank_cohort
from supermolt_arena.storage.database import DatabaseManager


class FakeLedger:
    """Ledger double serving fixed metrics."""

    def __init__(self, metrics: dict[str, EpochMetrics]) -> None:
        self.metrics = metrics
        self.calls: list[tuple[str, int]] = []

    async def record_trade(self, event: object) -> bool:
        raise NotImplementedError

    async def get_epoch_metrics(self, agent_id: str, epoch_id: int) -> EpochMetrics:
        self.calls.append((agent_id, epoch_id))
        return self.metrics.get(agent_id, EpochMetrics())

    async def list_participants(self, epoch_id: int) -> list[str]:
        return sorted(self.metrics)


COHORT = {
    "alpha": EpochMetrics(sortino=2.0, win_rate=0.8, consistency=90.0, recovery_factor=3.0, volume=5000.0),
    "bravo": EpochMetrics(sortino=1.0, win_rate=0.6, consistency=70.0, recovery_factor=1.5, volume=10000.0),
    "charlie": EpochMetrics(sortino=0.5, win_rate=0.4, consistency=50.0, recovery_factor=0.5, volume=1000.0),
}


class TestNormalize:
    """Tests for normalize."""

    def test_divides_by_cohort_max(self) -> None:
        assert normalize({"a": 2.0, "b": 1.0, "c": 0.0}) == {"a": 1.0, "b": 0.5, "c": 0.0}

    def test_zero_max_gives_zeros(self) -> None:
        assert normalize({"a": 0.0, "b": 0.0}) == {"a": 0.0, "b": 0.0}
        assert normalize({}) == {}


class TestRankCohort:
    """Tests for rank_cohort."""

    def test_composite_score(self) -> None:
        stats = {s.agent_id: s for s in rank_cohort(1, COHORT)}
        expected_bravo = 0.40 * 0.5 + 0.20 * 0.75 + 0.15 * (70 / 90) + 0.15 * 0.5 + 0.10 * 1.0
        assert stats["alpha"].normalized_score == pytest.approx(0.40 + 0.20 + 0.15 + 0.15 + 0.10 * 0.5)
        assert stats["bravo"].normalized_score == pytest.approx(expected_bravo)
        assert [stats[a].rank for a in ("alpha", "bravo", "charlie")] == [1, 2, 3]

    def test_scores_are_bounded_and_ranks_dense(self) -> None:
        stats = rank_cohort(1, COHORT)
        assert all(0.0 <= s.normalized_score <= 1.0 for s in stats)
        assert sorted(s.rank for s in stats) == [1, 2, 3]

    def test_tie_broken_by_volume_then_agent_id(self) -> None:
        same = EpochMetrics(sortino=1.0, win_rate=0.5, consistency=80.0, recovery_factor=1.0, volume=100.0)
        stats = rank_cohort(1, {"zed": same, "amy": same})
        assert [s.agent_id for s in stats] == ["amy", "zed"]

        # Higher volume wins a composite tie when volume carries no weight
        weights = dict(DEFAULT_SCORING_WEIGHTS, sortino=0.5, volume=0.0)
        low = EpochMetrics(sortino=1.0, win_rate=0.5, consistency=80.0, recovery_factor=1.0, volume=10.0)
        stats = rank_cohort(1, {"amy": low, "zed": same}, weights)
        assert [s.agent_id for s in stats] == ["zed", "amy"]

    def test_non_finite_metrics_are_zeroed(self) -> None:
        bad = EpochMetrics(sortino=math.inf, win_rate=math.nan, consistency=-5.0, recovery_factor=1.0, volume=1.0)
        (stat,) = rank_cohort(1, {"agent": bad})
        assert stat.sortino == 0.0
        assert stat.win_rate == 0.0
        assert stat.consistency == 0.0
        assert 0.0 <= stat.normalized_score <= 1.0

    def test_all_zero_cohort(self) -> None:
        stats = rank_cohort(1, {"a": EpochMetrics(), "b": EpochMetrics()})
        assert [(s.agent_id, s.normalized_score, s.rank) for s in stats] == [("a", 0.0, 1), ("b", 0.0, 2)]

    def test_deterministic(self) -> None:
        assert rank_cohort(7, COHORT) == rank_cohort(7, dict(reversed(list(COHORT.items()))))


class TestPerformanceScorer:
    """Tests for PerformanceScorer."""

    def test_rejects_weights_not_summing_to_one(self, db: DatabaseManager) -> None:
        with pytest.raises(ValueError):
            PerformanceScorer(FakeLedger({}), db, weights=dict(DEFAULT_SCORING_WEIGHTS, sortino=0.5))

    @pytest.mark.asyncio
    async def test_score_epoch_persists_and_reruns_idempotently(self, db: DatabaseManager) -> None:
        scorer = PerformanceScorer(FakeLedger(COHORT), db)

        first = await scorer.score_epoch(1, ["charlie", "alpha", "bravo", "alpha"])
        second = await scorer.score_epoch(1, ["alpha", "bravo", "charlie"])
        stored = await scorer.load_stats(1)

        assert first == second
        assert stored == first
        assert [s.agent_id for s in stored] == ["alpha", "bravo", "charlie"]

    @pytest.mark.asyncio
    async def test_empty_cohort(self, db: DatabaseManager) -> None:
        scorer = PerformanceScorer(FakeLedger({}), db)
        assert await scorer.score_epoch(1, []) == []
        assert await scorer.load_stats(1) == []
