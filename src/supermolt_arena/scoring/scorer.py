"""Composite performance scorer ranking an epoch's cohort.

This module provides the PerformanceScorer class that turns ledger
metrics into normalized composite scores and deterministic ranks.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from supermolt_arena.config import DEFAULT_SCORING_WEIGHTS, METRIC_NAMES, validate_scoring_weights
from supermolt_arena.ledger.metrics import EpochMetrics
from supermolt_arena.storage.repos import AgentEpochStatDTO, AgentEpochStatRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from supermolt_arena.ledger.ledger import TradeLedger
    from supermolt_arena.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentEpochStat:
    """Raw metrics, composite score and rank of one agent in one epoch."""

    epoch_id: int
    agent_id: str
    sortino: float
    win_rate: float
    consistency: float
    recovery_factor: float
    volume: float
    normalized_score: float
    rank: int

    def to_dto(self) -> AgentEpochStatDTO:
        return AgentEpochStatDTO(
            epoch_id=self.epoch_id,
            agent_id=self.agent_id,
            sortino=self.sortino,
            win_rate=self.win_rate,
            consistency=self.consistency,
            recovery_factor=self.recovery_factor,
            volume=self.volume,
            normalized_score=self.normalized_score,
            rank=self.rank,
        )

    @classmethod
    def from_dto(cls, dto: AgentEpochStatDTO) -> AgentEpochStat:
        return cls(
            epoch_id=dto.epoch_id,
            agent_id=dto.agent_id,
            sortino=dto.sortino,
            win_rate=dto.win_rate,
            consistency=dto.consistency,
            recovery_factor=dto.recovery_factor,
            volume=dto.volume,
            normalized_score=dto.normalized_score,
            rank=dto.rank,
        )


def _sanitize(value: float) -> float:
    if not math.isfinite(value) or value < 0:
        return 0.0
    return float(value)


def normalize(values: Mapping[str, float]) -> dict[str, float]:
    """Scale each value by the cohort maximum; all zeros when the maximum is 0."""
    top = max(values.values(), default=0.0)
    if top <= 0:
        return {key: 0.0 for key in values}
    return {key: min(1.0, value / top) for key, value in values.items()}


def rank_cohort(
    epoch_id: int,
    metrics: Mapping[str, EpochMetrics],
    weights: Mapping[str, float] | None = None,
) -> list[AgentEpochStat]:
    """Score and rank a cohort. Pure: identical input gives identical output.

    Ordering is by composite score descending, then raw volume descending,
    then agent id ascending.
    """
    weights = weights or DEFAULT_SCORING_WEIGHTS
    agent_ids = sorted(metrics)
    raw = {
        agent_id: {name: _sanitize(getattr(metrics[agent_id], name)) for name in METRIC_NAMES}
        for agent_id in agent_ids
    }
    normalized_by_metric = {
        name: normalize({agent_id: raw[agent_id][name] for agent_id in agent_ids}) for name in METRIC_NAMES
    }
    composite = {
        agent_id: math.fsum(weights[name] * normalized_by_metric[name][agent_id] for name in METRIC_NAMES)
        for agent_id in agent_ids
    }

    ordered = sorted(agent_ids, key=lambda a: (-composite[a], -raw[a]["volume"], a))
    return [
        AgentEpochStat(
            epoch_id=epoch_id,
            agent_id=agent_id,
            sortino=raw[agent_id]["sortino"],
            win_rate=raw[agent_id]["win_rate"],
            consistency=raw[agent_id]["consistency"],
            recovery_factor=raw[agent_id]["recovery_factor"],
            volume=raw[agent_id]["volume"],
            normalized_score=min(1.0, composite[agent_id]),
            rank=position,
        )
        for position, agent_id in enumerate(ordered, start=1)
    ]


class PerformanceScorer:
    """Ranks an epoch's cohort from trade ledger metrics.

    Scoring Formula:
        metric_n = metric / max(metric across cohort)   (0 if the max is 0)
        score = 0.40*sortino_n + 0.20*win_rate_n + 0.15*consistency_n
                + 0.15*recovery_factor_n + 0.10*volume_n

    Example:
        ```python
        scorer = PerformanceScorer(ledger, db)
        stats = await scorer.score_epoch(epoch_id, agent_ids)
        ```
    """

    def __init__(
        self,
        ledger: TradeLedger,
        db: DatabaseManager,
        *,
        weights: Mapping[str, float] | None = None,
    ) -> None:
        self._ledger = ledger
        self._db = db
        self._weights = validate_scoring_weights(dict(weights or DEFAULT_SCORING_WEIGHTS))

    @property
    def weights(self) -> dict[str, float]:
        return dict(self._weights)

    async def compute(self, epoch_id: int, agent_ids: Sequence[str]) -> list[AgentEpochStat]:
        """Fetch cohort metrics and rank them without persisting."""
        cohort = sorted(set(agent_ids))
        if not cohort:
            return []
        results = await asyncio.gather(*(self._ledger.get_epoch_metrics(a, epoch_id) for a in cohort))
        stats = rank_cohort(epoch_id, dict(zip(cohort, results, strict=True)), self._weights)
        if stats:
            logger.info(
                "Scored epoch %d: %d agents, leader=%s (score=%.4f)",
                epoch_id,
                len(stats),
                stats[0].agent_id,
                stats[0].normalized_score,
            )
        return stats

    @staticmethod
    async def persist(session: AsyncSession, stats: Sequence[AgentEpochStat]) -> None:
        await AgentEpochStatRepository(session).upsert_many([s.to_dto() for s in stats])

    async def score_epoch(self, epoch_id: int, agent_ids: Sequence[str]) -> list[AgentEpochStat]:
        """Score the cohort and upsert its stats keyed by (epoch_id, agent_id)."""
        stats = await self.compute(epoch_id, agent_ids)
        async with self._db.get_async_session() as session:
            await self.persist(session, stats)
        return stats

    async def load_stats(self, epoch_id: int) -> list[AgentEpochStat]:
        """Previously persisted stats of an epoch, ordered by rank."""
        async with self._db.get_async_session() as session:
            dtos = await AgentEpochStatRepository(session).list_for_epoch(epoch_id)
        return [AgentEpochStat.from_dto(d) for d in dtos]
