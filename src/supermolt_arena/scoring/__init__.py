"""Scoring - composite performance scores and cohort ranking."""

from supermolt_arena.scoring.scorer import (
    AgentEpochStat,
    PerformanceScorer,
    normalize,
    rank_cohort,
)

__all__ = [
    "AgentEpochStat",
    "PerformanceScorer",
    "normalize",
    "rank_cohort",
]
