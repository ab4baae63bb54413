"""Epochs - lifecycle state machine, scheduling and the tick lease."""

from supermolt_arena.epochs.lifecycle import EpochLifecycleManager
from supermolt_arena.epochs.lock import TickLease
from supermolt_arena.epochs.models import (
    EpochError,
    EpochNotFoundError,
    EpochScheduleError,
    InvalidTransitionError,
    LeaseUnavailableError,
    TickReport,
    TransitionResult,
    advance,
)

__all__ = [
    "EpochError",
    "EpochLifecycleManager",
    "EpochNotFoundError",
    "EpochScheduleError",
    "InvalidTransitionError",
    "LeaseUnavailableError",
    "TickLease",
    "TickReport",
    "TransitionResult",
    "advance",
]
