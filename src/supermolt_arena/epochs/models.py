"""Epoch state machine.

UPCOMING -> ACTIVE -> ENDED -> PAID. Status only moves forward, one
step at a time, through :func:`advance`, which performs a guarded
compare-and-set in the database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from supermolt_arena.storage.models import EpochStatus
from supermolt_arena.storage.repos import EpochRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

STATUS_ORDER: dict[EpochStatus, int] = {
    EpochStatus.UPCOMING: 0,
    EpochStatus.ACTIVE: 1,
    EpochStatus.ENDED: 2,
    EpochStatus.PAID: 3,
}


class EpochError(Exception):
    """Base exception for epoch lifecycle errors."""


class EpochNotFoundError(EpochError):
    """Raised when an epoch id does not exist."""


class InvalidTransitionError(EpochError):
    """Raised when a transition would skip a state."""


class EpochScheduleError(EpochError):
    """Raised when an epoch cannot be created with the given window or amounts."""


class LeaseUnavailableError(EpochError):
    """Raised when an operator action cannot take the tick lease."""


@dataclass(frozen=True)
class TransitionResult:
    epoch_id: int
    from_status: EpochStatus
    to_status: EpochStatus
    applied: bool


def next_status(status: EpochStatus) -> EpochStatus | None:
    order = STATUS_ORDER[status]
    for candidate, position in STATUS_ORDER.items():
        if position == order + 1:
            return candidate
    return None


async def advance(session: AsyncSession, epoch_id: int, target: EpochStatus) -> TransitionResult:
    """Move ``epoch_id`` to ``target`` if it is exactly one step ahead.

    Advancing to the current or an earlier state is a no-op. Moving to
    PAID additionally requires every reward transfer to be CONFIRMED at
    the moment of the update.

    Raises:
        EpochNotFoundError: If the epoch does not exist.
        InvalidTransitionError: If ``target`` skips a state.
    """
    repo = EpochRepository(session)
    epoch = await repo.get(epoch_id)
    if epoch is None:
        raise EpochNotFoundError(f"epoch {epoch_id} does not exist")

    current = epoch.status
    if STATUS_ORDER[target] <= STATUS_ORDER[current]:
        return TransitionResult(epoch_id, current, target, applied=False)
    if next_status(current) is not target:
        raise InvalidTransitionError(f"epoch {epoch_id}: {current.value} -> {target.value} skips a state")

    applied = await repo.compare_and_set_status(
        epoch_id,
        expected=current,
        new=target,
        require_all_transfers_confirmed=target is EpochStatus.PAID,
    )
    if applied:
        logger.info("Epoch %d: %s -> %s", epoch_id, current.value, target.value)
    else:
        logger.info("Epoch %d: %s -> %s not applied", epoch_id, current.value, target.value)
    return TransitionResult(epoch_id, current, target, applied=applied)


@dataclass
class TickReport:
    """What one scheduler tick did."""

    skipped: bool = False
    activated: list[int] = field(default_factory=list)
    ended: list[int] = field(default_factory=list)
    scored: list[int] = field(default_factory=list)
    paid: list[int] = field(default_factory=list)
    awaiting_payment: list[int] = field(default_factory=list)
    errors: dict[int, str] = field(default_factory=dict)
