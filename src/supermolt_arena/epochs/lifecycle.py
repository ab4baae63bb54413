"""Epoch lifecycle manager.

Drives epochs through UPCOMING -> ACTIVE -> ENDED -> PAID on a periodic
tick. A tick only runs while holding the Redis tick lease. On ENDED the
cohort is scored once (stats and ``scored_at`` committed together) and
rewards are distributed; an epoch whose payout is incomplete stays
ENDED and later ticks retry the distribution without re-scoring.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from supermolt_arena.epochs.models import (
    EpochNotFoundError,
    EpochScheduleError,
    LeaseUnavailableError,
    TickReport,
    advance,
)
from supermolt_arena.storage.models import EpochStatus, TransferStatus
from supermolt_arena.storage.repos import EpochDTO, EpochRepository

if TYPE_CHECKING:
    from supermolt_arena.epochs.lock import LeaseHold, TickLease
    from supermolt_arena.ledger.ledger import TradeLedger
    from supermolt_arena.rewards.distributor import RewardDistributor
    from supermolt_arena.rewards.models import DistributionResult
    from supermolt_arena.scoring.scorer import PerformanceScorer
    from supermolt_arena.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL_SECONDS = 60
DEFAULT_EPOCH_DURATION = timedelta(days=7)
DEFAULT_POOL_SIZE = Decimal("1000")
DEFAULT_BASE_ALLOCATION = Decimal("200")


class EpochLifecycleManager:
    """Scheduler for epoch state transitions, scoring and payout.

    Example:
        ```python
        lifecycle = EpochLifecycleManager(
            db, ledger=ledger, scorer=scorer, distributor=distributor, lease=lease
        )
        await lifecycle.create_epoch(start_at=start, end_at=end)
        await lifecycle.run_forever()
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        ledger: TradeLedger,
        scorer: PerformanceScorer,
        distributor: RewardDistributor,
        lease: TickLease,
        tick_interval_seconds: float = DEFAULT_TICK_INTERVAL_SECONDS,
        epoch_duration: timedelta = DEFAULT_EPOCH_DURATION,
        default_pool_size: Decimal = DEFAULT_POOL_SIZE,
        default_base_allocation: Decimal = DEFAULT_BASE_ALLOCATION,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._scorer = scorer
        self._distributor = distributor
        self._lease = lease
        self._tick_interval = tick_interval_seconds
        self._epoch_duration = epoch_duration
        self._default_pool_size = default_pool_size
        self._default_base_allocation = default_base_allocation
        self._clock = clock
        self._stop_event: asyncio.Event | None = None

    # Scheduling

    async def create_epoch(
        self,
        *,
        start_at: datetime,
        end_at: datetime | None = None,
        chain: str = "solana",
        name: str | None = None,
        pool_size: Decimal | None = None,
        base_allocation: Decimal | None = None,
    ) -> EpochDTO:
        """Create an UPCOMING epoch numbered after the chain's latest one.

        Raises:
            EpochScheduleError: If the window is empty or an amount is not positive.
        """
        end_at = end_at or start_at + self._epoch_duration
        pool_size = self._default_pool_size if pool_size is None else Decimal(pool_size)
        base_allocation = self._default_base_allocation if base_allocation is None else Decimal(base_allocation)
        if start_at.tzinfo is None or end_at.tzinfo is None:
            raise EpochScheduleError("epoch boundaries must be timezone-aware")
        if end_at <= start_at:
            raise EpochScheduleError(f"end_at ({end_at.isoformat()}) must be after start_at ({start_at.isoformat()})")
        if pool_size <= 0 or base_allocation <= 0:
            raise EpochScheduleError("pool_size and base_allocation must be positive")

        async with self._db.get_async_session() as session:
            epoch = await EpochRepository(session).create(
                name=name,
                chain=chain,
                start_at=start_at,
                end_at=end_at,
                pool_size=pool_size,
                base_allocation=base_allocation,
            )
        logger.info(
            "Created epoch %d (#%d %s, %s): %s -> %s, pool=%s base=%s",
            epoch.id,
            epoch.epoch_number,
            epoch.name,
            chain,
            start_at.isoformat(),
            end_at.isoformat(),
            pool_size,
            base_allocation,
        )
        return epoch

    async def schedule_season(
        self,
        count: int,
        *,
        chain: str = "solana",
        start_at: datetime | None = None,
        duration: timedelta | None = None,
        pool_size: Decimal | None = None,
        base_allocation: Decimal | None = None,
    ) -> list[EpochDTO]:
        """Create ``count`` back-to-back epochs.

        Without ``start_at`` the season starts where the chain's latest
        epoch ends (or now, when there is none).
        """
        if count <= 0:
            raise EpochScheduleError("count must be > 0")
        duration = duration or self._epoch_duration
        if start_at is None:
            async with self._db.get_async_session() as session:
                start_at = await EpochRepository(session).latest_end_at(chain)
            start_at = start_at or self._clock()

        epochs = []
        for i in range(count):
            begin = start_at + duration * i
            epochs.append(
                await self.create_epoch(
                    start_at=begin,
                    end_at=begin + duration,
                    chain=chain,
                    pool_size=pool_size,
                    base_allocation=base_allocation,
                )
            )
        return epochs

    async def get_active_epoch(self, chain: str = "solana") -> EpochDTO | None:
        async with self._db.get_async_session() as session:
            return await EpochRepository(session).get_active(chain)

    async def get_epoch(self, epoch_id: int) -> EpochDTO:
        async with self._db.get_async_session() as session:
            epoch = await EpochRepository(session).get(epoch_id)
        if epoch is None:
            raise EpochNotFoundError(f"epoch {epoch_id} does not exist")
        return epoch

    # Ticking

    async def tick(self, now: datetime | None = None) -> TickReport:
        """Run one scheduler pass. No-op when another process holds the lease."""
        async with self._lease.hold() as held:
            if not held:
                logger.debug("Tick skipped: lease held elsewhere")
                return TickReport(skipped=True)
            return await self._run_tick(now or self._clock(), held)

    async def _run_tick(self, now: datetime, held: LeaseHold) -> TickReport:
        report = TickReport()
        await self._end_due_epochs(now, report)
        await self._activate_due_epochs(now, report)
        await self._settle_ended_epochs(now, report, held)
        return report

    async def _transition(self, epoch_id: int, target: EpochStatus) -> bool:
        async with self._db.get_async_session() as session:
            result = await advance(session, epoch_id, target)
        return result.applied

    async def _end_due_epochs(self, now: datetime, report: TickReport) -> None:
        async with self._db.get_async_session() as session:
            active = await EpochRepository(session).list_by_status([EpochStatus.ACTIVE])
        for epoch in active:
            if epoch.end_at <= now and await self._transition(epoch.id, EpochStatus.ENDED):
                report.ended.append(epoch.id)

    async def _activate_due_epochs(self, now: datetime, report: TickReport) -> None:
        async with self._db.get_async_session() as session:
            upcoming = await EpochRepository(session).list_by_status([EpochStatus.UPCOMING])
        for epoch in upcoming:
            if epoch.start_at > now:
                continue
            current = await self.get_active_epoch(epoch.chain)
            if current is not None:
                logger.warning(
                    "Epoch %d is due but epoch %d is still ACTIVE on %s; deferring",
                    epoch.id,
                    current.id,
                    epoch.chain,
                )
                continue
            if await self._transition(epoch.id, EpochStatus.ACTIVE):
                report.activated.append(epoch.id)
            if epoch.end_at <= now and await self._transition(epoch.id, EpochStatus.ENDED):
                report.ended.append(epoch.id)

    async def _settle_ended_epochs(self, now: datetime, report: TickReport, held: LeaseHold) -> None:
        async with self._db.get_async_session() as session:
            ended = await EpochRepository(session).list_by_status([EpochStatus.ENDED])
        for epoch in ended:
            if not held.valid:
                logger.warning("Tick lease lost; leaving epoch %d for the next tick", epoch.id)
                report.awaiting_payment.append(epoch.id)
                continue
            try:
                if epoch.scored_at is None and await self._score_once(epoch, now):
                    report.scored.append(epoch.id)
                result = await self._distributor.distribute(epoch.id, keep_going=lambda: held.valid)
                if result.all_confirmed and await self._transition(epoch.id, EpochStatus.PAID):
                    report.paid.append(epoch.id)
                else:
                    report.awaiting_payment.append(epoch.id)
                    logger.warning(
                        "Epoch %d remains ENDED: %d transfer(s) not confirmed; will retry next tick",
                        epoch.id,
                        sum(1 for t in result.transfers if t.status is not TransferStatus.CONFIRMED),
                    )
            except Exception as e:
                report.errors[epoch.id] = str(e)
                logger.exception("Failed to settle epoch %d", epoch.id)

    async def _score_once(self, epoch: EpochDTO, now: datetime) -> bool:
        """Score ``epoch`` and persist stats together with ``scored_at``.

        Returns:
            False if another runner scored it first.
        """
        cohort = await self._ledger.list_participants(epoch.id)
        stats = await self._scorer.compute(epoch.id, cohort)
        async with self._db.get_async_session() as session:
            if not await EpochRepository(session).mark_scored(epoch.id, at=now):
                logger.info("Epoch %d already scored; keeping existing stats", epoch.id)
                return False
            await self._scorer.persist(session, stats)
        logger.info("Epoch %d scored: %d ranked agents", epoch.id, len(stats))
        return True

    async def retry_distribution(self, epoch_id: int) -> DistributionResult:
        """Operator entry point: re-run distribution for an ENDED epoch.

        Raises:
            LeaseUnavailableError: If a scheduler tick currently holds the lease.
        """
        async with self._lease.hold() as held:
            if not held:
                raise LeaseUnavailableError("a scheduler tick is in progress; try again shortly")
            epoch = await self.get_epoch(epoch_id)
            if epoch.status is EpochStatus.ENDED and epoch.scored_at is None:
                await self._score_once(epoch, self._clock())
            result = await self._distributor.distribute(epoch_id, keep_going=lambda: held.valid)
            if result.all_confirmed:
                await self._transition(epoch_id, EpochStatus.PAID)
            return result

    async def run_forever(self) -> None:
        """Tick every ``tick_interval_seconds`` until :meth:`stop` is called."""
        self._stop_event = asyncio.Event()
        logger.info("Epoch scheduler started (interval=%ss)", self._tick_interval)
        while not self._stop_event.is_set():
            try:
                report = await self.tick()
                if not report.skipped and (report.activated or report.ended or report.paid or report.errors):
                    logger.info(
                        "Tick: activated=%s ended=%s scored=%s paid=%s errors=%s",
                        report.activated,
                        report.ended,
                        report.scored,
                        report.paid,
                        sorted(report.errors),
                    )
            except Exception:
                logger.exception("Scheduler tick failed")
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._tick_interval)
        logger.info("Epoch scheduler stopped")

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
