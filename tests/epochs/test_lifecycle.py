"""Tests for the epoch lifecycle manager."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from supermolt_arena.epochs.lifecycle import EpochLifecycleManager
from supermolt_arena.epochs.lock import LeaseHold
from supermolt_arena.epochs.models import EpochNotFoundError, EpochScheduleError, LeaseUnavailableError
from supermolt_arena.ledger.metrics import EpochMetrics
from supermolt_arena.rewards.distributor import RewardDistributor
from supermolt_arena.rewards.transfer import ChainTxStatus, PreparedTransfer
from supermolt_arena.scoring.scorer import PerformanceScorer
from supermolt_arena.storage.database import DatabaseManager
from supermolt_arena.storage.models import EpochStatus, TransferStatus
from supermolt_arena.storage.repos import AgentRepository, RewardTransferRepository

COHORT = {
    "alpha": EpochMetrics(sortino=2.0, win_rate=0.8, consistency=90.0, recovery_factor=3.0, volume=5000.0),
    "bravo": EpochMetrics(sortino=1.0, win_rate=0.6, consistency=70.0, recovery_factor=1.5, volume=10000.0),
    "charlie": EpochMetrics(sortino=0.5, win_rate=0.4, consistency=50.0, recovery_factor=0.5, volume=1000.0),
}


class FakeLedger:
    """Ledger double: every agent in ``metrics`` traded in every epoch."""

    def __init__(self, metrics: dict[str, EpochMetrics]) -> None:
        self.metrics = metrics
        self.participant_calls = 0

    async def record_trade(self, event: object) -> bool:
        raise NotImplementedError

    async def get_epoch_metrics(self, agent_id: str, epoch_id: int) -> EpochMetrics:
        return self.metrics[agent_id]

    async def list_participants(self, epoch_id: int) -> list[str]:
        self.participant_calls += 1
        return sorted(self.metrics)


class FakeLease:
    def __init__(self, acquired: bool = True) -> None:
        self.acquired = acquired
        self.current: LeaseHold | None = None

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[LeaseHold]:
        self.current = LeaseHold(acquired=self.acquired)
        yield self.current


class FakeTransferClient:
    def __init__(self) -> None:
        self.confirm = True
        self.sent: list[str] = []
        self.chain: dict[str, ChainTxStatus] = {}
        self.on_broadcast: Callable[[], None] | None = None

    async def get_balance(self) -> Decimal:
        return Decimal("100000")

    async def prepare_transfer(self, destination: str, amount: Decimal) -> PreparedTransfer:
        return PreparedTransfer(f"0xtx{len(self.sent) + 1}", b"raw", destination, amount)

    async def broadcast(self, prepared: PreparedTransfer) -> str:
        self.sent.append(prepared.tx_signature)
        if self.on_broadcast is not None:
            self.on_broadcast()
        return prepared.tx_signature

    async def wait_for_confirmation(self, tx_signature: str, *, timeout: float) -> bool:
        self.chain[tx_signature] = ChainTxStatus.CONFIRMED if self.confirm else ChainTxStatus.FAILED
        return self.confirm

    async def lookup(self, tx_signature: str) -> ChainTxStatus:
        return self.chain.get(tx_signature, ChainTxStatus.NOT_FOUND)


START = datetime(2026, 3, 2, tzinfo=UTC)
END = START + timedelta(days=7)


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger(dict(COHORT))


@pytest.fixture
def client() -> FakeTransferClient:
    return FakeTransferClient()


@pytest.fixture
def lease() -> FakeLease:
    return FakeLease()


@pytest.fixture
async def lifecycle(db: DatabaseManager, ledger: FakeLedger, client: FakeTransferClient, lease: FakeLease):
    async with db.get_async_session() as session:
        agents = AgentRepository(session)
        for agent_id in COHORT:
            await agents.register(agent_id=agent_id, wallet_address=f"wallet-{agent_id}", chain="solana")
    return EpochLifecycleManager(
        db,
        ledger=ledger,
        scorer=PerformanceScorer(ledger, db),
        distributor=RewardDistributor(db, client, confirmation_timeout=1),
        lease=lease,
        tick_interval_seconds=0.01,
        clock=lambda: START,
    )


# ============================================================================
# Scheduling
# ============================================================================


class TestCreateEpoch:
    """Tests for create_epoch and schedule_season."""

    @pytest.mark.asyncio
    async def test_defaults(self, lifecycle: EpochLifecycleManager) -> None:
        epoch = await lifecycle.create_epoch(start_at=START)

        assert epoch.status is EpochStatus.UPCOMING
        assert epoch.name == "Epoch 1"
        assert epoch.end_at == START + timedelta(days=7)
        assert epoch.pool_size == Decimal("1000")
        assert epoch.base_allocation == Decimal("200")

    @pytest.mark.asyncio
    async def test_rejects_invalid_window(self, lifecycle: EpochLifecycleManager) -> None:
        with pytest.raises(EpochScheduleError):
            await lifecycle.create_epoch(start_at=START, end_at=START)
        with pytest.raises(EpochScheduleError):
            await lifecycle.create_epoch(start_at=datetime(2026, 3, 2))
        with pytest.raises(EpochScheduleError):
            await lifecycle.create_epoch(start_at=START, pool_size=Decimal("0"))

    @pytest.mark.asyncio
    async def test_season_is_back_to_back(self, lifecycle: EpochLifecycleManager) -> None:
        epochs = await lifecycle.schedule_season(3, start_at=START, duration=timedelta(days=1))

        assert [e.epoch_number for e in epochs] == [1, 2, 3]
        assert [e.start_at for e in epochs] == [START + timedelta(days=i) for i in range(3)]
        assert all(a.end_at == b.start_at for a, b in zip(epochs, epochs[1:]))

    @pytest.mark.asyncio
    async def test_season_continues_after_latest_epoch(self, lifecycle: EpochLifecycleManager) -> None:
        await lifecycle.create_epoch(start_at=START)
        (epoch,) = await lifecycle.schedule_season(1)

        assert epoch.start_at == END
        assert epoch.epoch_number == 2

    @pytest.mark.asyncio
    async def test_season_count_must_be_positive(self, lifecycle: EpochLifecycleManager) -> None:
        with pytest.raises(EpochScheduleError):
            await lifecycle.schedule_season(0)

    @pytest.mark.asyncio
    async def test_get_epoch_unknown(self, lifecycle: EpochLifecycleManager) -> None:
        with pytest.raises(EpochNotFoundError):
            await lifecycle.get_epoch(12345)


# ============================================================================
# Ticking
# ============================================================================


class TestTick:
    """Tests for tick."""

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, lifecycle: EpochLifecycleManager, db: DatabaseManager) -> None:
        epoch = await lifecycle.create_epoch(start_at=START, end_at=END)

        early = await lifecycle.tick(now=START - timedelta(hours=1))
        assert early.activated == []

        report = await lifecycle.tick(now=START)
        assert report.activated == [epoch.id]
        assert (await lifecycle.get_active_epoch()).id == epoch.id

        report = await lifecycle.tick(now=END)
        assert report.ended == [epoch.id]
        assert report.scored == [epoch.id]
        assert report.paid == [epoch.id]

        paid = await lifecycle.get_epoch(epoch.id)
        assert paid.status is EpochStatus.PAID
        assert paid.scored_at == END
        assert paid.paid_at is not None
        async with db.get_async_session() as session:
            transfers = await RewardTransferRepository(session).list_for_epoch(epoch.id)
        assert [t.agent_id for t in transfers] == ["alpha", "bravo", "charlie"]
        assert all(t.status is TransferStatus.CONFIRMED for t in transfers)

    @pytest.mark.asyncio
    async def test_skipped_without_lease(self, lifecycle: EpochLifecycleManager, lease: FakeLease) -> None:
        epoch = await lifecycle.create_epoch(start_at=START)
        lease.acquired = False

        report = await lifecycle.tick(now=END)

        assert report.skipped
        assert (await lifecycle.get_epoch(epoch.id)).status is EpochStatus.UPCOMING

    @pytest.mark.asyncio
    async def test_overdue_epoch_catches_up_in_one_tick(self, lifecycle: EpochLifecycleManager) -> None:
        epoch = await lifecycle.create_epoch(start_at=START, end_at=END)

        report = await lifecycle.tick(now=END + timedelta(days=1))

        assert report.activated == [epoch.id]
        assert report.ended == [epoch.id]
        assert report.paid == [epoch.id]

    @pytest.mark.asyncio
    async def test_failed_payout_stays_ended_and_retries_without_rescoring(
        self,
        lifecycle: EpochLifecycleManager,
        ledger: FakeLedger,
        client: FakeTransferClient,
    ) -> None:
        epoch = await lifecycle.create_epoch(start_at=START, end_at=END)
        await lifecycle.tick(now=START)
        client.confirm = False

        report = await lifecycle.tick(now=END)

        assert report.scored == [epoch.id]
        assert report.awaiting_payment == [epoch.id]
        assert (await lifecycle.get_epoch(epoch.id)).status is EpochStatus.ENDED

        client.confirm = True
        report = await lifecycle.tick(now=END + timedelta(minutes=1))

        assert report.scored == []
        assert report.paid == [epoch.id]
        assert ledger.participant_calls == 1
        assert len(client.sent) == 6

    @pytest.mark.asyncio
    async def test_due_epoch_deferred_while_another_is_active(self, lifecycle: EpochLifecycleManager) -> None:
        first = await lifecycle.create_epoch(start_at=START, end_at=END)
        second = await lifecycle.create_epoch(start_at=START + timedelta(days=1), end_at=END + timedelta(days=7))
        await lifecycle.tick(now=START)

        report = await lifecycle.tick(now=START + timedelta(days=2))

        assert report.activated == []
        assert (await lifecycle.get_epoch(second.id)).status is EpochStatus.UPCOMING

        report = await lifecycle.tick(now=END)

        assert report.ended == [first.id]
        assert report.activated == [second.id]

    @pytest.mark.asyncio
    async def test_empty_cohort_is_paid(self, lifecycle: EpochLifecycleManager, ledger: FakeLedger) -> None:
        ledger.metrics.clear()
        epoch = await lifecycle.create_epoch(start_at=START, end_at=END)

        report = await lifecycle.tick(now=END)

        assert report.paid == [epoch.id]

    @pytest.mark.asyncio
    async def test_lost_lease_stops_distribution(
        self,
        lifecycle: EpochLifecycleManager,
        client: FakeTransferClient,
        lease: FakeLease,
    ) -> None:
        epoch = await lifecycle.create_epoch(start_at=START, end_at=END)
        await lifecycle.tick(now=START)

        def lose_lease() -> None:
            assert lease.current is not None
            lease.current.lost = True

        client.on_broadcast = lose_lease
        report = await lifecycle.tick(now=END)

        assert report.awaiting_payment == [epoch.id]
        assert len(client.sent) == 1
        assert (await lifecycle.get_epoch(epoch.id)).status is EpochStatus.ENDED

        client.on_broadcast = None
        report = await lifecycle.tick(now=END + timedelta(minutes=1))

        assert report.paid == [epoch.id]
        assert len(client.sent) == 3


# ============================================================================
# Operator retries and the scheduler loop
# ============================================================================


class TestRetryDistribution:
    """Tests for retry_distribution."""

    @pytest.mark.asyncio
    async def test_retry_pays_ended_epoch(
        self,
        lifecycle: EpochLifecycleManager,
        client: FakeTransferClient,
    ) -> None:
        epoch = await lifecycle.create_epoch(start_at=START, end_at=END)
        client.confirm = False
        await lifecycle.tick(now=END)
        client.confirm = True

        result = await lifecycle.retry_distribution(epoch.id)

        assert result.all_confirmed
        assert (await lifecycle.get_epoch(epoch.id)).status is EpochStatus.PAID

    @pytest.mark.asyncio
    async def test_retry_requires_lease(self, lifecycle: EpochLifecycleManager, lease: FakeLease) -> None:
        epoch = await lifecycle.create_epoch(start_at=START, end_at=END)
        lease.acquired = False

        with pytest.raises(LeaseUnavailableError):
            await lifecycle.retry_distribution(epoch.id)


class TestRunForever:
    """Tests for the scheduler loop."""

    @pytest.mark.asyncio
    async def test_ticks_until_stopped(self, lifecycle: EpochLifecycleManager) -> None:
        epoch = await lifecycle.create_epoch(start_at=START - timedelta(days=8), end_at=START - timedelta(days=1))

        task = asyncio.create_task(lifecycle.run_forever())
        for _ in range(200):
            if (await lifecycle.get_epoch(epoch.id)).status is EpochStatus.PAID:
                break
            await asyncio.sleep(0.01)
        lifecycle.stop()
        await asyncio.wait_for(task, timeout=2)

        assert (await lifecycle.get_epoch(epoch.id)).status is EpochStatus.PAID
