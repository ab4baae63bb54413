"""Reward distribution for ended epochs.

Every payout of an epoch is computed first, persisted as PENDING, then
executed one at a time. Each step is committed before the next network
call, so a crash at any point leaves a record that the next run
reconciles against the chain before sending anything again.

A run only broadcasts a transfer after claiming it: recording its new
signature is a compare-and-set on the signature it read, so two
overlapping runs never both send the same payout.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from supermolt_arena.config import DEFAULT_RANK_MULTIPLIERS
from supermolt_arena.rewards.models import (
    DEFAULT_ADJUSTMENT_FLOOR,
    AgentRewardHistory,
    Allocation,
    DistributionResult,
    TreasuryStatus,
    compute_allocations,
)
from supermolt_arena.rewards.transfer import (
    DEFAULT_CONFIRMATION_TIMEOUT,
    ChainTxStatus,
    ConfirmationTimeoutError,
    TransferClient,
    TransferError,
)
from supermolt_arena.storage.models import EpochStatus, TransferStatus
from supermolt_arena.storage.repos import (
    AgentEpochStatRepository,
    AgentRepository,
    EpochDTO,
    EpochRepository,
    RewardTransferDTO,
    RewardTransferRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from supermolt_arena.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

INSUFFICIENT_BALANCE = "insufficient treasury balance"
IN_FLIGHT_GRACE_SECONDS = 30.0


class DistributionError(TransferError):
    """Raised when an epoch cannot be distributed."""


class EpochNotReadyError(DistributionError):
    """Raised when distributing an epoch that is not ENDED and scored."""


class RewardDistributor:
    """Converts an epoch's ranks into payouts and executes them.

    Example:
        ```python
        distributor = RewardDistributor(db, client)
        result = await distributor.distribute(epoch_id)
        if not result.all_confirmed:
            logger.warning("epoch %d needs another distribution run", epoch_id)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        client: TransferClient | None,
        *,
        rank_multipliers: Sequence[float] = DEFAULT_RANK_MULTIPLIERS,
        adjustment_floor: float = DEFAULT_ADJUSTMENT_FLOOR,
        confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        scale_to_pool: bool = False,
        dry_run: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if client is None and not dry_run:
            raise ValueError("a transfer client is required unless dry_run is set")
        self._db = db
        self._client = client
        self._rank_multipliers = tuple(rank_multipliers)
        self._adjustment_floor = adjustment_floor
        self._confirmation_timeout = confirmation_timeout
        self._scale_to_pool = scale_to_pool
        self._dry_run = dry_run
        self._clock = clock or (lambda: datetime.now(UTC))
        # A signed attempt younger than this may still be awaited by the run that sent it.
        self._in_flight_window = timedelta(seconds=confirmation_timeout + IN_FLIGHT_GRACE_SECONDS)

    async def _write(self, fn: Callable[[RewardTransferRepository], Awaitable[object]]) -> None:
        async with self._db.get_async_session() as session:
            await fn(RewardTransferRepository(session))

    async def _reload(self, transfer_id: int) -> RewardTransferDTO | None:
        async with self._db.get_async_session() as session:
            return await RewardTransferRepository(session).get(transfer_id)

    async def _claim(self, transfer_id: int, tx_signature: str, *, expected: str | None) -> bool:
        async with self._db.get_async_session() as session:
            return await RewardTransferRepository(session).record_signature(
                transfer_id, tx_signature, expected_signature=expected
            )

    async def _list_transfers(self, epoch_id: int) -> list[RewardTransferDTO]:
        async with self._db.get_async_session() as session:
            return await RewardTransferRepository(session).list_for_epoch(epoch_id)

    async def plan(self, session: AsyncSession, epoch: EpochDTO) -> list[Allocation]:
        """Allocations for a scored epoch (pure computation over persisted stats)."""
        stats = await AgentEpochStatRepository(session).list_for_epoch(epoch.id)
        return compute_allocations(
            stats,
            base_allocation=epoch.base_allocation,
            pool_size=epoch.pool_size,
            rank_multipliers=self._rank_multipliers,
            adjustment_floor=self._adjustment_floor,
            scale_to_pool=self._scale_to_pool,
        )

    async def _ensure_transfers(self, epoch_id: int) -> tuple[EpochDTO, list[RewardTransferDTO]]:
        async with self._db.get_async_session() as session:
            epoch = await EpochRepository(session).get(epoch_id)
            if epoch is None:
                raise DistributionError(f"epoch {epoch_id} does not exist")
            repo = RewardTransferRepository(session)
            if epoch.status is EpochStatus.PAID:
                return epoch, await repo.list_for_epoch(epoch_id)
            if epoch.status is not EpochStatus.ENDED:
                raise EpochNotReadyError(f"epoch {epoch_id} is {epoch.status.value}, not ENDED")
            if epoch.scored_at is None:
                raise EpochNotReadyError(f"epoch {epoch_id} has not been scored")

            existing = await repo.list_for_epoch(epoch_id)
            if existing:
                return epoch, existing

            allocations = await self.plan(session, epoch)
            agents = AgentRepository(session)
            pending = []
            for allocation in allocations:
                agent = await agents.get(allocation.agent_id)
                pending.append(
                    RewardTransferDTO(
                        epoch_id=epoch_id,
                        agent_id=allocation.agent_id,
                        destination_wallet=agent.wallet_address if agent else "",
                        rank=allocation.rank,
                        multiplier=allocation.multiplier,
                        performance_adjustment=allocation.performance_adjustment,
                        amount=allocation.amount,
                    )
                )
            await repo.create_pending(pending)
            total = sum((a.amount for a in allocations), Decimal(0))
            logger.info(
                "Planned %d reward transfers for epoch %d (total=%s, pool=%s)",
                len(pending),
                epoch_id,
                total,
                epoch.pool_size,
            )
            if total > epoch.pool_size:
                logger.warning("Epoch %d rewards (%s) exceed the pool (%s)", epoch_id, total, epoch.pool_size)
            return epoch, await repo.list_for_epoch(epoch_id)

    async def distribute(self, epoch_id: int, *, keep_going: Callable[[], bool] | None = None) -> DistributionResult:
        """Pay out an ENDED, scored epoch.

        Safe to call repeatedly, and from more than one runner at once:
        CONFIRMED transfers are skipped, any transfer with a recorded
        signature is checked on chain before it is sent again, and a
        transfer is only broadcast by the run whose signature claimed it.

        Args:
            epoch_id: Epoch to pay out.
            keep_going: Checked before each transfer; when it returns
                False the remaining transfers are left for a later run.

        Raises:
            DistributionError: If the epoch does not exist.
            EpochNotReadyError: If the epoch is not ENDED (or PAID) and scored.
        """
        epoch, transfers = await self._ensure_transfers(epoch_id)
        if epoch.status is EpochStatus.PAID:
            return DistributionResult(epoch_id=epoch_id, all_confirmed=True, transfers=transfers)

        if self._dry_run:
            for t in transfers:
                logger.info(
                    "[dry-run] epoch %d rank %d agent %s -> %s (%s)",
                    epoch_id,
                    t.rank,
                    t.agent_id,
                    t.amount,
                    t.status.value,
                )
            return DistributionResult(
                epoch_id=epoch_id,
                all_confirmed=all(t.status is TransferStatus.CONFIRMED for t in transfers),
                transfers=transfers,
                dry_run=True,
            )

        assert self._client is not None
        outstanding = [t for t in transfers if t.status is not TransferStatus.CONFIRMED]
        if outstanding:
            try:
                remaining = await self._client.get_balance()
            except TransferError as e:
                logger.error("Cannot read treasury balance for epoch %d: %s", epoch_id, e)
                return DistributionResult(epoch_id=epoch_id, all_confirmed=False, transfers=transfers)

            for t in outstanding:
                if keep_going is not None and not keep_going():
                    logger.warning("Stopping distribution of epoch %d; the rest is left for a later run", epoch_id)
                    break
                spent = await self._execute(t, remaining)
                remaining -= spent

        transfers = await self._list_transfers(epoch_id)
        all_confirmed = all(t.status is TransferStatus.CONFIRMED for t in transfers)
        failed = [t for t in transfers if t.status is not TransferStatus.CONFIRMED]
        if all_confirmed:
            logger.info("Epoch %d: all %d reward transfers confirmed", epoch_id, len(transfers))
        else:
            logger.warning(
                "Epoch %d: %d of %d reward transfers not confirmed; epoch stays ENDED",
                epoch_id,
                len(failed),
                len(transfers),
            )
        return DistributionResult(epoch_id=epoch_id, all_confirmed=all_confirmed, transfers=transfers)

    def _in_flight(self, transfer: RewardTransferDTO) -> bool:
        """True while a signed attempt may still be in another run's hands."""
        if transfer.status not in (TransferStatus.PENDING, TransferStatus.SENT) or not transfer.tx_signature:
            return False
        if transfer.updated_at is None:
            return False
        return self._clock() - transfer.updated_at < self._in_flight_window

    async def _execute(self, transfer: RewardTransferDTO, remaining: Decimal) -> Decimal:
        """Drive one transfer to CONFIRMED or FAILED.

        Returns:
            The amount newly taken from the treasury balance by this call.
        """
        assert self._client is not None
        assert transfer.id is not None
        transfer_id = transfer.id
        current = await self._reload(transfer_id)
        if current is None or current.status is TransferStatus.CONFIRMED:
            return Decimal(0)
        owned = current.tx_signature
        try:
            if current.tx_signature:
                on_chain = await self._client.lookup(current.tx_signature)
                if on_chain is ChainTxStatus.CONFIRMED:
                    logger.info("Transfer %d already confirmed on chain (%s)", transfer_id, current.tx_signature)
                    await self._write(lambda repo: repo.mark_confirmed(transfer_id))
                    return Decimal(0)
                if self._in_flight(current):
                    logger.info(
                        "Transfer %d (%s) is in flight in another run; skipping",
                        transfer_id,
                        current.tx_signature,
                    )
                    return Decimal(0)
                if on_chain is ChainTxStatus.PENDING:
                    await self._await_confirmation(transfer_id, current.tx_signature)
                    return Decimal(0)
                logger.warning(
                    "Transfer %d previous attempt %s is %s; sending again",
                    transfer_id,
                    current.tx_signature,
                    on_chain.value,
                )

            if current.amount <= 0:
                logger.info("Transfer %d has nothing to pay; marking confirmed", transfer_id)
                await self._write(lambda repo: repo.mark_confirmed(transfer_id))
                return Decimal(0)

            if current.amount > remaining:
                logger.error(
                    "Transfer %d (%s to %s) exceeds treasury balance %s",
                    transfer_id,
                    current.amount,
                    current.agent_id,
                    remaining,
                )
                await self._write(
                    lambda repo: repo.mark_failed(transfer_id, INSUFFICIENT_BALANCE, expected_signature=owned)
                )
                return Decimal(0)

            prepared = await self._client.prepare_transfer(current.destination_wallet, current.amount)
            if not await self._claim(transfer_id, prepared.tx_signature, expected=current.tx_signature):
                logger.info("Transfer %d was claimed by another run; not sending", transfer_id)
                return Decimal(0)
            owned = prepared.tx_signature
            await self._client.broadcast(prepared)
            await self._write(lambda repo: repo.mark_sent(transfer_id, prepared.tx_signature))
            await self._await_confirmation(transfer_id, prepared.tx_signature)
            return current.amount
        except TransferError as e:
            logger.error("Transfer %d to agent %s failed: %s", transfer_id, current.agent_id, e)
            await self._write(lambda repo: repo.mark_failed(transfer_id, str(e), expected_signature=owned))
        except Exception as e:
            logger.exception("Unexpected error executing transfer %d", transfer_id)
            await self._write(
                lambda repo: repo.mark_failed(transfer_id, f"unexpected error: {e}", expected_signature=owned)
            )
        return Decimal(0)

    async def _await_confirmation(self, transfer_id: int, tx_signature: str) -> None:
        assert self._client is not None
        try:
            confirmed = await self._client.wait_for_confirmation(tx_signature, timeout=self._confirmation_timeout)
        except ConfirmationTimeoutError as e:
            logger.warning("Transfer %d not confirmed in time: %s", transfer_id, e)
            await self._write(
                lambda repo: repo.mark_failed(transfer_id, "confirmation timed out", expected_signature=tx_signature)
            )
            return
        if confirmed:
            await self._write(lambda repo: repo.mark_confirmed(transfer_id))
            logger.info("Transfer %d confirmed (%s)", transfer_id, tx_signature)
        else:
            await self._write(
                lambda repo: repo.mark_failed(transfer_id, "transaction reverted", expected_signature=tx_signature)
            )
            logger.error("Transfer %d reverted on chain (%s)", transfer_id, tx_signature)

    async def get_agent_rewards(self, agent_id: str) -> AgentRewardHistory:
        async with self._db.get_async_session() as session:
            transfers = await RewardTransferRepository(session).list_for_agent(agent_id)
        total = sum((t.amount for t in transfers if t.status is TransferStatus.CONFIRMED), Decimal(0))
        return AgentRewardHistory(agent_id=agent_id, transfers=transfers, total_earned=total)

    async def treasury_status(self) -> TreasuryStatus:
        async with self._db.get_async_session() as session:
            repo = RewardTransferRepository(session)
            pending = await repo.sum_amount([TransferStatus.PENDING, TransferStatus.SENT, TransferStatus.FAILED])
            distributed = await repo.sum_amount([TransferStatus.CONFIRMED])
        balance: Decimal | None = None
        if self._client is not None:
            try:
                balance = await self._client.get_balance()
            except TransferError as e:
                logger.warning("Treasury balance unavailable: %s", e)
        return TreasuryStatus(balance=balance, allocated_pending=pending, distributed=distributed)
