"""Repository pattern implementations for data access.

This module provides data access abstractions for agents, trades,
epochs, agent epoch statistics and reward transfers. Repositories wrap
an ``AsyncSession``; callers own the transaction boundary.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from supermolt_arena.storage.models import (
    AgentEpochStatModel,
    AgentModel,
    AgentStatus,
    EpochModel,
    EpochStatus,
    RewardTransferModel,
    TradeModel,
    TransferStatus,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _dialect_insert(session: AsyncSession, model: type[Any]) -> Any:
    """Return a dialect-specific INSERT supporting ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _select_rows(model: type[Any]) -> Any:
    """SELECT of ORM rows that overwrites identity-mapped copies changed by bulk UPDATEs or upserts."""
    return select(model).execution_options(populate_existing=True)


@dataclass
class AgentDTO:
    """Data transfer object for registered agents."""

    agent_id: str
    wallet_address: str
    chain: str
    status: AgentStatus = AgentStatus.ACTIVE
    registered_at: datetime | None = None
    removed_at: datetime | None = None

    @classmethod
    def from_model(cls, model: AgentModel) -> AgentDTO:
        return cls(
            agent_id=model.agent_id,
            wallet_address=model.wallet_address,
            chain=model.chain,
            status=AgentStatus(model.status),
            registered_at=model.registered_at,
            removed_at=model.removed_at,
        )


class AgentRepository:
    """Repository for the agent identity registry."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, agent_id: str) -> AgentDTO | None:
        result = await self.session.execute(_select_rows(AgentModel).where(AgentModel.agent_id == agent_id))
        model = result.scalar_one_or_none()
        return AgentDTO.from_model(model) if model else None

    async def get_active_by_wallet(self, wallet_address: str, chain: str) -> AgentDTO | None:
        result = await self.session.execute(
            _select_rows(AgentModel).where(
                AgentModel.wallet_address == wallet_address,
                AgentModel.chain == chain,
                AgentModel.status == AgentStatus.ACTIVE.value,
            )
        )
        model = result.scalar_one_or_none()
        return AgentDTO.from_model(model) if model else None

    async def list_active(self, chain: str | None = None) -> list[AgentDTO]:
        stmt = _select_rows(AgentModel).where(AgentModel.status == AgentStatus.ACTIVE.value)
        if chain is not None:
            stmt = stmt.where(AgentModel.chain == chain)
        result = await self.session.execute(stmt.order_by(AgentModel.agent_id))
        return [AgentDTO.from_model(m) for m in result.scalars().all()]

    async def register(self, *, agent_id: str, wallet_address: str, chain: str) -> AgentDTO:
        """Register (or re-activate) an agent identity."""
        now = datetime.now(UTC)
        stmt = _dialect_insert(self.session, AgentModel).values(
            agent_id=agent_id,
            wallet_address=wallet_address,
            chain=chain,
            status=AgentStatus.ACTIVE.value,
            registered_at=now,
            removed_at=None,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["agent_id"],
            set_={
                "wallet_address": stmt.excluded.wallet_address,
                "chain": stmt.excluded.chain,
                "status": AgentStatus.ACTIVE.value,
                "removed_at": None,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        agent = await self.get(agent_id)
        assert agent is not None
        return agent

    async def remove(self, agent_id: str) -> AgentDTO | None:
        """Mark an agent as removed. Returns the previous identity, if any."""
        agent = await self.get(agent_id)
        if agent is None:
            return None
        await self.session.execute(
            update(AgentModel)
            .where(AgentModel.agent_id == agent_id)
            .values(status=AgentStatus.REMOVED.value, removed_at=datetime.now(UTC))
        )
        await self.session.flush()
        return agent


@dataclass
class TradeDTO:
    """Data transfer object for trades."""

    tx_signature: str
    wallet_address: str
    agent_id: str
    chain: str
    token_mint: str
    action: str
    quantity: Decimal
    price: Decimal
    ts: datetime
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TradeModel) -> TradeDTO:
        return cls(
            tx_signature=model.tx_signature,
            wallet_address=model.wallet_address,
            agent_id=model.agent_id,
            chain=model.chain,
            token_mint=model.token_mint,
            action=model.action,
            quantity=model.quantity,
            price=model.price,
            ts=model.ts,
            created_at=model.created_at,
        )


class TradeRepository:
    """Repository for persisted trades."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(self, dto: TradeDTO) -> bool:
        """Insert a trade unless (tx_signature, wallet_address) is already stored.

        Returns:
            True when a new row was written, False for a duplicate.
        """
        stmt = _dialect_insert(self.session, TradeModel).values(
            tx_signature=dto.tx_signature,
            wallet_address=dto.wallet_address,
            agent_id=dto.agent_id,
            chain=dto.chain,
            token_mint=dto.token_mint,
            action=dto.action,
            quantity=dto.quantity,
            price=dto.price,
            ts=dto.ts,
            created_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["tx_signature", "wallet_address"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def list_for_agent(self, agent_id: str, *, start: datetime, end: datetime) -> list[TradeDTO]:
        """Trades of one agent with start <= ts < end, oldest first."""
        result = await self.session.execute(
            select(TradeModel)
            .where(TradeModel.agent_id == agent_id, TradeModel.ts >= start, TradeModel.ts < end)
            .order_by(TradeModel.ts, TradeModel.id)
        )
        return [TradeDTO.from_model(m) for m in result.scalars().all()]

    async def list_agent_ids_in_window(self, chain: str, *, start: datetime, end: datetime) -> list[str]:
        """Agents with at least one trade on ``chain`` in [start, end)."""
        result = await self.session.execute(
            select(TradeModel.agent_id)
            .where(TradeModel.chain == chain, TradeModel.ts >= start, TradeModel.ts < end)
            .distinct()
            .order_by(TradeModel.agent_id)
        )
        return list(result.scalars().all())


@dataclass
class EpochDTO:
    """Data transfer object for epochs."""

    id: int
    epoch_number: int
    name: str
    chain: str
    status: EpochStatus
    start_at: datetime
    end_at: datetime
    pool_size: Decimal
    base_allocation: Decimal
    scored_at: datetime | None = None
    paid_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: EpochModel) -> EpochDTO:
        return cls(
            id=model.id,
            epoch_number=model.epoch_number,
            name=model.name,
            chain=model.chain,
            status=EpochStatus(model.status),
            start_at=model.start_at,
            end_at=model.end_at,
            pool_size=Decimal(model.pool_size),
            base_allocation=Decimal(model.base_allocation),
            scored_at=model.scored_at,
            paid_at=model.paid_at,
            created_at=model.created_at,
        )


class EpochRepository:
    """Repository for epochs.

    Status changes go exclusively through :meth:`compare_and_set_status`.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, epoch_id: int) -> EpochDTO | None:
        result = await self.session.execute(_select_rows(EpochModel).where(EpochModel.id == epoch_id))
        model = result.scalar_one_or_none()
        return EpochDTO.from_model(model) if model else None

    async def next_epoch_number(self, chain: str) -> int:
        result = await self.session.execute(
            select(sa.func.max(EpochModel.epoch_number)).where(EpochModel.chain == chain)
        )
        current = result.scalar_one_or_none()
        return int(current or 0) + 1

    async def latest_end_at(self, chain: str) -> datetime | None:
        result = await self.session.execute(
            select(EpochModel.end_at)
            .where(EpochModel.chain == chain)
            .order_by(EpochModel.end_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        *,
        name: str | None,
        chain: str,
        start_at: datetime,
        end_at: datetime,
        pool_size: Decimal,
        base_allocation: Decimal,
    ) -> EpochDTO:
        epoch_number = await self.next_epoch_number(chain)
        model = EpochModel(
            epoch_number=epoch_number,
            name=name or f"Epoch {epoch_number}",
            chain=chain,
            status=EpochStatus.UPCOMING.value,
            start_at=start_at,
            end_at=end_at,
            pool_size=pool_size,
            base_allocation=base_allocation,
        )
        self.session.add(model)
        await self.session.flush()
        return EpochDTO.from_model(model)

    async def list_by_status(self, statuses: Iterable[EpochStatus], *, chain: str | None = None) -> list[EpochDTO]:
        stmt = _select_rows(EpochModel).where(EpochModel.status.in_([s.value for s in statuses]))
        if chain is not None:
            stmt = stmt.where(EpochModel.chain == chain)
        result = await self.session.execute(stmt.order_by(EpochModel.start_at, EpochModel.id))
        return [EpochDTO.from_model(m) for m in result.scalars().all()]

    async def get_active(self, chain: str) -> EpochDTO | None:
        result = await self.session.execute(
            _select_rows(EpochModel)
            .where(EpochModel.chain == chain, EpochModel.status == EpochStatus.ACTIVE.value)
            .order_by(EpochModel.start_at)
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return EpochDTO.from_model(model) if model else None

    async def compare_and_set_status(
        self,
        epoch_id: int,
        *,
        expected: EpochStatus,
        new: EpochStatus,
        require_all_transfers_confirmed: bool = False,
    ) -> bool:
        """Atomically move ``epoch_id`` from ``expected`` to ``new``.

        With ``require_all_transfers_confirmed`` the update only applies
        while no transfer of the epoch is in a state other than CONFIRMED.

        Returns:
            True if this call performed the transition.
        """
        now = datetime.now(UTC)
        values: dict[str, Any] = {"status": new.value, "updated_at": now}
        if new is EpochStatus.PAID:
            values["paid_at"] = now
        stmt = update(EpochModel).where(EpochModel.id == epoch_id, EpochModel.status == expected.value)
        if require_all_transfers_confirmed:
            unconfirmed = (
                select(RewardTransferModel.id)
                .where(
                    RewardTransferModel.epoch_id == epoch_id,
                    RewardTransferModel.status != TransferStatus.CONFIRMED.value,
                )
                .exists()
            )
            stmt = stmt.where(~unconfirmed)
        result = await self.session.execute(stmt.values(**values).execution_options(synchronize_session=False))
        await self.session.flush()
        return bool(result.rowcount)

    async def mark_scored(self, epoch_id: int, *, at: datetime) -> bool:
        """Set ``scored_at`` once. Returns False if the epoch was already scored."""
        result = await self.session.execute(
            update(EpochModel)
            .where(EpochModel.id == epoch_id, EpochModel.scored_at.is_(None))
            .values(scored_at=at)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return bool(result.rowcount)


@dataclass
class AgentEpochStatDTO:
    """Data transfer object for per-epoch agent statistics."""

    epoch_id: int
    agent_id: str
    sortino: float
    win_rate: float
    consistency: float
    recovery_factor: float
    volume: float
    normalized_score: float
    rank: int

    @classmethod
    def from_model(cls, model: AgentEpochStatModel) -> AgentEpochStatDTO:
        return cls(
            epoch_id=model.epoch_id,
            agent_id=model.agent_id,
            sortino=model.sortino,
            win_rate=model.win_rate,
            consistency=model.consistency,
            recovery_factor=model.recovery_factor,
            volume=model.volume,
            normalized_score=model.normalized_score,
            rank=model.rank,
        )


class AgentEpochStatRepository:
    """Repository for scored agent statistics."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert_many(self, stats: Sequence[AgentEpochStatDTO]) -> None:
        """Upsert stats keyed by (epoch_id, agent_id)."""
        now = datetime.now(UTC)
        for dto in stats:
            stmt = _dialect_insert(self.session, AgentEpochStatModel).values(
                epoch_id=dto.epoch_id,
                agent_id=dto.agent_id,
                sortino=dto.sortino,
                win_rate=dto.win_rate,
                consistency=dto.consistency,
                recovery_factor=dto.recovery_factor,
                volume=dto.volume,
                normalized_score=dto.normalized_score,
                rank=dto.rank,
                computed_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["epoch_id", "agent_id"],
                set_={
                    "sortino": stmt.excluded.sortino,
                    "win_rate": stmt.excluded.win_rate,
                    "consistency": stmt.excluded.consistency,
                    "recovery_factor": stmt.excluded.recovery_factor,
                    "volume": stmt.excluded.volume,
                    "normalized_score": stmt.excluded.normalized_score,
                    "rank": stmt.excluded.rank,
                    "computed_at": stmt.excluded.computed_at,
                },
            )
            await self.session.execute(stmt)
        await self.session.flush()

    async def list_for_epoch(self, epoch_id: int) -> list[AgentEpochStatDTO]:
        result = await self.session.execute(
            _select_rows(AgentEpochStatModel)
            .where(AgentEpochStatModel.epoch_id == epoch_id)
            .order_by(AgentEpochStatModel.rank, AgentEpochStatModel.agent_id)
        )
        return [AgentEpochStatDTO.from_model(m) for m in result.scalars().all()]


@dataclass
class RewardTransferDTO:
    """Data transfer object for reward transfers."""

    epoch_id: int
    agent_id: str
    destination_wallet: str
    rank: int
    multiplier: float
    performance_adjustment: float
    amount: Decimal
    status: TransferStatus = TransferStatus.PENDING
    tx_signature: str | None = None
    attempts: int = 0
    last_error: str | None = None
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    confirmed_at: datetime | None = None

    @classmethod
    def from_model(cls, model: RewardTransferModel) -> RewardTransferDTO:
        return cls(
            id=model.id,
            epoch_id=model.epoch_id,
            agent_id=model.agent_id,
            destination_wallet=model.destination_wallet,
            rank=model.rank,
            multiplier=model.multiplier,
            performance_adjustment=model.performance_adjustment,
            amount=Decimal(model.amount),
            status=TransferStatus(model.status),
            tx_signature=model.tx_signature,
            attempts=model.attempts,
            last_error=model.last_error,
            created_at=model.created_at,
            updated_at=model.updated_at,
            confirmed_at=model.confirmed_at,
        )


class RewardTransferRepository:
    """Repository for reward transfers."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, transfer_id: int) -> RewardTransferDTO | None:
        result = await self.session.execute(
            _select_rows(RewardTransferModel).where(RewardTransferModel.id == transfer_id)
        )
        model = result.scalar_one_or_none()
        return RewardTransferDTO.from_model(model) if model else None

    async def create_pending(self, transfers: Sequence[RewardTransferDTO]) -> int:
        """Persist transfers as PENDING, skipping (epoch_id, agent_id) pairs that exist.

        Returns:
            Number of rows inserted.
        """
        inserted = 0
        now = datetime.now(UTC)
        for dto in transfers:
            stmt = _dialect_insert(self.session, RewardTransferModel).values(
                epoch_id=dto.epoch_id,
                agent_id=dto.agent_id,
                destination_wallet=dto.destination_wallet,
                rank=dto.rank,
                multiplier=dto.multiplier,
                performance_adjustment=dto.performance_adjustment,
                amount=dto.amount,
                status=TransferStatus.PENDING.value,
                attempts=0,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_nothing(index_elements=["epoch_id", "agent_id"])
            result = await self.session.execute(stmt)
            inserted += int(result.rowcount or 0)
        await self.session.flush()
        return inserted

    async def list_for_epoch(self, epoch_id: int) -> list[RewardTransferDTO]:
        result = await self.session.execute(
            _select_rows(RewardTransferModel)
            .where(RewardTransferModel.epoch_id == epoch_id)
            .order_by(RewardTransferModel.rank, RewardTransferModel.agent_id)
        )
        return [RewardTransferDTO.from_model(m) for m in result.scalars().all()]

    async def list_for_agent(self, agent_id: str) -> list[RewardTransferDTO]:
        result = await self.session.execute(
            _select_rows(RewardTransferModel)
            .where(RewardTransferModel.agent_id == agent_id)
            .order_by(RewardTransferModel.created_at.desc(), RewardTransferModel.id.desc())
        )
        return [RewardTransferDTO.from_model(m) for m in result.scalars().all()]

    async def count_not_confirmed(self, epoch_id: int) -> int:
        result = await self.session.execute(
            select(sa.func.count())
            .select_from(RewardTransferModel)
            .where(
                RewardTransferModel.epoch_id == epoch_id,
                RewardTransferModel.status != TransferStatus.CONFIRMED.value,
            )
        )
        return int(result.scalar_one())

    async def sum_amount(self, statuses: Iterable[TransferStatus]) -> Decimal:
        result = await self.session.execute(
            select(sa.func.coalesce(sa.func.sum(RewardTransferModel.amount), 0)).where(
                RewardTransferModel.status.in_([s.value for s in statuses])
            )
        )
        return Decimal(str(result.scalar_one())).quantize(Decimal("0.01"))

    async def _update(self, transfer_id: int, *conditions: Any, **values: Any) -> bool:
        values["updated_at"] = datetime.now(UTC)
        result = await self.session.execute(
            update(RewardTransferModel)
            .where(RewardTransferModel.id == transfer_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return bool(result.rowcount)

    @staticmethod
    def _owned(tx_signature: str | None) -> tuple[Any, ...]:
        """Conditions matching a row that is unconfirmed and still carries ``tx_signature``."""
        return (
            RewardTransferModel.status != TransferStatus.CONFIRMED.value,
            RewardTransferModel.tx_signature.is_not_distinct_from(tx_signature),
        )

    async def record_signature(
        self, transfer_id: int, tx_signature: str, *, expected_signature: str | None
    ) -> bool:
        """Claim a transfer by storing the signature of a signed, not yet broadcast, attempt.

        Compare-and-set: applies only while the row is unconfirmed and its
        signature is still ``expected_signature`` (the one the caller read).

        Returns:
            False if another run claimed or confirmed the transfer first;
            the caller must not broadcast.
        """
        return await self._update(
            transfer_id,
            *self._owned(expected_signature),
            tx_signature=tx_signature,
            status=TransferStatus.PENDING.value,
            attempts=RewardTransferModel.attempts + 1,
        )

    async def mark_sent(self, transfer_id: int, tx_signature: str) -> bool:
        return await self._update(
            transfer_id,
            *self._owned(tx_signature),
            status=TransferStatus.SENT.value,
            last_error=None,
        )

    async def mark_confirmed(self, transfer_id: int) -> None:
        await self._update(
            transfer_id,
            status=TransferStatus.CONFIRMED.value,
            last_error=None,
            confirmed_at=datetime.now(UTC),
        )

    async def mark_failed(self, transfer_id: int, error: str, *, expected_signature: str | None) -> bool:
        """Mark FAILED unless the transfer was confirmed or re-signed by another run."""
        return await self._update(
            transfer_id,
            *self._owned(expected_signature),
            status=TransferStatus.FAILED.value,
            last_error=error[:2000],
        )
