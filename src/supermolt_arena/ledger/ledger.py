"""Trade ledger: idempotent trade recording and per-epoch metric reads."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from supermolt_arena.ledger.metrics import EpochMetrics, compute_metrics
from supermolt_arena.monitor.models import short_address
from supermolt_arena.storage.repos import (
    AgentRepository,
    EpochDTO,
    EpochRepository,
    TradeDTO,
    TradeRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from supermolt_arena.monitor.models import TradeEvent
    from supermolt_arena.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base exception for trade ledger errors."""


class UnknownAgentError(LedgerError):
    """Raised when a trade arrives for a wallet with no registered agent."""


class UnknownEpochError(LedgerError):
    """Raised when metrics are requested for an epoch that does not exist."""


class TradeLedger(Protocol):
    async def record_trade(self, event: TradeEvent) -> bool: ...

    async def get_epoch_metrics(self, agent_id: str, epoch_id: int) -> EpochMetrics: ...

    async def list_participants(self, epoch_id: int) -> list[str]: ...


class SqlTradeLedger:
    """Trade ledger persisted through the storage repositories."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def record_trade(self, event: TradeEvent) -> bool:
        """Persist ``event``.

        Returns:
            False if the (signature, wallet) pair was already recorded.

        Raises:
            UnknownAgentError: If no active agent owns the wallet.
        """
        async with self._db.get_async_session() as session:
            agent = await AgentRepository(session).get_active_by_wallet(event.wallet_address, event.chain)
            if agent is None:
                raise UnknownAgentError(f"no active agent for wallet {short_address(event.wallet_address)}")
            inserted = await TradeRepository(session).insert_if_absent(
                TradeDTO(
                    tx_signature=event.tx_signature,
                    wallet_address=event.wallet_address,
                    agent_id=agent.agent_id,
                    chain=event.chain,
                    token_mint=event.token_mint,
                    action=event.action.value,
                    quantity=event.quantity,
                    price=event.price,
                    ts=event.timestamp,
                )
            )
        if inserted:
            logger.debug(
                "Recorded %s %s for agent %s (%s)",
                event.action.value,
                event.token_mint[:8],
                agent.agent_id,
                event.tx_signature[:12],
            )
        return inserted

    async def _get_epoch(self, session: AsyncSession, epoch_id: int) -> EpochDTO:
        epoch = await EpochRepository(session).get(epoch_id)
        if epoch is None:
            raise UnknownEpochError(f"epoch {epoch_id} does not exist")
        return epoch

    async def get_epoch_metrics(self, agent_id: str, epoch_id: int) -> EpochMetrics:
        async with self._db.get_async_session() as session:
            epoch = await self._get_epoch(session, epoch_id)
            trades = await TradeRepository(session).list_for_agent(
                agent_id, start=epoch.start_at, end=epoch.end_at
            )
        return compute_metrics(trades)

    async def list_participants(self, epoch_id: int) -> list[str]:
        """Agents with at least one trade inside the epoch window."""
        async with self._db.get_async_session() as session:
            epoch = await self._get_epoch(session, epoch_id)
            return await TradeRepository(session).list_agent_ids_in_window(
                epoch.chain, start=epoch.start_at, end=epoch.end_at
            )
