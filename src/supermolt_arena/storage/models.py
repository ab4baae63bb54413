"""SQLAlchemy models for persistent storage.

This module defines the database schema for registered agents, ingested
trades, epochs, per-epoch agent statistics and reward transfers.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import (
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class AgentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REMOVED = "REMOVED"


class EpochStatus(str, Enum):
    """Epoch lifecycle states, in transition order."""

    UPCOMING = "UPCOMING"
    ACTIVE = "ACTIVE"
    ENDED = "ENDED"
    PAID = "PAID"


class TransferStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class TradeAction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware datetime that always round-trips as UTC.

    SQLite drops tzinfo on storage; values read back are tagged UTC so
    they compare cleanly against ``datetime.now(UTC)``.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:  # noqa: ARG002
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetimes are not accepted; use timezone-aware UTC values")
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:  # noqa: ARG002
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class AgentModel(Base):
    """Verified agent identity: one monitored wallet per agent."""

    __tablename__ = "agents"

    agent_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    wallet_address: Mapped[str] = mapped_column(String(88), nullable=False)
    chain: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=AgentStatus.ACTIVE.value)
    registered_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    removed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        UniqueConstraint("chain", "wallet_address", name="uq_agents_chain_wallet"),
        Index("idx_agents_chain_status", "chain", "status"),
    )


class TradeModel(Base):
    """Trade observed on a monitored wallet."""

    __tablename__ = "trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_signature: Mapped[str] = mapped_column(String(128), nullable=False)
    wallet_address: Mapped[str] = mapped_column(String(88), nullable=False)
    agent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    chain: Mapped[str] = mapped_column(String(16), nullable=False)
    token_mint: Mapped[str] = mapped_column(String(88), nullable=False)
    action: Mapped[str] = mapped_column(String(4), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    ts: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("tx_signature", "wallet_address", name="uq_trades_signature_wallet"),
        Index("idx_trades_agent_ts", "agent_id", "ts"),
        Index("idx_trades_chain_ts", "chain", "ts"),
    )


class EpochModel(Base):
    """Competition epoch. Rows are never deleted."""

    __tablename__ = "epochs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    epoch_number: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    chain: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=EpochStatus.UPCOMING.value)
    start_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    pool_size: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    base_allocation: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    scored_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("chain", "epoch_number", name="uq_epochs_chain_number"),
        Index("idx_epochs_status", "status"),
        Index("idx_epochs_chain_status", "chain", "status"),
    )


class AgentEpochStatModel(Base):
    """Scored metrics and rank of one agent in one epoch."""

    __tablename__ = "agent_epoch_stats"

    epoch_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    agent_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    sortino: Mapped[float] = mapped_column(Float, nullable=False)
    win_rate: Mapped[float] = mapped_column(Float, nullable=False)
    consistency: Mapped[float] = mapped_column(Float, nullable=False)
    recovery_factor: Mapped[float] = mapped_column(Float, nullable=False)
    volume: Mapped[float] = mapped_column(Float, nullable=False)
    normalized_score: Mapped[float] = mapped_column(Float, nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)

    __table_args__ = (Index("idx_agent_epoch_stats_epoch_rank", "epoch_id", "rank"),)


class RewardTransferModel(Base):
    """One reward payout for one agent in one epoch."""

    __tablename__ = "reward_transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    epoch_id: Mapped[int] = mapped_column(Integer, nullable=False)
    agent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    destination_wallet: Mapped[str] = mapped_column(String(88), nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    multiplier: Mapped[float] = mapped_column(Float, nullable=False)
    performance_adjustment: Mapped[float] = mapped_column(Float, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=TransferStatus.PENDING.value)
    tx_signature: Mapped[str | None] = mapped_column(String(128), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        UniqueConstraint("epoch_id", "agent_id", name="uq_reward_transfers_epoch_agent"),
        Index("idx_reward_transfers_epoch_status", "epoch_id", "status"),
        Index("idx_reward_transfers_agent", "agent_id"),
    )
