"""Storage layer - Database schemas and repositories."""

from supermolt_arena.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from supermolt_arena.storage.models import (
    AgentEpochStatModel,
    AgentModel,
    AgentStatus,
    Base,
    EpochModel,
    EpochStatus,
    RewardTransferModel,
    TradeAction,
    TradeModel,
    TransferStatus,
)
from supermolt_arena.storage.repos import (
    AgentDTO,
    AgentEpochStatDTO,
    AgentEpochStatRepository,
    AgentRepository,
    EpochDTO,
    EpochRepository,
    RewardTransferDTO,
    RewardTransferRepository,
    TradeDTO,
    TradeRepository,
)

__all__ = [
    "AgentDTO",
    "AgentEpochStatDTO",
    "AgentEpochStatModel",
    "AgentEpochStatRepository",
    "AgentModel",
    "AgentRepository",
    "AgentStatus",
    "Base",
    "DatabaseManager",
    "EpochDTO",
    "EpochModel",
    "EpochRepository",
    "EpochStatus",
    "RewardTransferDTO",
    "RewardTransferModel",
    "RewardTransferRepository",
    "TradeAction",
    "TradeDTO",
    "TradeModel",
    "TradeRepository",
    "TransferStatus",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
