"""Rewards - payout allocation and token transfer execution."""

from supermolt_arena.rewards.distributor import (
    DistributionError,
    EpochNotReadyError,
    RewardDistributor,
)
from supermolt_arena.rewards.models import (
    AgentRewardHistory,
    Allocation,
    DistributionResult,
    TreasuryStatus,
    compute_allocations,
    performance_adjustment,
    rank_multiplier,
    reward_amount,
)
from supermolt_arena.rewards.transfer import (
    ChainTxStatus,
    ConfirmationTimeoutError,
    Erc20TransferClient,
    InsufficientFundsError,
    InvalidDestinationError,
    PreparedTransfer,
    TransferClient,
    TransferError,
    TransferRejectedError,
    TransferResult,
)

__all__ = [
    "AgentRewardHistory",
    "Allocation",
    "ChainTxStatus",
    "ConfirmationTimeoutError",
    "DistributionError",
    "DistributionResult",
    "EpochNotReadyError",
    "Erc20TransferClient",
    "InsufficientFundsError",
    "InvalidDestinationError",
    "PreparedTransfer",
    "RewardDistributor",
    "TransferClient",
    "TransferError",
    "TransferRejectedError",
    "TransferResult",
    "TreasuryStatus",
    "compute_allocations",
    "performance_adjustment",
    "rank_multiplier",
    "reward_amount",
]
