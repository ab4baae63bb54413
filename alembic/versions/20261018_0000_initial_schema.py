"""Initial schema: agents, trades, epochs, agent epoch stats, reward transfers.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Agent registry
    op.create_table(
        "agents",
        sa.Column("agent_id", sa.String(64), nullable=False),
        sa.Column("wallet_address", sa.String(88), nullable=False),
        sa.Column("chain", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("registered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("removed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("agent_id"),
        sa.UniqueConstraint("chain", "wallet_address", name="uq_agents_chain_wallet"),
    )
    op.create_index("idx_agents_chain_status", "agents", ["chain", "status"])

    # Trade ledger
    op.create_table(
        "trades",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tx_signature", sa.String(128), nullable=False),
        sa.Column("wallet_address", sa.String(88), nullable=False),
        sa.Column("agent_id", sa.String(64), nullable=False),
        sa.Column("chain", sa.String(16), nullable=False),
        sa.Column("token_mint", sa.String(88), nullable=False),
        sa.Column("action", sa.String(4), nullable=False),
        sa.Column("quantity", sa.Numeric(38, 18), nullable=False),
        sa.Column("price", sa.Numeric(38, 18), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_signature", "wallet_address", name="uq_trades_signature_wallet"),
    )
    op.create_index("idx_trades_agent_ts", "trades", ["agent_id", "ts"])
    op.create_index("idx_trades_chain_ts", "trades", ["chain", "ts"])

    # Epochs
    op.create_table(
        "epochs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("epoch_number", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("chain", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("pool_size", sa.Numeric(20, 2), nullable=False),
        sa.Column("base_allocation", sa.Numeric(20, 2), nullable=False),
        sa.Column("scored_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("chain", "epoch_number", name="uq_epochs_chain_number"),
    )
    op.create_index("idx_epochs_status", "epochs", ["status"])
    op.create_index("idx_epochs_chain_status", "epochs", ["chain", "status"])

    # Per-epoch scored metrics and ranks
    op.create_table(
        "agent_epoch_stats",
        sa.Column("epoch_id", sa.Integer(), nullable=False),
        sa.Column("agent_id", sa.String(64), nullable=False),
        sa.Column("sortino", sa.Float(), nullable=False),
        sa.Column("win_rate", sa.Float(), nullable=False),
        sa.Column("consistency", sa.Float(), nullable=False),
        sa.Column("recovery_factor", sa.Float(), nullable=False),
        sa.Column("volume", sa.Float(), nullable=False),
        sa.Column("normalized_score", sa.Float(), nullable=False),
        sa.Column("rank", sa.Integer(), nullable=False),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("epoch_id", "agent_id"),
    )
    op.create_index("idx_agent_epoch_stats_epoch_rank", "agent_epoch_stats", ["epoch_id", "rank"])

    # Reward payouts
    op.create_table(
        "reward_transfers",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("epoch_id", sa.Integer(), nullable=False),
        sa.Column("agent_id", sa.String(64), nullable=False),
        sa.Column("destination_wallet", sa.String(88), nullable=False),
        sa.Column("rank", sa.Integer(), nullable=False),
        sa.Column("multiplier", sa.Float(), nullable=False),
        sa.Column("performance_adjustment", sa.Float(), nullable=False),
        sa.Column("amount", sa.Numeric(20, 2), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("tx_signature", sa.String(128), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("epoch_id", "agent_id", name="uq_reward_transfers_epoch_agent"),
    )
    op.create_index("idx_reward_transfers_epoch_status", "reward_transfers", ["epoch_id", "status"])
    op.create_index("idx_reward_transfers_agent", "reward_transfers", ["agent_id"])


def downgrade() -> None:
    op.drop_index("idx_reward_transfers_agent", table_name="reward_transfers")
    op.drop_index("idx_reward_transfers_epoch_status", table_name="reward_transfers")
    op.drop_table("reward_transfers")

    op.drop_index("idx_agent_epoch_stats_epoch_rank", table_name="agent_epoch_stats")
    op.drop_table("agent_epoch_stats")

    op.drop_index("idx_epochs_chain_status", table_name="epochs")
    op.drop_index("idx_epochs_status", table_name="epochs")
    op.drop_table("epochs")

    op.drop_index("idx_trades_chain_ts", table_name="trades")
    op.drop_index("idx_trades_agent_ts", table_name="trades")
    op.drop_table("trades")

    op.drop_index("idx_agents_chain_status", table_name="agents")
    op.drop_table("agents")
