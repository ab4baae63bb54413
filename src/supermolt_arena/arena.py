"""Arena orchestrator for SuperMolt Arena.

This module provides the Arena class that wires together the wallet
monitor, the trade ledger, the performance scorer, the reward
distributor and the epoch lifecycle scheduler.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from redis.asyncio import Redis

from supermolt_arena.config import Settings, get_settings
from supermolt_arena.epochs.lifecycle import EpochLifecycleManager
from supermolt_arena.epochs.lock import TickLease
from supermolt_arena.ledger.ledger import SqlTradeLedger, UnknownAgentError
from supermolt_arena.monitor.backoff import BackoffPolicy
from supermolt_arena.monitor.manager import EventSource, WalletSubscriptionManager
from supermolt_arena.monitor.models import SubscriptionHandle, short_address
from supermolt_arena.monitor.source import (
    ChainEventSource,
    MonitorError,
    NotificationCallback,
    ReconnectCallback,
)
from supermolt_arena.rewards.distributor import RewardDistributor
from supermolt_arena.rewards.transfer import Erc20TransferClient
from supermolt_arena.scoring.scorer import PerformanceScorer
from supermolt_arena.storage.database import DatabaseManager
from supermolt_arena.storage.repos import AgentDTO, AgentRepository

if TYPE_CHECKING:
    from typing import Any

    from supermolt_arena.monitor.models import TradeEvent

logger = logging.getLogger(__name__)


class ArenaState(str, Enum):
    """Arena lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ArenaStats:
    """Statistics for the trade ingest loop."""

    started_at: datetime | None = None
    trades_recorded: int = 0
    duplicates_skipped: int = 0
    unknown_wallets_dropped: int = 0
    errors: int = 0
    last_trade_time: datetime | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class AgentIdentity:
    """An agent as registered by the (external) onboarding service."""

    agent_id: str
    wallet_address: str
    chain: str = "solana"


class Arena:
    """Main orchestrator for the SuperMolt Arena core.

    Flow:
        Wallet monitor -> Trade ledger -> (epoch end) Scorer -> Reward distributor

    Components are built by :meth:`open`; :meth:`start` additionally
    subscribes every active agent, consumes trade events into the ledger
    and runs the epoch scheduler.

    Example:
        ```python
        arena = Arena(get_settings())
        await arena.start()
        await arena.register_agent(AgentIdentity("agent-1", wallet))
        # Runs until stop() is called
        await arena.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        dry_run: bool | None = None,
    ) -> None:
        """Initialize the arena.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            dry_run: If True, plan payouts without broadcasting. Overrides settings.dry_run.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run

        self._state = ArenaState.STOPPED
        self._stats = ArenaStats()
        self._opened = False

        # Components (initialized in open())
        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._ledger: SqlTradeLedger | None = None
        self._scorer: PerformanceScorer | None = None
        self._transfer_client: Erc20TransferClient | None = None
        self._distributor: RewardDistributor | None = None
        self._lifecycle: EpochLifecycleManager | None = None
        self._monitor: WalletSubscriptionManager | None = None
        self._handles: dict[str, SubscriptionHandle] = {}

        self._stop_event: asyncio.Event | None = None
        self._ingest_task: asyncio.Task[None] | None = None
        self._scheduler_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ArenaState:
        """Current arena state."""
        return self._state

    @property
    def stats(self) -> ArenaStats:
        """Current ingest statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == ArenaState.RUNNING

    @property
    def lifecycle(self) -> EpochLifecycleManager:
        if self._lifecycle is None:
            raise RuntimeError("arena is not open")
        return self._lifecycle

    @property
    def distributor(self) -> RewardDistributor:
        if self._distributor is None:
            raise RuntimeError("arena is not open")
        return self._distributor

    @property
    def monitor(self) -> WalletSubscriptionManager:
        if self._monitor is None:
            raise RuntimeError("arena is not open")
        return self._monitor

    @property
    def db(self) -> DatabaseManager:
        if self._db_manager is None:
            raise RuntimeError("arena is not open")
        return self._db_manager

    async def open(self) -> None:
        """Build every component without starting background services."""
        if self._opened:
            return
        await self._initialize_components()
        self._opened = True

    async def close(self) -> None:
        """Release connections opened by :meth:`open`."""
        await self._cleanup()
        self._opened = False

    async def start(self) -> None:
        """Start monitoring, trade ingestion and the epoch scheduler.

        Raises:
            RuntimeError: If the arena is already running.
        """
        if self._state != ArenaState.STOPPED:
            raise RuntimeError(f"Cannot start arena in state {self._state}")

        self._state = ArenaState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting arena (dry_run=%s)...", self._dry_run)

        try:
            await self.open()
            await self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = ArenaState.RUNNING
            logger.info("Arena started successfully")
        except Exception as e:
            self._state = ArenaState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start arena: %s", e)
            await self._stop_background_services()
            await self.close()
            raise

    async def stop(self) -> None:
        """Stop the arena gracefully."""
        if self._state == ArenaState.STOPPED:
            return

        self._state = ArenaState.STOPPING
        logger.info("Stopping arena...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self.close()

        self._state = ArenaState.STOPPED
        logger.info("Arena stopped")

    async def _initialize_components(self) -> None:
        settings = self._settings

        self._db_manager = DatabaseManager(settings.database.url)
        self._redis = Redis.from_url(settings.redis.url)
        lease = TickLease(
            self._redis,
            ttl_seconds=settings.epoch.lease_ttl_seconds,
            key=settings.epoch.lease_key,
        )

        self._ledger = SqlTradeLedger(self._db_manager)
        self._scorer = PerformanceScorer(self._ledger, self._db_manager, weights=settings.scoring.weights)

        client: Erc20TransferClient | None = None
        if not self._dry_run and settings.treasury.private_key is None:
            logger.warning("TREASURY_PRIVATE_KEY not set; reward transfers run in dry-run mode")
            self._dry_run = True
        if not self._dry_run:
            assert settings.treasury.private_key is not None
            client = Erc20TransferClient(
                rpc_url=settings.treasury.rpc_url,
                token_address=settings.treasury.token_address,
                private_key=settings.treasury.private_key.get_secret_value(),
                chain_id=settings.treasury.chain_id,
                token_decimals=settings.treasury.token_decimals,
            )
        self._transfer_client = client
        self._distributor = RewardDistributor(
            self._db_manager,
            client,
            rank_multipliers=settings.rewards.rank_multipliers,
            adjustment_floor=settings.rewards.adjustment_floor,
            confirmation_timeout=settings.rewards.confirmation_timeout_seconds,
            scale_to_pool=settings.rewards.scale_to_pool,
            dry_run=self._dry_run,
        )
        self._lifecycle = EpochLifecycleManager(
            self._db_manager,
            ledger=self._ledger,
            scorer=self._scorer,
            distributor=self._distributor,
            lease=lease,
            tick_interval_seconds=settings.epoch.tick_interval_seconds,
            epoch_duration=timedelta(hours=settings.epoch.duration_hours),
            default_pool_size=settings.epoch.pool_size,
            default_base_allocation=settings.epoch.base_allocation,
        )
        self._monitor = WalletSubscriptionManager(
            source_factory=self._build_source,
            capacity=settings.stream.capacity_per_connection,
            dedup_cache_size=settings.stream.dedup_cache_size,
        )
        logger.info("Arena components initialized: %s", settings.redacted_summary())

    def _build_source(
        self,
        *,
        chain: str,
        connection_id: str,
        on_notification: NotificationCallback,
        on_reconnect: ReconnectCallback,
    ) -> EventSource:
        stream = self._settings.stream
        if chain != stream.chain:
            raise MonitorError(f"no event stream configured for chain {chain!r}")
        return ChainEventSource(
            connection_id=connection_id,
            url=stream.connect_url,
            chain=chain,
            on_notification=on_notification,
            on_reconnect=on_reconnect,
            capacity=stream.capacity_per_connection,
            ping_interval=stream.ping_interval_seconds,
            backoff=BackoffPolicy(
                initial_seconds=stream.reconnect_initial_seconds,
                max_seconds=stream.reconnect_max_seconds,
                jitter=stream.reconnect_jitter,
                stable_reset_seconds=stream.stable_reset_seconds,
            ),
        )

    async def _start_background_services(self) -> None:
        async with self.db.get_async_session() as session:
            agents = await AgentRepository(session).list_active()
        for agent in agents:
            await self._subscribe(agent)
        logger.info("Monitoring %d active agent wallets", len(agents))

        self._ingest_task = asyncio.create_task(self._run_ingest(), name="trade-ingest")
        self._scheduler_task = asyncio.create_task(self.lifecycle.run_forever(), name="epoch-scheduler")

    async def _stop_background_services(self) -> None:
        if self._lifecycle:
            self._lifecycle.stop()
        if self._monitor:
            await self._monitor.stop()
        self._handles.clear()

        if self._scheduler_task:
            self._scheduler_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._scheduler_task
            self._scheduler_task = None

        if self._ingest_task:
            self._ingest_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._ingest_task
            self._ingest_task = None

    async def _cleanup(self) -> None:
        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        if self._transfer_client:
            await self._transfer_client.aclose()
            self._transfer_client = None

        logger.debug("Resources cleaned up")

    # Agent registry

    async def _subscribe(self, agent: AgentDTO) -> None:
        try:
            handle = await self.monitor.subscribe(agent.wallet_address, agent.chain)
        except MonitorError as e:
            logger.error("Cannot monitor agent %s (%s): %s", agent.agent_id, agent.chain, e)
            return
        self._handles[agent.agent_id] = handle

    async def register_agent(self, identity: AgentIdentity) -> AgentDTO:
        """Record ``identity`` in the registry and start monitoring its wallet."""
        async with self.db.get_async_session() as session:
            agent = await AgentRepository(session).register(
                agent_id=identity.agent_id,
                wallet_address=identity.wallet_address,
                chain=identity.chain,
            )
        logger.info(
            "Registered agent %s (%s on %s)",
            agent.agent_id,
            short_address(agent.wallet_address),
            agent.chain,
        )
        if self.is_running:
            previous = self._handles.pop(agent.agent_id, None)
            if previous is not None and previous.address != agent.wallet_address:
                await self.monitor.unsubscribe(previous)
            await self._subscribe(agent)
        return agent

    async def remove_agent(self, agent_id: str) -> bool:
        """Mark ``agent_id`` removed and stop monitoring its wallet.

        Returns:
            False if the agent is unknown.
        """
        async with self.db.get_async_session() as session:
            agent = await AgentRepository(session).remove(agent_id)
        if agent is None:
            return False
        handle = self._handles.pop(agent_id, None)
        if handle is not None and self._monitor is not None:
            await self._monitor.unsubscribe(handle)
        logger.info("Removed agent %s", agent_id)
        return True

    # Trade ingestion

    async def _run_ingest(self) -> None:
        async for event in self.monitor.events():
            await self._on_trade(event)

    async def _on_trade(self, event: TradeEvent) -> None:
        """Persist one trade event from the monitor."""
        assert self._ledger is not None
        try:
            inserted = await self._ledger.record_trade(event)
        except UnknownAgentError as e:
            self._stats.unknown_wallets_dropped += 1
            logger.warning("Dropping trade %s: %s", event.tx_signature[:12], e)
            return
        except Exception as e:
            self._stats.errors += 1
            self._stats.last_error = str(e)
            logger.exception("Failed to record trade %s", event.tx_signature[:12])
            return

        if inserted:
            self._stats.trades_recorded += 1
            self._stats.last_trade_time = event.timestamp
        else:
            self._stats.duplicates_skipped += 1

    async def run(self) -> None:
        """Start the arena and run until stopped or cancelled."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> Arena:
        await self.open()
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._state != ArenaState.STOPPED:
            await self.stop()
        else:
            await self.close()
