"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
SuperMolt Arena core, loading and validating environment variables at
startup. Invalid scoring weights, reward tables or connection capacities
are rejected here so the process fails fast instead of at runtime.
"""

from __future__ import annotations

import logging
import math
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

METRIC_NAMES = ("sortino", "win_rate", "consistency", "recovery_factor", "volume")

DEFAULT_SCORING_WEIGHTS: dict[str, float] = {
    "sortino": 0.40,
    "win_rate": 0.20,
    "consistency": 0.15,
    "recovery_factor": 0.15,
    "volume": 0.10,
}

DEFAULT_RANK_MULTIPLIERS: tuple[float, ...] = (2.0, 1.5, 1.0, 0.75, 0.5)

WEIGHT_SUM_TOLERANCE = 1e-9

Command = Literal[
    "run",
    "tick",
    "distribute",
    "schedule-season",
    "init-db",
    "register-agent",
    "remove-agent",
    "status",
]


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL (or sqlite+aiosqlite) connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class StreamSettings(BaseSettings):
    """Chain event stream (wallet monitoring) settings."""

    model_config = SettingsConfigDict(env_prefix="STREAM_", extra="ignore")

    ws_url: str = Field(
        default="wss://mainnet.helius-rpc.com",
        alias="STREAM_WS_URL",
        description="WebSocket JSON-RPC endpoint for transaction subscriptions",
    )
    api_key: SecretStr | None = Field(
        default=None,
        alias="STREAM_API_KEY",
        description="API key appended to the websocket URL",
    )
    chain: str = Field(
        default="solana",
        alias="STREAM_CHAIN",
        description="Chain served by the stream endpoint",
    )
    capacity_per_connection: int = Field(
        default=100,
        alias="STREAM_CAPACITY_PER_CONNECTION",
        description="Maximum wallet addresses carried by one connection",
    )
    reconnect_initial_seconds: float = Field(
        default=5.0,
        alias="STREAM_RECONNECT_INITIAL_SECONDS",
        gt=0.0,
        le=3600.0,
        description="First reconnect delay (doubles per failed attempt)",
    )
    reconnect_max_seconds: float = Field(
        default=30.0,
        alias="STREAM_RECONNECT_MAX_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Reconnect delay ceiling",
    )
    reconnect_jitter: float = Field(
        default=0.2,
        alias="STREAM_RECONNECT_JITTER",
        ge=0.0,
        lt=1.0,
        description="Relative random jitter applied to each reconnect delay",
    )
    stable_reset_seconds: float = Field(
        default=60.0,
        alias="STREAM_STABLE_RESET_SECONDS",
        gt=0.0,
        description="Connected time after which backoff resets to the initial delay",
    )
    dedup_cache_size: int = Field(
        default=500,
        alias="STREAM_DEDUP_CACHE_SIZE",
        ge=1,
        le=1_000_000,
        description="Recent (signature, wallet) keys remembered for replay de-duplication",
    )
    ping_interval_seconds: int = Field(
        default=30,
        alias="STREAM_PING_INTERVAL_SECONDS",
        ge=1,
        le=600,
        description="WebSocket keepalive ping interval",
    )

    @field_validator("ws_url")
    @classmethod
    def validate_ws_url(cls, v: str) -> str:
        """Validate WebSocket URL format."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("WebSocket URL must start with ws:// or wss://")
        return v

    @field_validator("capacity_per_connection")
    @classmethod
    def validate_capacity(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("STREAM_CAPACITY_PER_CONNECTION must be > 0")
        return v

    @model_validator(mode="after")
    def validate_backoff_bounds(self) -> StreamSettings:
        if self.reconnect_max_seconds < self.reconnect_initial_seconds:
            raise ValueError("STREAM_RECONNECT_MAX_SECONDS must be >= STREAM_RECONNECT_INITIAL_SECONDS")
        return self

    @property
    def connect_url(self) -> str:
        """Endpoint URL including the API key, when one is configured."""
        if self.api_key is None:
            return self.ws_url
        sep = "&" if "?" in self.ws_url else "?"
        return f"{self.ws_url}{sep}api-key={self.api_key.get_secret_value()}"


class EpochSettings(BaseSettings):
    """Epoch scheduling settings."""

    model_config = SettingsConfigDict(env_prefix="EPOCH_", extra="ignore")

    duration_hours: float = Field(
        default=168.0,
        alias="EPOCH_DURATION_HOURS",
        gt=0.0,
        le=24 * 365,
        description="Length of one competition epoch (hours)",
    )
    pool_size: Decimal = Field(
        default=Decimal("1000"),
        alias="EPOCH_POOL_SIZE",
        description="USDC reward pool per epoch",
    )
    base_allocation: Decimal = Field(
        default=Decimal("200"),
        alias="EPOCH_BASE_ALLOCATION",
        description="Base USDC allocation per ranked agent",
    )
    tick_interval_seconds: int = Field(
        default=60,
        alias="EPOCH_TICK_INTERVAL_SECONDS",
        ge=1,
        le=3600,
        description="Scheduler tick interval",
    )
    lease_ttl_seconds: int = Field(
        default=45,
        alias="EPOCH_LEASE_TTL_SECONDS",
        ge=1,
        description="Expiry of the process-wide tick lease (must be shorter than the tick interval)",
    )
    lease_key: str = Field(
        default="supermolt:epoch:tick-lease",
        alias="EPOCH_LEASE_KEY",
        description="Redis key holding the tick lease",
    )

    @field_validator("pool_size", "base_allocation")
    @classmethod
    def validate_positive_amount(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("epoch amounts must be > 0")
        return v

    @model_validator(mode="after")
    def validate_lease_shorter_than_tick(self) -> EpochSettings:
        if self.lease_ttl_seconds >= self.tick_interval_seconds:
            raise ValueError("EPOCH_LEASE_TTL_SECONDS must be shorter than EPOCH_TICK_INTERVAL_SECONDS")
        return self


class ScoringSettings(BaseSettings):
    """Composite performance score weights."""

    model_config = SettingsConfigDict(env_prefix="SCORING_", extra="ignore")

    weights: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_SCORING_WEIGHTS),
        alias="SCORING_WEIGHTS",
        description="Metric weights as JSON (must cover every metric and sum to 1.0)",
    )

    @field_validator("weights")
    @classmethod
    def validate_weights(cls, v: dict[str, float]) -> dict[str, float]:
        return validate_scoring_weights(v)


class RewardSettings(BaseSettings):
    """Reward allocation and transfer execution settings."""

    model_config = SettingsConfigDict(env_prefix="REWARDS_", extra="ignore")

    rank_multipliers: tuple[float, ...] = Field(
        default=DEFAULT_RANK_MULTIPLIERS,
        alias="REWARDS_RANK_MULTIPLIERS",
        description="Multiplier per rank as JSON list; ranks past the end use the last entry",
    )
    adjustment_floor: float = Field(
        default=0.5,
        alias="REWARDS_ADJUSTMENT_FLOOR",
        ge=0.0,
        le=1.0,
        description="Minimum performance adjustment applied to every ranked agent",
    )
    confirmation_timeout_seconds: float = Field(
        default=90.0,
        alias="REWARDS_CONFIRMATION_TIMEOUT_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Bounded wait for a transfer confirmation before it is marked FAILED",
    )
    scale_to_pool: bool = Field(
        default=False,
        alias="REWARDS_SCALE_TO_POOL",
        description="Scale allocations down proportionally when they exceed the epoch pool",
    )

    @field_validator("rank_multipliers")
    @classmethod
    def validate_rank_multipliers(cls, v: tuple[float, ...]) -> tuple[float, ...]:
        if not v:
            raise ValueError("REWARDS_RANK_MULTIPLIERS must not be empty")
        if any(m < 0 or not math.isfinite(m) for m in v):
            raise ValueError("REWARDS_RANK_MULTIPLIERS must be finite and non-negative")
        if any(later > earlier for earlier, later in zip(v, v[1:])):
            raise ValueError("REWARDS_RANK_MULTIPLIERS must be non-increasing by rank")
        return tuple(v)


class TreasurySettings(BaseSettings):
    """Treasury wallet used to pay out rewards."""

    model_config = SettingsConfigDict(env_prefix="TREASURY_", extra="ignore")

    rpc_url: str = Field(
        default="https://bsc-dataseed.binance.org",
        alias="TREASURY_RPC_URL",
        description="EVM RPC endpoint used for reward transfers",
    )
    chain_id: int = Field(
        default=56,
        alias="TREASURY_CHAIN_ID",
        description="Chain ID used when signing transfers",
    )
    token_address: str = Field(
        default="0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d",
        alias="TREASURY_TOKEN_ADDRESS",
        description="USDC token contract address",
    )
    token_decimals: int = Field(
        default=18,
        alias="TREASURY_TOKEN_DECIMALS",
        ge=0,
        le=36,
        description="Decimals of the reward token",
    )
    private_key: SecretStr | None = Field(
        default=None,
        alias="TREASURY_PRIVATE_KEY",
        description="Treasury signing key (required to pay out rewards)",
    )

    @field_validator("rpc_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate RPC URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


def validate_scoring_weights(weights: dict[str, float]) -> dict[str, float]:
    """Reject weight tables that do not cover every metric or do not sum to 1.0."""
    missing = set(METRIC_NAMES) - set(weights)
    unknown = set(weights) - set(METRIC_NAMES)
    if missing:
        raise ValueError(f"scoring weights missing metrics: {sorted(missing)}")
    if unknown:
        raise ValueError(f"scoring weights contain unknown metrics: {sorted(unknown)}")
    if any(w < 0 for w in weights.values()):
        raise ValueError("scoring weights must be non-negative")
    total = math.fsum(weights.values())
    if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
        raise ValueError(f"scoring weights must sum to 1.0 (got {total})")
    return {name: float(weights[name]) for name in METRIC_NAMES}


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from supermolt_arena.config import get_settings

        settings = get_settings()
        print(settings.stream.capacity_per_connection)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    stream: StreamSettings = Field(
        default_factory=lambda: StreamSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    epoch: EpochSettings = Field(
        default_factory=lambda: EpochSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    scoring: ScoringSettings = Field(
        default_factory=lambda: ScoringSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    rewards: RewardSettings = Field(
        default_factory=lambda: RewardSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    treasury: TreasurySettings = Field(
        default_factory=lambda: TreasurySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Compute and persist reward transfers without broadcasting them",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url),
            "stream": {
                "ws_url": self.stream.ws_url,
                "api_key": "(set)" if self.stream.api_key else "(not set)",
                "chain": self.stream.chain,
                "capacity_per_connection": str(self.stream.capacity_per_connection),
                "reconnect": f"{self.stream.reconnect_initial_seconds}s..{self.stream.reconnect_max_seconds}s",
            },
            "epoch": {
                "duration_hours": str(self.epoch.duration_hours),
                "pool_size": str(self.epoch.pool_size),
                "base_allocation": str(self.epoch.base_allocation),
                "tick_interval_seconds": str(self.epoch.tick_interval_seconds),
            },
            "scoring_weights": {k: str(v) for k, v in self.scoring.weights.items()},
            "rewards": {
                "rank_multipliers": ",".join(str(m) for m in self.rewards.rank_multipliers),
                "adjustment_floor": str(self.rewards.adjustment_floor),
                "scale_to_pool": str(self.rewards.scale_to_pool),
            },
            "treasury": {
                "rpc_url": self.treasury.rpc_url,
                "chain_id": str(self.treasury.chain_id),
                "token_address": self.treasury.token_address,
                "private_key": "(set)" if self.treasury.private_key else "(not set)",
            },
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

    def validate_requirements(self, *, command: Command) -> None:
        """Validate command-specific requirements.

        A command that can pay out rewards refuses to start without a
        treasury key unless running in dry-run mode.
        """
        pays_out = command in ("run", "tick", "distribute")
        if pays_out and not self.dry_run and self.treasury.private_key is None:
            raise ValueError("TREASURY_PRIVATE_KEY is required to distribute rewards (or set DRY_RUN=true)")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
