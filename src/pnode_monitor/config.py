"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
pnode monitor, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


@dataclass(frozen=True)
class SeedConfig:
    """A configured discovery entry point."""

    name: str
    base_url: str


DEFAULT_SEEDS: tuple[SeedConfig, ...] = (
    SeedConfig(name="Seed 1 (192.190.136.36:6000)", base_url="http://192.190.136.36:6000"),
    SeedConfig(name="Seed 2 (173.212.203.145:6000)", base_url="http://173.212.203.145:6000"),
    SeedConfig(name="Seed 3 (173.212.220.65:6000)", base_url="http://173.212.220.65:6000"),
    SeedConfig(name="Seed 4 (161.97.97.41:6000)", base_url="http://161.97.97.41:6000"),
    SeedConfig(name="Seed 5 (192.190.136.37:6000)", base_url="http://192.190.136.37:6000"),
    SeedConfig(name="Seed 6 (192.190.136.38:6000)", base_url="http://192.190.136.38:6000"),
    SeedConfig(name="Seed 7 (192.190.136.28:6000)", base_url="http://192.190.136.28:6000"),
    SeedConfig(name="Seed 8 (192.190.136.29:6000)", base_url="http://192.190.136.29:6000"),
)


def parse_seed_entries(raw: str) -> tuple[SeedConfig, ...]:
    """Parse a comma-separated seed list.

    Each entry is either a bare base URL or ``name=base_url``.
    """
    seeds: list[SeedConfig] = []
    for part in raw.split(","):
        entry = part.strip()
        if not entry:
            continue
        if "=" in entry:
            name, url = (p.strip() for p in entry.split("=", 1))
        else:
            name, url = entry, entry
        if not url.startswith(("http://", "https://")):
            raise ValueError(f"Seed URL must be an HTTP(S) endpoint: {url}")
        seeds.append(SeedConfig(name=name or url, base_url=url.rstrip("/")))
    return tuple(seeds)


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (optional single-flight run lock)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; enables the ingestion run lock when set",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v

    @property
    def enabled(self) -> bool:
        return self.url is not None


class PrpcSettings(BaseSettings):
    """pRPC transport settings for seeds and pnodes."""

    model_config = SettingsConfigDict(env_prefix="PRPC_", extra="ignore")

    rpc_path: str = Field(
        default="/rpc",
        alias="PRPC_RPC_PATH",
        description="Sub-path that accepts JSON-RPC calls on every pnode",
    )
    stats_port: int = Field(
        default=6000,
        alias="PRPC_STATS_PORT",
        ge=1,
        le=65535,
        description="Fixed port used for get-stats calls (the gossip-reported port is ignored)",
    )
    timeout_seconds: float = Field(
        default=10.0,
        alias="PRPC_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
        description="Total timeout for a single pRPC round trip",
    )

    @field_validator("rpc_path")
    @classmethod
    def validate_rpc_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("PRPC_RPC_PATH must start with '/'")
        return v


class SeedSettings(BaseSettings):
    """Seed node list."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    # Kept as a raw string so comma-separated values are not JSON-decoded.
    entries: str | None = Field(
        default=None,
        alias="SEEDS",
        description="Comma-separated seeds, each 'url' or 'name=url'",
    )

    @field_validator("entries")
    @classmethod
    def validate_entries(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not parse_seed_entries(v):
            raise ValueError("SEEDS must contain at least one seed")
        return v

    @property
    def seeds(self) -> tuple[SeedConfig, ...]:
        if self.entries is None:
            return DEFAULT_SEEDS
        return parse_seed_entries(self.entries)


class BackoffSettings(BaseSettings):
    """Per-pnode stats polling backoff."""

    model_config = SettingsConfigDict(env_prefix="BACKOFF_", extra="ignore")

    base_seconds: int = Field(
        default=60,
        alias="BACKOFF_BASE_SECONDS",
        ge=1,
        le=86_400,
        description="Polling interval after a success and base of the exponential backoff",
    )
    cap_exponent: int = Field(
        default=5,
        alias="BACKOFF_CAP_EXPONENT",
        ge=0,
        le=20,
        description="Failure count at which the backoff delay stops growing",
    )


class IngestionSettings(BaseSettings):
    """Ingestion cycle settings."""

    model_config = SettingsConfigDict(env_prefix="INGESTION_", extra="ignore")

    concurrency: int = Field(
        default=10,
        alias="INGESTION_CONCURRENCY",
        ge=1,
        le=1000,
        description="Maximum concurrent get-stats calls",
    )
    interval_seconds: int = Field(
        default=60,
        alias="INGESTION_INTERVAL_SECONDS",
        ge=5,
        le=86_400,
        description="Delay between cycles when running the periodic loop",
    )
    snapshot_enabled: bool = Field(
        default=True,
        alias="INGESTION_SNAPSHOT_ENABLED",
        description="Persist a network snapshot at the end of every cycle",
    )
    run_lock_ttl_seconds: int = Field(
        default=900,
        alias="INGESTION_RUN_LOCK_TTL_SECONDS",
        ge=30,
        le=86_400,
        description="Expiry of the Redis single-flight lock (covers crashed holders)",
    )


class MetricsSettings(BaseSettings):
    """Derived metric windows."""

    model_config = SettingsConfigDict(env_prefix="METRICS_", extra="ignore")

    credit_window_hours: int = Field(
        default=24,
        alias="METRICS_CREDIT_WINDOW_HOURS",
        ge=1,
        le=24 * 90,
        description="Trailing window for credit deltas",
    )
    fresh_window_seconds: int = Field(
        default=3600,
        alias="METRICS_FRESH_WINDOW_SECONDS",
        ge=60,
        le=7 * 86_400,
        description="A seed observation newer than this counts as fresh in seed visibility",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from pnode_monitor.config import get_settings

        settings = get_settings()
        print(settings.database.url)
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
    prpc: PrpcSettings = Field(
        default_factory=lambda: PrpcSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    seeds: SeedSettings = Field(
        default_factory=lambda: SeedSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    backoff: BackoffSettings = Field(
        default_factory=lambda: BackoffSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    ingestion: IngestionSettings = Field(
        default_factory=lambda: IngestionSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    metrics: MetricsSettings = Field(
        default_factory=lambda: MetricsSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
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
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "prpc": {
                "rpc_path": self.prpc.rpc_path,
                "stats_port": str(self.prpc.stats_port),
                "timeout_seconds": str(self.prpc.timeout_seconds),
            },
            "seeds": {seed.name: seed.base_url for seed in self.seeds.seeds},
            "backoff": {
                "base_seconds": str(self.backoff.base_seconds),
                "cap_exponent": str(self.backoff.cap_exponent),
            },
            "ingestion": {
                "concurrency": str(self.ingestion.concurrency),
                "interval_seconds": str(self.ingestion.interval_seconds),
                "snapshot_enabled": str(self.ingestion.snapshot_enabled),
            },
            "metrics": {
                "credit_window_hours": str(self.metrics.credit_window_hours),
                "fresh_window_seconds": str(self.metrics.fresh_window_seconds),
            },
            "log_level": self.log_level,
        }

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
