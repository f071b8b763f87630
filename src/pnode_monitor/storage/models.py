"""SQLAlchemy models for persistent storage.

This module defines the database schema for seeds, pnodes, gossip
observations, stats samples, credit snapshots, network snapshots and
ingestion runs.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from pnode_monitor.storage.types import UTCDateTime


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class SeedModel(Base):
    """Configured discovery entry point."""

    __tablename__ = "seeds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    base_url: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)


class PnodeModel(Base):
    """A discovered network participant and its polling state.

    ``pubkey`` is unique when present; rows without one are anonymous and
    never merged.
    """

    __tablename__ = "pnodes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pubkey: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)

    reachable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    last_stats_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_stats_success_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    next_stats_allowed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    latest_credits: Mapped[float | None] = mapped_column(Float, nullable=True)
    credits_updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)

    __table_args__ = (Index("idx_pnodes_next_stats_allowed_at", "next_stats_allowed_at"),)


class GossipObservationModel(Base):
    """One seed's report of one pnode at one point in time (append-only)."""

    __tablename__ = "gossip_observations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pnode_id: Mapped[int] = mapped_column(Integer, nullable=False)
    seed_id: Mapped[int] = mapped_column(Integer, nullable=False)
    seed_base_url: Mapped[str] = mapped_column(String(255), nullable=False)

    address: Mapped[str] = mapped_column(String(255), nullable=False)  # "ip:port" as gossiped
    version: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_seen_timestamp: Mapped[int | None] = mapped_column(BigInteger, nullable=True)  # epoch seconds
    observed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    storage_committed: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    storage_used: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    storage_usage_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_public: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    __table_args__ = (
        Index("idx_gossip_observations_pnode_ts", "pnode_id", "observed_at"),
        Index("idx_gossip_observations_seed_ts", "seed_base_url", "observed_at"),
        Index("idx_gossip_observations_pnode_seed", "pnode_id", "seed_base_url"),
    )


class StatsSampleModel(Base):
    """Payload of a successful get-stats poll (append-only)."""

    __tablename__ = "stats_samples"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pnode_id: Mapped[int] = mapped_column(Integer, nullable=False)
    seed_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    seed_base_url: Mapped[str | None] = mapped_column(String(255), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    cpu_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    ram_used_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    ram_total_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    uptime_seconds: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    packets_in_per_sec: Mapped[float | None] = mapped_column(Float, nullable=True)
    packets_out_per_sec: Mapped[float | None] = mapped_column(Float, nullable=True)
    active_streams: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    total_pages: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (Index("idx_stats_samples_pnode_ts", "pnode_id", "timestamp"),)


class CreditSnapshotModel(Base):
    """A pnode credit balance at an observation time (append-only)."""

    __tablename__ = "credit_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pod_pubkey: Mapped[str] = mapped_column(String(128), nullable=False)
    credits: Mapped[float] = mapped_column(Float, nullable=False)
    observed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        UniqueConstraint("pod_pubkey", "observed_at", name="uq_credit_snapshots_pubkey_ts"),
        Index("idx_credit_snapshots_pubkey_ts", "pod_pubkey", "observed_at"),
    )


class NetworkSnapshotModel(Base):
    """Point-in-time network aggregate; superseded, never overwritten."""

    __tablename__ = "network_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ingestion_run_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    total_nodes: Mapped[int] = mapped_column(Integer, nullable=False)
    reachable_nodes: Mapped[int] = mapped_column(Integer, nullable=False)
    unreachable_nodes: Mapped[int] = mapped_column(Integer, nullable=False)
    reachable_percent: Mapped[float] = mapped_column(Float, nullable=False)
    median_uptime_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    p90_uptime_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_storage_committed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_storage_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    nodes_backed_off: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    nodes_failing_stats: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (Index("idx_network_snapshots_created_at", "created_at"),)


class NetworkVersionStatModel(Base):
    __tablename__ = "network_version_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[int] = mapped_column(Integer, nullable=False)
    version: Mapped[str] = mapped_column(String(64), nullable=False)
    node_count: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (Index("idx_network_version_stats_snapshot", "snapshot_id"),)


class NetworkSeedVisibilityModel(Base):
    __tablename__ = "network_seed_visibility"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[int] = mapped_column(Integer, nullable=False)
    seed_base_url: Mapped[str] = mapped_column(String(255), nullable=False)
    nodes_seen: Mapped[int] = mapped_column(Integer, nullable=False)
    fresh_nodes: Mapped[int] = mapped_column(Integer, nullable=False)
    stale_nodes: Mapped[int] = mapped_column(Integer, nullable=False)
    offline_nodes: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (Index("idx_network_seed_visibility_snapshot", "snapshot_id"),)


class NetworkCreditsStatModel(Base):
    __tablename__ = "network_credits_stats"

    snapshot_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    median_credits: Mapped[float | None] = mapped_column(Float, nullable=True)
    p90_credits: Mapped[float | None] = mapped_column(Float, nullable=True)


class IngestionRunModel(Base):
    """One coordinator cycle. ``finished_at`` is null while the cycle runs."""

    __tablename__ = "ingestion_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    seeds_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    backoff: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    observed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (Index("idx_ingestion_runs_started_at", "started_at"),)


class IngestionRunSeedStatsModel(Base):
    __tablename__ = "ingestion_run_seed_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ingestion_run_id: Mapped[int] = mapped_column(Integer, nullable=False)
    seed_base_url: Mapped[str] = mapped_column(String(255), nullable=False)

    attempted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    backoff: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    observed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("ingestion_run_id", "seed_base_url", name="uq_ingestion_run_seed_stats"),
    )
