"""Repository pattern implementations for data access.

This module provides data access abstractions for seeds, pnodes, gossip
observations, stats samples, credit snapshots, network snapshots and
ingestion runs. Bulk reads (latest-per-peer, distinct-seeds-per-peer,
latest-at-or-before-per-pubkey) are single queries so that views never
issue one round trip per peer.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from pnode_monitor.storage.models import (
    CreditSnapshotModel,
    GossipObservationModel,
    IngestionRunModel,
    IngestionRunSeedStatsModel,
    NetworkCreditsStatModel,
    NetworkSeedVisibilityModel,
    NetworkSnapshotModel,
    NetworkVersionStatModel,
    PnodeModel,
    SeedModel,
    StatsSampleModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def series_step(count: int, limit: int) -> int:
    """Stride that thins ``count`` ordered rows down to at most ``limit``."""
    if limit <= 0:
        raise ValueError("limit must be positive")
    return max(1, math.ceil(count / limit))


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT so ON CONFLICT works on PostgreSQL and SQLite."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


# =============================================================================
# Seeds
# =============================================================================


@dataclass
class SeedDTO:
    """Data transfer object for seeds."""

    id: int
    name: str
    base_url: str
    enabled: bool
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: SeedModel) -> SeedDTO:
        return cls(
            id=model.id,
            name=model.name,
            base_url=model.base_url,
            enabled=model.enabled,
            created_at=model.created_at,
        )


class SeedRepository:
    """Repository for configured seeds."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, name: str, base_url: str) -> None:
        """Insert a seed (enabled) or refresh its name, keyed by base_url."""
        stmt = _insert_for(self.session, SeedModel).values(
            name=name,
            base_url=base_url,
            enabled=True,
            created_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["base_url"],
            set_={"name": stmt.excluded.name},
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def get_by_base_url(self, base_url: str) -> SeedDTO | None:
        result = await self.session.execute(select(SeedModel).where(SeedModel.base_url == base_url))
        model = result.scalar_one_or_none()
        return SeedDTO.from_model(model) if model else None

    async def list_enabled(self) -> list[SeedDTO]:
        result = await self.session.execute(
            select(SeedModel).where(SeedModel.enabled.is_(True)).order_by(SeedModel.id)
        )
        return [SeedDTO.from_model(m) for m in result.scalars().all()]

    async def list_all(self) -> list[SeedDTO]:
        result = await self.session.execute(select(SeedModel).order_by(SeedModel.id))
        return [SeedDTO.from_model(m) for m in result.scalars().all()]

    async def set_enabled(self, base_url: str, enabled: bool) -> bool:
        """Enable or disable a seed. Returns False if no such seed exists."""
        result = await self.session.execute(
            update(SeedModel).where(SeedModel.base_url == base_url).values(enabled=enabled)
        )
        return bool(result.rowcount)


# =============================================================================
# Pnodes
# =============================================================================


@dataclass
class PnodeDTO:
    """Data transfer object for pnodes."""

    id: int
    pubkey: str | None
    reachable: bool = False
    is_public: bool = False
    failure_count: int = 0
    last_error: str | None = None
    last_stats_attempt_at: datetime | None = None
    last_stats_success_at: datetime | None = None
    next_stats_allowed_at: datetime | None = None
    latest_credits: float | None = None
    credits_updated_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: PnodeModel) -> PnodeDTO:
        return cls(
            id=model.id,
            pubkey=model.pubkey,
            reachable=model.reachable,
            is_public=model.is_public,
            failure_count=model.failure_count,
            last_error=model.last_error,
            last_stats_attempt_at=model.last_stats_attempt_at,
            last_stats_success_at=model.last_stats_success_at,
            next_stats_allowed_at=model.next_stats_allowed_at,
            latest_credits=model.latest_credits,
            credits_updated_at=model.credits_updated_at,
            created_at=model.created_at,
        )


class PnodeRepository:
    """Repository for pnode identity and polling state."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_id(self, pnode_id: int) -> PnodeDTO | None:
        model = await self.session.get(PnodeModel, pnode_id)
        return PnodeDTO.from_model(model) if model else None

    async def get_by_pubkey(self, pubkey: str) -> PnodeDTO | None:
        result = await self.session.execute(select(PnodeModel).where(PnodeModel.pubkey == pubkey))
        model = result.scalar_one_or_none()
        return PnodeDTO.from_model(model) if model else None

    async def get_or_create_by_pubkey(self, pubkey: str) -> PnodeDTO:
        """Find-or-create keyed by pubkey; a conflicting insert is a no-op."""
        stmt = _insert_for(self.session, PnodeModel).values(
            pubkey=pubkey,
            reachable=False,
            is_public=False,
            failure_count=0,
            created_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["pubkey"])
        await self.session.execute(stmt)
        await self.session.flush()
        dto = await self.get_by_pubkey(pubkey)
        if dto is None:
            raise RuntimeError(f"pnode {pubkey} missing after insert")
        return dto

    async def create_anonymous(self) -> PnodeDTO:
        model = PnodeModel(pubkey=None, reachable=False, is_public=False, failure_count=0)
        self.session.add(model)
        await self.session.flush()
        return PnodeDTO.from_model(model)

    async def update_fields(self, pnode_id: int, **values: Any) -> PnodeDTO:
        """Apply a single-row update and return the refreshed pnode."""
        model = await self.session.get(PnodeModel, pnode_id)
        if model is None:
            raise LookupError(f"pnode {pnode_id} not found")
        for key, value in values.items():
            setattr(model, key, value)
        await self.session.flush()
        return PnodeDTO.from_model(model)

    async def list_all(self) -> list[PnodeDTO]:
        result = await self.session.execute(select(PnodeModel).order_by(PnodeModel.id))
        return [PnodeDTO.from_model(m) for m in result.scalars().all()]

    async def count(self, *, seed_base_url: str | None = None) -> int:
        stmt = select(func.count()).select_from(PnodeModel)
        if seed_base_url is not None:
            stmt = stmt.where(PnodeModel.id.in_(_observed_by_seed(seed_base_url)))
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def list_page(
        self,
        *,
        limit: int,
        offset: int,
        seed_base_url: str | None = None,
    ) -> list[PnodeDTO]:
        """Page through pnodes ordered by id, optionally only those a seed has reported."""
        stmt = select(PnodeModel)
        if seed_base_url is not None:
            stmt = stmt.where(PnodeModel.id.in_(_observed_by_seed(seed_base_url)))
        stmt = stmt.order_by(PnodeModel.id).offset(offset).limit(limit)
        result = await self.session.execute(stmt)
        return [PnodeDTO.from_model(m) for m in result.scalars().all()]


def _observed_by_seed(seed_base_url: str) -> Any:
    return (
        select(GossipObservationModel.pnode_id)
        .where(GossipObservationModel.seed_base_url == seed_base_url)
        .distinct()
    )


# =============================================================================
# Gossip observations
# =============================================================================


@dataclass
class GossipObservationDTO:
    """Data transfer object for gossip observations."""

    pnode_id: int
    seed_id: int
    seed_base_url: str
    address: str
    observed_at: datetime
    version: str | None = None
    last_seen_timestamp: int | None = None
    storage_committed: int | None = None
    storage_used: int | None = None
    storage_usage_percent: float | None = None
    is_public: bool | None = None
    id: int | None = None

    @classmethod
    def from_model(cls, model: GossipObservationModel) -> GossipObservationDTO:
        return cls(
            id=model.id,
            pnode_id=model.pnode_id,
            seed_id=model.seed_id,
            seed_base_url=model.seed_base_url,
            address=model.address,
            observed_at=model.observed_at,
            version=model.version,
            last_seen_timestamp=model.last_seen_timestamp,
            storage_committed=model.storage_committed,
            storage_used=model.storage_used,
            storage_usage_percent=model.storage_usage_percent,
            is_public=model.is_public,
        )


class GossipObservationRepository:
    """Repository for the append-only gossip observation log."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: GossipObservationDTO) -> GossipObservationDTO:
        model = GossipObservationModel(
            pnode_id=dto.pnode_id,
            seed_id=dto.seed_id,
            seed_base_url=dto.seed_base_url,
            address=dto.address,
            version=dto.version,
            last_seen_timestamp=dto.last_seen_timestamp,
            observed_at=dto.observed_at,
            storage_committed=dto.storage_committed,
            storage_used=dto.storage_used,
            storage_usage_percent=dto.storage_usage_percent,
            is_public=dto.is_public,
        )
        self.session.add(model)
        await self.session.flush()
        return GossipObservationDTO.from_model(model)

    async def latest_by_pnode(
        self,
        pnode_ids: Sequence[int] | None = None,
        *,
        seed_base_url: str | None = None,
    ) -> dict[int, GossipObservationDTO]:
        """Latest observation per pnode (ties broken by insertion order)."""
        rank = (
            func.row_number()
            .over(
                partition_by=GossipObservationModel.pnode_id,
                order_by=(GossipObservationModel.observed_at.desc(), GossipObservationModel.id.desc()),
            )
            .label("rank")
        )
        inner = select(GossipObservationModel.id.label("obs_id"), rank)
        if pnode_ids is not None:
            if not pnode_ids:
                return {}
            inner = inner.where(GossipObservationModel.pnode_id.in_(pnode_ids))
        if seed_base_url is not None:
            inner = inner.where(GossipObservationModel.seed_base_url == seed_base_url)
        ranked = inner.subquery()

        stmt = select(GossipObservationModel).join(
            ranked, GossipObservationModel.id == ranked.c.obs_id
        ).where(ranked.c.rank == 1)
        result = await self.session.execute(stmt)
        return {m.pnode_id: GossipObservationDTO.from_model(m) for m in result.scalars().all()}

    async def seeds_by_pnode(self, pnode_ids: Sequence[int]) -> dict[int, list[str]]:
        """Distinct seed base URLs that have reported each pnode."""
        if not pnode_ids:
            return {}
        stmt = (
            select(GossipObservationModel.pnode_id, GossipObservationModel.seed_base_url)
            .where(GossipObservationModel.pnode_id.in_(pnode_ids))
            .distinct()
            .order_by(GossipObservationModel.pnode_id, GossipObservationModel.seed_base_url)
        )
        result = await self.session.execute(stmt)
        seeds: dict[int, list[str]] = {}
        for pnode_id, seed_base_url in result.all():
            seeds.setdefault(pnode_id, []).append(seed_base_url)
        return seeds

    async def distinct_seed_urls(self, *, pnode_id: int | None = None) -> list[str]:
        stmt = select(GossipObservationModel.seed_base_url).distinct()
        if pnode_id is not None:
            stmt = stmt.where(GossipObservationModel.pnode_id == pnode_id)
        result = await self.session.execute(stmt.order_by(GossipObservationModel.seed_base_url))
        return list(result.scalars().all())

    async def last_observed_by_seed(self) -> dict[str, dict[int, datetime]]:
        """For every seed, the most recent observation time of every pnode it reported."""
        stmt = select(
            GossipObservationModel.seed_base_url,
            GossipObservationModel.pnode_id,
            func.max(GossipObservationModel.observed_at),
        ).group_by(GossipObservationModel.seed_base_url, GossipObservationModel.pnode_id)
        result = await self.session.execute(stmt)
        latest: dict[str, dict[int, datetime]] = {}
        for seed_base_url, pnode_id, observed_at in result.all():
            latest.setdefault(seed_base_url, {})[pnode_id] = observed_at
        return latest

    async def observed_times_since(
        self, pnode_id: int, since: datetime, *, limit: int = 500
    ) -> list[datetime]:
        stmt = (
            select(GossipObservationModel.observed_at)
            .where(
                GossipObservationModel.pnode_id == pnode_id,
                GossipObservationModel.observed_at >= since,
            )
            .order_by(GossipObservationModel.observed_at.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_for_pnode(self, pnode_id: int) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(GossipObservationModel)
            .where(GossipObservationModel.pnode_id == pnode_id)
        )
        return int(result.scalar_one())


# =============================================================================
# Stats samples
# =============================================================================


@dataclass
class StatsSampleDTO:
    """Data transfer object for stats samples."""

    pnode_id: int
    timestamp: datetime
    seed_id: int | None = None
    seed_base_url: str | None = None
    cpu_percent: float | None = None
    ram_used_bytes: int | None = None
    ram_total_bytes: int | None = None
    uptime_seconds: int | None = None
    packets_in_per_sec: float | None = None
    packets_out_per_sec: float | None = None
    active_streams: int | None = None
    total_bytes: int | None = None
    total_pages: int | None = None
    id: int | None = None

    @classmethod
    def from_model(cls, model: StatsSampleModel) -> StatsSampleDTO:
        return cls(
            id=model.id,
            pnode_id=model.pnode_id,
            timestamp=model.timestamp,
            seed_id=model.seed_id,
            seed_base_url=model.seed_base_url,
            cpu_percent=model.cpu_percent,
            ram_used_bytes=model.ram_used_bytes,
            ram_total_bytes=model.ram_total_bytes,
            uptime_seconds=model.uptime_seconds,
            packets_in_per_sec=model.packets_in_per_sec,
            packets_out_per_sec=model.packets_out_per_sec,
            active_streams=model.active_streams,
            total_bytes=model.total_bytes,
            total_pages=model.total_pages,
        )


@dataclass
class SampleWindow:
    """Sample count and first/last timestamps for one pnode within a window."""

    count: int
    first: datetime | None
    last: datetime | None


class StatsSampleRepository:
    """Repository for the append-only stats sample log."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: StatsSampleDTO) -> StatsSampleDTO:
        model = StatsSampleModel(
            pnode_id=dto.pnode_id,
            seed_id=dto.seed_id,
            seed_base_url=dto.seed_base_url,
            timestamp=dto.timestamp,
            cpu_percent=dto.cpu_percent,
            ram_used_bytes=dto.ram_used_bytes,
            ram_total_bytes=dto.ram_total_bytes,
            uptime_seconds=dto.uptime_seconds,
            packets_in_per_sec=dto.packets_in_per_sec,
            packets_out_per_sec=dto.packets_out_per_sec,
            active_streams=dto.active_streams,
            total_bytes=dto.total_bytes,
            total_pages=dto.total_pages,
        )
        self.session.add(model)
        await self.session.flush()
        return StatsSampleDTO.from_model(model)

    async def latest_by_pnode(self, pnode_ids: Sequence[int] | None = None) -> dict[int, StatsSampleDTO]:
        """Latest sample per pnode."""
        rank = (
            func.row_number()
            .over(
                partition_by=StatsSampleModel.pnode_id,
                order_by=(StatsSampleModel.timestamp.desc(), StatsSampleModel.id.desc()),
            )
            .label("rank")
        )
        inner = select(StatsSampleModel.id.label("sample_id"), rank)
        if pnode_ids is not None:
            if not pnode_ids:
                return {}
            inner = inner.where(StatsSampleModel.pnode_id.in_(pnode_ids))
        ranked = inner.subquery()

        stmt = select(StatsSampleModel).join(ranked, StatsSampleModel.id == ranked.c.sample_id).where(
            ranked.c.rank == 1
        )
        result = await self.session.execute(stmt)
        return {m.pnode_id: StatsSampleDTO.from_model(m) for m in result.scalars().all()}

    async def window(self, pnode_id: int, since: datetime) -> SampleWindow:
        """Count and first/last timestamps of a pnode's samples at or after ``since``."""
        stmt = select(
            func.count(StatsSampleModel.id),
            func.min(StatsSampleModel.timestamp),
            func.max(StatsSampleModel.timestamp),
        ).where(
            StatsSampleModel.pnode_id == pnode_id,
            StatsSampleModel.timestamp >= since,
        )
        result = await self.session.execute(stmt)
        count, first, last = result.one()
        if not count:
            return SampleWindow(count=0, first=None, last=None)
        return SampleWindow(count=int(count), first=first, last=last)

    async def list_since(self, pnode_id: int, since: datetime, *, limit: int) -> list[StatsSampleDTO]:
        stmt = (
            select(StatsSampleModel)
            .where(StatsSampleModel.pnode_id == pnode_id, StatsSampleModel.timestamp >= since)
            .order_by(StatsSampleModel.timestamp.asc(), StatsSampleModel.id.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [StatsSampleDTO.from_model(m) for m in result.scalars().all()]

    async def count_for_pnode(self, pnode_id: int) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(StatsSampleModel).where(StatsSampleModel.pnode_id == pnode_id)
        )
        return int(result.scalar_one())


# =============================================================================
# Credit snapshots
# =============================================================================


@dataclass
class CreditSnapshotDTO:
    """Data transfer object for credit snapshots."""

    pod_pubkey: str
    credits: float
    observed_at: datetime

    @classmethod
    def from_model(cls, model: CreditSnapshotModel) -> CreditSnapshotDTO:
        return cls(
            pod_pubkey=model.pod_pubkey,
            credits=model.credits,
            observed_at=model.observed_at,
        )


class CreditSnapshotRepository:
    """Repository for the append-only credit snapshot series."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: CreditSnapshotDTO) -> None:
        """Append a snapshot; a repeat for the same (pubkey, observed_at) is ignored."""
        stmt = _insert_for(self.session, CreditSnapshotModel).values(
            pod_pubkey=dto.pod_pubkey,
            credits=dto.credits,
            observed_at=dto.observed_at,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["pod_pubkey", "observed_at"])
        await self.session.execute(stmt)

    async def latest_by_pubkey(
        self,
        pubkeys: Iterable[str],
        *,
        at_or_before: datetime | None = None,
    ) -> dict[str, CreditSnapshotDTO]:
        """Most recent snapshot per pubkey, optionally restricted to ``observed_at <= at_or_before``."""
        keys = list(pubkeys)
        if not keys:
            return {}
        rank = (
            func.row_number()
            .over(
                partition_by=CreditSnapshotModel.pod_pubkey,
                order_by=(CreditSnapshotModel.observed_at.desc(), CreditSnapshotModel.id.desc()),
            )
            .label("rank")
        )
        inner = select(CreditSnapshotModel.id.label("snapshot_id"), rank).where(
            CreditSnapshotModel.pod_pubkey.in_(keys)
        )
        if at_or_before is not None:
            inner = inner.where(CreditSnapshotModel.observed_at <= at_or_before)
        ranked = inner.subquery()

        stmt = select(CreditSnapshotModel).join(
            ranked, CreditSnapshotModel.id == ranked.c.snapshot_id
        ).where(ranked.c.rank == 1)
        result = await self.session.execute(stmt)
        return {m.pod_pubkey: CreditSnapshotDTO.from_model(m) for m in result.scalars().all()}

    async def series(self, pubkey: str, since: datetime, *, limit: int) -> list[CreditSnapshotDTO]:
        """Snapshots since ``since``, oldest first, thinned to at most ``limit``.

        Every k-th snapshot counted back from the newest is kept, so the
        series spans the whole window and always ends at the latest value.
        """
        in_window = (CreditSnapshotModel.pod_pubkey == pubkey, CreditSnapshotModel.observed_at >= since)
        count = await self.session.scalar(select(func.count(CreditSnapshotModel.id)).where(*in_window))
        if not count:
            return []
        step = series_step(int(count), limit)

        rank = (
            func.row_number()
            .over(order_by=(CreditSnapshotModel.observed_at.desc(), CreditSnapshotModel.id.desc()))
            .label("rank")
        )
        ranked = select(CreditSnapshotModel.id.label("snapshot_id"), rank).where(*in_window).subquery()
        stmt = (
            select(CreditSnapshotModel)
            .join(ranked, CreditSnapshotModel.id == ranked.c.snapshot_id)
            .where((ranked.c.rank - 1) % step == 0)
            .order_by(CreditSnapshotModel.observed_at.asc(), CreditSnapshotModel.id.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [CreditSnapshotDTO.from_model(m) for m in result.scalars().all()]


# =============================================================================
# Network snapshots
# =============================================================================


@dataclass
class VersionStatDTO:
    version: str
    node_count: int


@dataclass
class SeedVisibilityDTO:
    seed_base_url: str
    nodes_seen: int
    fresh_nodes: int
    stale_nodes: int
    offline_nodes: int


@dataclass
class NetworkSnapshotDTO:
    """Data transfer object for a network snapshot and its child rows."""

    created_at: datetime
    total_nodes: int
    reachable_nodes: int
    unreachable_nodes: int
    reachable_percent: float
    median_uptime_seconds: float | None
    p90_uptime_seconds: float | None
    total_storage_committed: int
    total_storage_used: int
    nodes_backed_off: int
    nodes_failing_stats: int
    ingestion_run_id: int | None = None
    version_stats: list[VersionStatDTO] = field(default_factory=list)
    seed_visibility: list[SeedVisibilityDTO] = field(default_factory=list)
    median_credits: float | None = None
    p90_credits: float | None = None
    has_credits_stat: bool = False
    id: int | None = None


@dataclass
class NetworkSeriesPointDTO:
    created_at: datetime
    total_nodes: int
    median_uptime_seconds: float | None
    total_storage_committed: int


class NetworkSnapshotRepository:
    """Repository for persisted network snapshots."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: NetworkSnapshotDTO) -> int:
        model = NetworkSnapshotModel(
            ingestion_run_id=dto.ingestion_run_id,
            created_at=dto.created_at,
            total_nodes=dto.total_nodes,
            reachable_nodes=dto.reachable_nodes,
            unreachable_nodes=dto.unreachable_nodes,
            reachable_percent=dto.reachable_percent,
            median_uptime_seconds=dto.median_uptime_seconds,
            p90_uptime_seconds=dto.p90_uptime_seconds,
            total_storage_committed=dto.total_storage_committed,
            total_storage_used=dto.total_storage_used,
            nodes_backed_off=dto.nodes_backed_off,
            nodes_failing_stats=dto.nodes_failing_stats,
        )
        self.session.add(model)
        await self.session.flush()

        for vs in dto.version_stats:
            self.session.add(
                NetworkVersionStatModel(snapshot_id=model.id, version=vs.version, node_count=vs.node_count)
            )
        for sv in dto.seed_visibility:
            self.session.add(
                NetworkSeedVisibilityModel(
                    snapshot_id=model.id,
                    seed_base_url=sv.seed_base_url,
                    nodes_seen=sv.nodes_seen,
                    fresh_nodes=sv.fresh_nodes,
                    stale_nodes=sv.stale_nodes,
                    offline_nodes=sv.offline_nodes,
                )
            )
        if dto.has_credits_stat:
            self.session.add(
                NetworkCreditsStatModel(
                    snapshot_id=model.id,
                    median_credits=dto.median_credits,
                    p90_credits=dto.p90_credits,
                )
            )
        await self.session.flush()
        return model.id

    async def latest(self) -> NetworkSnapshotDTO | None:
        result = await self.session.execute(
            select(NetworkSnapshotModel)
            .order_by(NetworkSnapshotModel.created_at.desc(), NetworkSnapshotModel.id.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        if model is None:
            return None

        versions = await self.session.execute(
            select(NetworkVersionStatModel)
            .where(NetworkVersionStatModel.snapshot_id == model.id)
            .order_by(NetworkVersionStatModel.node_count.desc(), NetworkVersionStatModel.version)
        )
        visibility = await self.session.execute(
            select(NetworkSeedVisibilityModel)
            .where(NetworkSeedVisibilityModel.snapshot_id == model.id)
            .order_by(NetworkSeedVisibilityModel.seed_base_url)
        )
        credits_stat = await self.session.get(NetworkCreditsStatModel, model.id)

        return NetworkSnapshotDTO(
            id=model.id,
            ingestion_run_id=model.ingestion_run_id,
            created_at=model.created_at,
            total_nodes=model.total_nodes,
            reachable_nodes=model.reachable_nodes,
            unreachable_nodes=model.unreachable_nodes,
            reachable_percent=model.reachable_percent,
            median_uptime_seconds=model.median_uptime_seconds,
            p90_uptime_seconds=model.p90_uptime_seconds,
            total_storage_committed=model.total_storage_committed,
            total_storage_used=model.total_storage_used,
            nodes_backed_off=model.nodes_backed_off,
            nodes_failing_stats=model.nodes_failing_stats,
            version_stats=[VersionStatDTO(version=v.version, node_count=v.node_count) for v in versions.scalars()],
            seed_visibility=[
                SeedVisibilityDTO(
                    seed_base_url=v.seed_base_url,
                    nodes_seen=v.nodes_seen,
                    fresh_nodes=v.fresh_nodes,
                    stale_nodes=v.stale_nodes,
                    offline_nodes=v.offline_nodes,
                )
                for v in visibility.scalars()
            ],
            median_credits=credits_stat.median_credits if credits_stat else None,
            p90_credits=credits_stat.p90_credits if credits_stat else None,
            has_credits_stat=credits_stat is not None,
        )

    async def series(self, since: datetime, *, limit: int) -> list[NetworkSeriesPointDTO]:
        """Trend points since ``since``, oldest first, thinned to at most ``limit``.

        The newest snapshot is always the last point.
        """
        count = await self.session.scalar(
            select(func.count(NetworkSnapshotModel.id)).where(NetworkSnapshotModel.created_at >= since)
        )
        if not count:
            return []
        step = series_step(int(count), limit)

        rank = (
            func.row_number()
            .over(order_by=(NetworkSnapshotModel.created_at.desc(), NetworkSnapshotModel.id.desc()))
            .label("rank")
        )
        ranked = (
            select(NetworkSnapshotModel.id.label("snapshot_id"), rank)
            .where(NetworkSnapshotModel.created_at >= since)
            .subquery()
        )
        stmt = (
            select(
                NetworkSnapshotModel.created_at,
                NetworkSnapshotModel.total_nodes,
                NetworkSnapshotModel.median_uptime_seconds,
                NetworkSnapshotModel.total_storage_committed,
            )
            .join(ranked, NetworkSnapshotModel.id == ranked.c.snapshot_id)
            .where((ranked.c.rank - 1) % step == 0)
            .order_by(NetworkSnapshotModel.created_at.asc(), NetworkSnapshotModel.id.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [
            NetworkSeriesPointDTO(
                created_at=row.created_at,
                total_nodes=row.total_nodes,
                median_uptime_seconds=row.median_uptime_seconds,
                total_storage_committed=row.total_storage_committed,
            )
            for row in result.all()
        ]


# =============================================================================
# Ingestion runs
# =============================================================================


@dataclass
class RunCounters:
    """Attempted/success/backoff/failed/observed counters for a run or one seed."""

    attempted: int = 0
    success: int = 0
    backoff: int = 0
    failed: int = 0
    observed: int = 0


@dataclass
class IngestionRunDTO:
    """Data transfer object for ingestion runs."""

    id: int
    started_at: datetime
    finished_at: datetime | None
    seeds_count: int
    counters: RunCounters

    @property
    def is_running(self) -> bool:
        return self.finished_at is None

    @classmethod
    def from_model(cls, model: IngestionRunModel) -> IngestionRunDTO:
        return cls(
            id=model.id,
            started_at=model.started_at,
            finished_at=model.finished_at,
            seeds_count=model.seeds_count,
            counters=RunCounters(
                attempted=model.attempted,
                success=model.success,
                backoff=model.backoff,
                failed=model.failed,
                observed=model.observed,
            ),
        )


class IngestionRunRepository:
    """Repository for ingestion run records."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, started_at: datetime) -> IngestionRunDTO:
        model = IngestionRunModel(started_at=started_at, finished_at=None)
        self.session.add(model)
        await self.session.flush()
        return IngestionRunDTO.from_model(model)

    async def finish(
        self,
        run_id: int,
        *,
        finished_at: datetime,
        seeds_count: int,
        counters: RunCounters,
        seed_counters: dict[str, RunCounters],
    ) -> None:
        await self.session.execute(
            update(IngestionRunModel)
            .where(IngestionRunModel.id == run_id)
            .values(
                finished_at=finished_at,
                seeds_count=seeds_count,
                attempted=counters.attempted,
                success=counters.success,
                backoff=counters.backoff,
                failed=counters.failed,
                observed=counters.observed,
            )
        )
        for seed_base_url, c in seed_counters.items():
            self.session.add(
                IngestionRunSeedStatsModel(
                    ingestion_run_id=run_id,
                    seed_base_url=seed_base_url,
                    attempted=c.attempted,
                    success=c.success,
                    backoff=c.backoff,
                    failed=c.failed,
                    observed=c.observed,
                )
            )
        await self.session.flush()

    async def latest(self, *, finished_only: bool = False) -> IngestionRunDTO | None:
        stmt = select(IngestionRunModel)
        if finished_only:
            stmt = stmt.where(IngestionRunModel.finished_at.is_not(None))
        stmt = stmt.order_by(IngestionRunModel.started_at.desc(), IngestionRunModel.id.desc()).limit(1)
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return IngestionRunDTO.from_model(model) if model else None

    async def seed_counters(self, run_id: int, seed_base_url: str) -> RunCounters | None:
        result = await self.session.execute(
            select(IngestionRunSeedStatsModel).where(
                IngestionRunSeedStatsModel.ingestion_run_id == run_id,
                IngestionRunSeedStatsModel.seed_base_url == seed_base_url,
            )
        )
        model = result.scalar_one_or_none()
        if model is None:
            return None
        return RunCounters(
            attempted=model.attempted,
            success=model.success,
            backoff=model.backoff,
            failed=model.failed,
            observed=model.observed,
        )
