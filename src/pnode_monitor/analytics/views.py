"""Read-only views over the ingestion store.

These back status strips, network dashboards, peer tables and per-peer
drawers. None of them write.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from pnode_monitor.analytics.aggregator import (
    CONTINUITY_WINDOWS,
    DEFAULT_CREDIT_WINDOW,
    GossipGap,
    compute_credit_deltas,
    find_gossip_gaps,
    normalize_usage_percent,
    success_rate,
    uptime_continuity,
)
from pnode_monitor.storage.database import DatabaseManager
from pnode_monitor.storage.repos import (
    CreditSnapshotRepository,
    GossipObservationDTO,
    GossipObservationRepository,
    IngestionRunRepository,
    NetworkSeriesPointDTO,
    NetworkSnapshotDTO,
    NetworkSnapshotRepository,
    PnodeRepository,
    RunCounters,
    StatsSampleDTO,
    StatsSampleRepository,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 500

NETWORK_SERIES_7D_LIMIT = 150
NETWORK_SERIES_20D_LIMIT = 200
CREDIT_SERIES_7D_LIMIT = 150
CREDIT_SERIES_20D_LIMIT = 200
UPTIME_TIMELINE_LIMIT = 50
STORAGE_HISTORY_LIMIT = 50
GOSSIP_OBSERVATION_LIMIT = 500


def _utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Run status
# =============================================================================


@dataclass
class RunStatus:
    """Latest run timing plus the counters of the last completed run."""

    last_run_started_at: datetime | None
    last_run_finished_at: datetime | None
    attempted: int
    success: int
    backoff: int
    failed: int
    observed: int
    is_running: bool


async def get_run_status(db: DatabaseManager, seed_base_url: str | None = None) -> RunStatus:
    """Status of ingestion, globally or for one seed.

    ``is_running`` is true exactly while the latest run has no finish time.
    While a run is in progress the counters come from the previous
    completed run. A seed without recorded counters reports zeros.
    """
    async with db.get_async_session() as session:
        runs = IngestionRunRepository(session)
        latest = await runs.latest()
        if latest is None:
            return RunStatus(None, None, 0, 0, 0, 0, 0, False)

        completed = latest if not latest.is_running else await runs.latest(finished_only=True)
        counters = RunCounters()
        if completed is not None:
            if seed_base_url is None:
                counters = completed.counters
            else:
                counters = await runs.seed_counters(completed.id, seed_base_url) or RunCounters()

    return RunStatus(
        last_run_started_at=latest.started_at,
        last_run_finished_at=latest.finished_at,
        attempted=counters.attempted,
        success=counters.success,
        backoff=max(0, counters.backoff),
        failed=counters.failed,
        observed=counters.observed,
        is_running=latest.is_running,
    )


# =============================================================================
# Network snapshot
# =============================================================================


@dataclass
class VersionShare:
    version: str
    node_count: int
    percentage: float


@dataclass
class NetworkSnapshotView:
    snapshot: NetworkSnapshotDTO
    version_shares: list[VersionShare]
    time_series_7d: list[NetworkSeriesPointDTO]
    time_series_20d: list[NetworkSeriesPointDTO]


async def get_latest_network_snapshot(
    db: DatabaseManager,
    *,
    clock: Callable[[], datetime] = _utcnow,
) -> NetworkSnapshotView | None:
    now = clock()
    async with db.get_async_session() as session:
        repo = NetworkSnapshotRepository(session)
        snapshot = await repo.latest()
        if snapshot is None:
            return None
        series_7d = await repo.series(now - timedelta(days=7), limit=NETWORK_SERIES_7D_LIMIT)
        series_20d = await repo.series(now - timedelta(days=20), limit=NETWORK_SERIES_20D_LIMIT)

    total = snapshot.total_nodes
    shares = [
        VersionShare(
            version=vs.version,
            node_count=vs.node_count,
            percentage=(vs.node_count / total * 100) if total > 0 else 0.0,
        )
        for vs in snapshot.version_stats
    ]
    return NetworkSnapshotView(
        snapshot=snapshot,
        version_shares=shares,
        time_series_7d=series_7d,
        time_series_20d=series_20d,
    )


# =============================================================================
# Peer view
# =============================================================================


@dataclass
class LatestStats:
    timestamp: datetime
    uptime_seconds: int | None
    packets_in_per_sec: float | None
    packets_out_per_sec: float | None
    total_bytes: int | None
    active_streams: int | None

    @classmethod
    def from_sample(cls, sample: StatsSampleDTO) -> "LatestStats":
        return cls(
            timestamp=sample.timestamp,
            uptime_seconds=sample.uptime_seconds,
            packets_in_per_sec=sample.packets_in_per_sec,
            packets_out_per_sec=sample.packets_out_per_sec,
            total_bytes=sample.total_bytes,
            active_streams=sample.active_streams,
        )


@dataclass
class PeerSummary:
    """One row of the peer table."""

    id: int
    pubkey: str | None
    is_public: bool
    reachable: bool
    failure_count: int
    last_stats_attempt_at: datetime | None
    last_stats_success_at: datetime | None
    next_stats_allowed_at: datetime | None
    latest_address: str | None
    latest_version: str | None
    gossip_last_seen: datetime | None
    seed_base_urls_seen: list[str]
    seeds_seen_count: int
    latest_stats: LatestStats | None
    storage_usage_percent: float | None
    storage_committed: int | None
    latest_credits: float | None
    credits_updated_at: datetime | None
    credit_delta_24h: float | None


@dataclass
class PeerPage:
    pnodes: list[PeerSummary]
    total: int
    limit: int
    offset: int


def _gossip_last_seen(gossip: GossipObservationDTO | None) -> datetime | None:
    if gossip is None:
        return None
    if gossip.last_seen_timestamp is not None:
        return datetime.fromtimestamp(gossip.last_seen_timestamp, tz=UTC)
    return gossip.observed_at


async def get_peer_view(
    db: DatabaseManager,
    limit: int = DEFAULT_PAGE_LIMIT,
    offset: int = 0,
    seed_base_url: str | None = None,
    *,
    credit_window: timedelta = DEFAULT_CREDIT_WINDOW,
    clock: Callable[[], datetime] = _utcnow,
) -> PeerPage:
    """Page of pnodes (ordered by id) with latest gossip, stats and credit delta.

    With ``seed_base_url`` only pnodes that seed has reported are listed and
    gossip-derived fields come from that seed's latest observation.
    """
    limit = max(1, min(limit, MAX_PAGE_LIMIT))
    offset = max(0, offset)
    now = clock()

    async with db.get_async_session() as session:
        pnode_repo = PnodeRepository(session)
        gossip_repo = GossipObservationRepository(session)

        total = await pnode_repo.count(seed_base_url=seed_base_url)
        pnodes = await pnode_repo.list_page(limit=limit, offset=offset, seed_base_url=seed_base_url)
        ids = [p.id for p in pnodes]

        latest_gossip = await gossip_repo.latest_by_pnode(ids, seed_base_url=seed_base_url)
        seeds_seen = await gossip_repo.seeds_by_pnode(ids)
        latest_stats = await StatsSampleRepository(session).latest_by_pnode(ids)
        deltas = await compute_credit_deltas(
            session,
            [p.pubkey for p in pnodes if p.pubkey is not None],
            now,
            credit_window,
        )

    rows: list[PeerSummary] = []
    for p in pnodes:
        gossip = latest_gossip.get(p.id)
        sample = latest_stats.get(p.id)
        seed_urls = seeds_seen.get(p.id, [])
        rows.append(
            PeerSummary(
                id=p.id,
                pubkey=p.pubkey,
                is_public=p.is_public,
                reachable=p.reachable,
                failure_count=p.failure_count,
                last_stats_attempt_at=p.last_stats_attempt_at,
                last_stats_success_at=p.last_stats_success_at,
                next_stats_allowed_at=p.next_stats_allowed_at,
                latest_address=gossip.address if gossip else None,
                latest_version=gossip.version if gossip else None,
                gossip_last_seen=_gossip_last_seen(gossip),
                seed_base_urls_seen=seed_urls,
                seeds_seen_count=len(seed_urls),
                latest_stats=LatestStats.from_sample(sample) if sample else None,
                storage_usage_percent=normalize_usage_percent(gossip.storage_usage_percent) if gossip else None,
                storage_committed=gossip.storage_committed if gossip else None,
                latest_credits=p.latest_credits,
                credits_updated_at=p.credits_updated_at,
                credit_delta_24h=deltas.get(p.pubkey) if p.pubkey else None,
            )
        )
    return PeerPage(pnodes=rows, total=total, limit=limit, offset=offset)


# =============================================================================
# Peer details
# =============================================================================


@dataclass
class NodeMeta:
    pubkey: str
    version: str | None
    is_public: bool
    latest_address: str | None


@dataclass
class CreditPoint:
    timestamp: datetime
    credits: float


@dataclass
class CreditsDetail:
    current: float | None
    delta_24h: float | None
    series_7d: list[CreditPoint]
    series_20d: list[CreditPoint]


@dataclass
class UptimeDetail:
    continuity: dict[str, float]
    timeline: list[datetime]


@dataclass
class SuccessRateDetail:
    rate_24h: float
    failures: list[datetime]


@dataclass
class StoragePoint:
    timestamp: datetime
    used: int | None


@dataclass
class StorageDetail:
    committed: int | None
    used: int | None
    used_percent: float | None
    history: list[StoragePoint]


@dataclass
class GossipDetail:
    seeds_seen: int
    seed_total: int
    gaps: list[GossipGap] = field(default_factory=list)


@dataclass
class PeerDetails:
    node_meta: NodeMeta
    credits: CreditsDetail
    uptime: UptimeDetail
    success_rate: SuccessRateDetail
    storage: StorageDetail
    gossip: GossipDetail


async def get_peer_details(
    db: DatabaseManager,
    pubkey: str,
    *,
    credit_window: timedelta = DEFAULT_CREDIT_WINDOW,
    clock: Callable[[], datetime] = _utcnow,
) -> PeerDetails | None:
    """Deep single-pnode view, or None if the pubkey is unknown."""
    now = clock()
    day_ago = now - timedelta(hours=24)
    week_ago = now - timedelta(days=7)

    async with db.get_async_session() as session:
        pnode = await PnodeRepository(session).get_by_pubkey(pubkey)
        if pnode is None:
            return None

        gossip_repo = GossipObservationRepository(session)
        samples = StatsSampleRepository(session)
        credit_repo = CreditSnapshotRepository(session)

        latest_gossip = (await gossip_repo.latest_by_pnode([pnode.id])).get(pnode.id)

        series_7d = await credit_repo.series(pubkey, week_ago, limit=CREDIT_SERIES_7D_LIMIT)
        series_20d = await credit_repo.series(pubkey, now - timedelta(days=20), limit=CREDIT_SERIES_20D_LIMIT)
        latest_credit = (await credit_repo.latest_by_pubkey([pubkey])).get(pubkey)
        delta = (await compute_credit_deltas(session, [pubkey], now, credit_window)).get(pubkey)

        windows = {name: await samples.window(pnode.id, now - span) for name, span in CONTINUITY_WINDOWS.items()}
        timeline = await samples.list_since(pnode.id, day_ago, limit=UPTIME_TIMELINE_LIMIT)
        history = await samples.list_since(pnode.id, week_ago, limit=STORAGE_HISTORY_LIMIT)
        latest_sample = (await samples.latest_by_pnode([pnode.id])).get(pnode.id)

        seed_total = len(await gossip_repo.distinct_seed_urls())
        seeds_seen = len(await gossip_repo.distinct_seed_urls(pnode_id=pnode.id))
        observed_at = await gossip_repo.observed_times_since(pnode.id, week_ago, limit=GOSSIP_OBSERVATION_LIMIT)

    is_public = latest_gossip.is_public if latest_gossip and latest_gossip.is_public is not None else pnode.is_public

    current = pnode.latest_credits
    if current is None and latest_credit is not None:
        current = latest_credit.credits

    continuity = {name: uptime_continuity(w.first, w.last, CONTINUITY_WINDOWS[name]) for name, w in windows.items()}

    failures: list[datetime] = []
    if pnode.failure_count > 0:
        failures.append(pnode.last_stats_attempt_at or now)

    committed: int | None = None
    used: int | None = None
    used_percent: float | None = None
    if latest_gossip is not None:
        committed = latest_gossip.storage_committed
        used = latest_gossip.storage_used
        used_percent = normalize_usage_percent(latest_gossip.storage_usage_percent)
    if committed is None and latest_sample is not None:
        committed = latest_sample.total_bytes
    if used_percent is None and used is not None and committed:
        used_percent = used / committed * 100

    return PeerDetails(
        node_meta=NodeMeta(
            pubkey=pubkey,
            version=latest_gossip.version if latest_gossip else None,
            is_public=is_public,
            latest_address=latest_gossip.address if latest_gossip else None,
        ),
        credits=CreditsDetail(
            current=current,
            delta_24h=delta,
            series_7d=[CreditPoint(timestamp=s.observed_at, credits=s.credits) for s in series_7d],
            series_20d=[CreditPoint(timestamp=s.observed_at, credits=s.credits) for s in series_20d],
        ),
        uptime=UptimeDetail(continuity=continuity, timeline=[s.timestamp for s in timeline]),
        success_rate=SuccessRateDetail(
            rate_24h=success_rate(windows["h24"].count, pnode.failure_count, is_public),
            failures=failures,
        ),
        storage=StorageDetail(
            committed=committed,
            used=used,
            used_percent=used_percent,
            history=[StoragePoint(timestamp=s.timestamp, used=s.total_bytes) for s in history],
        ),
        gossip=GossipDetail(
            seeds_seen=seeds_seen,
            seed_total=seed_total,
            gaps=find_gossip_gaps(observed_at),
        ),
    )
