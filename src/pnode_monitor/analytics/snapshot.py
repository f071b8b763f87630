"""Network-wide snapshot computation and persistence."""

import logging
from collections import Counter
from collections.abc import Sequence
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from pnode_monitor.analytics.aggregator import median, percentile
from pnode_monitor.storage.repos import (
    GossipObservationRepository,
    NetworkSnapshotDTO,
    NetworkSnapshotRepository,
    PnodeRepository,
    SeedVisibilityDTO,
    StatsSampleRepository,
    VersionStatDTO,
)

logger = logging.getLogger(__name__)

DEFAULT_FRESH_WINDOW = timedelta(hours=1)
UNKNOWN_VERSION = "unknown"


async def build_network_snapshot(
    session: AsyncSession,
    now: datetime,
    *,
    seed_base_urls: Sequence[str] = (),
    fresh_window: timedelta = DEFAULT_FRESH_WINDOW,
    ingestion_run_id: int | None = None,
) -> NetworkSnapshotDTO:
    """Aggregate every pnode into one snapshot.

    Seed visibility buckets, per seed: fresh (latest observation by that
    seed within ``fresh_window``), stale (seen by that seed, but earlier),
    offline (registered, never reported by that seed). The three add up
    to the total node count.
    """
    pnodes = await PnodeRepository(session).list_all()
    observations = GossipObservationRepository(session)
    latest_gossip = await observations.latest_by_pnode()
    latest_stats = await StatsSampleRepository(session).latest_by_pnode()

    total = len(pnodes)
    reachable = sum(1 for p in pnodes if p.reachable)

    uptimes = [
        float(s.uptime_seconds) for s in latest_stats.values() if s.uptime_seconds is not None
    ]
    credits = [p.latest_credits for p in pnodes if p.latest_credits is not None]

    versions = Counter(
        (latest_gossip[p.id].version if p.id in latest_gossip else None) or UNKNOWN_VERSION for p in pnodes
    )

    committed = 0
    used = 0
    for p in pnodes:
        gossip = latest_gossip.get(p.id)
        stats = latest_stats.get(p.id)
        if gossip is not None and gossip.storage_committed is not None:
            committed += gossip.storage_committed
        elif stats is not None and stats.total_bytes is not None:
            committed += stats.total_bytes
        if gossip is not None and gossip.storage_used is not None:
            used += gossip.storage_used

    last_seen_by_seed = await observations.last_observed_by_seed()
    fresh_cutoff = now - fresh_window
    visibility: list[SeedVisibilityDTO] = []
    for seed_base_url in sorted(set(seed_base_urls) | set(last_seen_by_seed)):
        seen = last_seen_by_seed.get(seed_base_url, {})
        fresh = sum(1 for observed_at in seen.values() if observed_at >= fresh_cutoff)
        stale = len(seen) - fresh
        visibility.append(
            SeedVisibilityDTO(
                seed_base_url=seed_base_url,
                nodes_seen=len(seen),
                fresh_nodes=fresh,
                stale_nodes=stale,
                offline_nodes=max(0, total - len(seen)),
            )
        )

    return NetworkSnapshotDTO(
        ingestion_run_id=ingestion_run_id,
        created_at=now,
        total_nodes=total,
        reachable_nodes=reachable,
        unreachable_nodes=total - reachable,
        reachable_percent=(reachable / total * 100) if total else 0.0,
        median_uptime_seconds=median(uptimes),
        p90_uptime_seconds=percentile(uptimes, 90),
        total_storage_committed=committed,
        total_storage_used=used,
        nodes_backed_off=sum(
            1 for p in pnodes if p.next_stats_allowed_at is not None and p.next_stats_allowed_at > now
        ),
        nodes_failing_stats=sum(1 for p in pnodes if p.failure_count > 0),
        version_stats=[
            VersionStatDTO(version=version, node_count=count)
            for version, count in sorted(versions.items(), key=lambda kv: (-kv[1], kv[0]))
        ],
        seed_visibility=visibility,
        median_credits=median(credits),
        p90_credits=percentile(credits, 90),
        has_credits_stat=True,
    )


async def persist_network_snapshot(session: AsyncSession, snapshot: NetworkSnapshotDTO) -> int:
    snapshot_id = await NetworkSnapshotRepository(session).insert(snapshot)
    logger.info(
        "Network snapshot %d: %d nodes, %d reachable (%.1f%%)",
        snapshot_id,
        snapshot.total_nodes,
        snapshot.reachable_nodes,
        snapshot.reachable_percent,
    )
    return snapshot_id
