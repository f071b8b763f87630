"""Ingestion cycle coordinator.

This module provides the IngestionPipeline class that wires the pRPC client,
gossip reconciler, backoff scheduler, fetch dispatcher and snapshot builder
into one cycle, and optionally runs that cycle on an interval.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

from redis.asyncio import Redis

from pnode_monitor.analytics.snapshot import build_network_snapshot, persist_network_snapshot
from pnode_monitor.config import Settings, get_settings
from pnode_monitor.ingestor.backoff import BackoffScheduler
from pnode_monitor.ingestor.dispatcher import DispatchResult, FetchDispatcher, StatsTarget
from pnode_monitor.ingestor.models import address_host
from pnode_monitor.ingestor.prpc_client import PrpcClient
from pnode_monitor.ingestor.reconciler import GossipReconciler, ReconcileResult
from pnode_monitor.ingestor.run_lock import IngestionAlreadyRunningError, RunLock
from pnode_monitor.ingestor.seeds import ensure_default_seeds
from pnode_monitor.storage.database import DatabaseManager
from pnode_monitor.storage.repos import (
    GossipObservationRepository,
    IngestionRunRepository,
    PnodeRepository,
    RunCounters,
    SeedDTO,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PipelineState(str, Enum):
    """Periodic runner lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the periodic runner."""

    started_at: datetime | None = None
    cycles_completed: int = 0
    cycles_failed: int = 0
    last_run_id: int | None = None
    last_cycle_at: datetime | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class RunSummary:
    """Run-level counters of one completed cycle."""

    run_id: int
    seeds_count: int
    total_peers_observed: int
    attempted: int
    success: int
    failure: int
    backed_off: int


@dataclass(frozen=True)
class IngestionResult:
    """Outcome of ``trigger()``: a summary, or the run-level error."""

    ok: bool
    summary: RunSummary | None = None
    error: str | None = None


class IngestionPipeline:
    """Runs ingestion cycles across all enabled seeds.

    Cycle:
        create run -> reconcile seeds -> backoff filter -> dispatch stats
        -> network snapshot -> finish run with per-seed counters

    A run whose ``finished_at`` stays null was aborted by a store error.

    Example:
        ```python
        from pnode_monitor.pipeline import IngestionPipeline

        pipeline = IngestionPipeline()
        summary = await pipeline.run_cycle()
        await pipeline.close()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db: DatabaseManager | None = None,
        client: PrpcClient | None = None,
        redis: Redis | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            db: Database manager. Created from settings if not provided.
            client: pRPC client. Created from settings if not provided.
            redis: Redis client for the run lock. Created from REDIS_URL if set.
            clock: Source of the current UTC time.
        """
        self._settings = settings or get_settings()
        self._clock = clock

        self._owns_db = db is None
        self._owns_client = client is None
        self._owns_redis = redis is None

        self._db = db or DatabaseManager(self._settings.database.url)
        self._client = client or PrpcClient(
            rpc_path=self._settings.prpc.rpc_path,
            timeout_seconds=self._settings.prpc.timeout_seconds,
        )
        self._redis = redis
        self._run_lock: RunLock | None = None
        self._open_run_lock()

        self.backoff = BackoffScheduler(
            base_seconds=self._settings.backoff.base_seconds,
            cap_exponent=self._settings.backoff.cap_exponent,
        )
        self._reconciler = GossipReconciler(self._db, self._client, backoff=self.backoff, clock=clock)
        self._dispatcher = FetchDispatcher(
            self._db,
            self._client,
            backoff=self.backoff,
            concurrency=self._settings.ingestion.concurrency,
            stats_port=self._settings.prpc.stats_port,
            clock=clock,
        )

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()
        self._stop_event: asyncio.Event | None = None
        self._loop_task: asyncio.Task[None] | None = None

    def _open_run_lock(self) -> None:
        """(Re)create the owned Redis client and the run lock on top of it."""
        if self._redis is None and self._owns_redis and self._settings.redis.enabled:
            self._redis = Redis.from_url(self._settings.redis.url)
        if self._redis is not None:
            self._run_lock = RunLock(self._redis, ttl_seconds=self._settings.ingestion.run_lock_ttl_seconds)

    @property
    def db(self) -> DatabaseManager:
        return self._db

    @property
    def state(self) -> PipelineState:
        """Current runner state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current runner statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if the periodic runner is active."""
        return self._state == PipelineState.RUNNING

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> RunSummary:
        """Run one full ingestion cycle.

        Raises:
            IngestionAlreadyRunningError: If the run lock is held elsewhere.
            StoreError: If persistence fails; the run row stays unfinished.
        """
        token = await self._run_lock.acquire() if self._run_lock else None
        try:
            return await self._run_cycle()
        finally:
            if token is not None and self._run_lock is not None:
                await self._run_lock.release(token)

    async def _run_cycle(self) -> RunSummary:
        started_at = self._clock()
        async with self._db.get_async_session() as session:
            run = await IngestionRunRepository(session).create(started_at)
        logger.info("Ingestion run %d started", run.id)

        seeds = await ensure_default_seeds(self._db, self._settings.seeds.seeds)
        reconciled = await self._reconciler.reconcile(seeds)

        now = self._clock()
        async with self._db.get_async_session() as session:
            pnodes = await PnodeRepository(session).list_all()
            latest_gossip = await GossipObservationRepository(session).latest_by_pnode()

        eligible_ids: set[int] = set()
        targets: list[StatsTarget] = []
        for peer in pnodes:
            if not self.backoff.eligible(peer, now):
                logger.debug("Skipping pnode %d (backoff until %s)", peer.id, peer.next_stats_allowed_at)
                continue
            eligible_ids.add(peer.id)
            gossip = latest_gossip.get(peer.id)
            if gossip is None:
                logger.debug("Skipping pnode %d (no gossip address)", peer.id)
                continue
            targets.append(
                StatsTarget(
                    peer=peer,
                    host=address_host(gossip.address),
                    seed_id=gossip.seed_id,
                    seed_base_url=gossip.seed_base_url,
                )
            )
        backed_off = len(pnodes) - len(eligible_ids)

        dispatched = await self._dispatcher.dispatch(targets)

        finished_at = self._clock()
        if self._settings.ingestion.snapshot_enabled:
            async with self._db.get_async_session() as session:
                snapshot = await build_network_snapshot(
                    session,
                    finished_at,
                    seed_base_urls=[s.base_url for s in seeds],
                    fresh_window=timedelta(seconds=self._settings.metrics.fresh_window_seconds),
                    ingestion_run_id=run.id,
                )
                await persist_network_snapshot(session, snapshot)

        counters = RunCounters(
            attempted=dispatched.attempted,
            success=dispatched.success,
            backoff=backed_off,
            failed=dispatched.failure,
            observed=len(reconciled.observed),
        )
        seed_counters = _seed_counters(seeds, reconciled, dispatched, eligible_ids)
        async with self._db.get_async_session() as session:
            await IngestionRunRepository(session).finish(
                run.id,
                finished_at=finished_at,
                seeds_count=len(seeds),
                counters=counters,
                seed_counters=seed_counters,
            )

        summary = RunSummary(
            run_id=run.id,
            seeds_count=len(seeds),
            total_peers_observed=counters.observed,
            attempted=counters.attempted,
            success=counters.success,
            failure=counters.failed,
            backed_off=counters.backoff,
        )
        logger.info(
            "Ingestion run %d finished: seeds=%d observed=%d attempted=%d success=%d failure=%d backed_off=%d",
            summary.run_id,
            summary.seeds_count,
            summary.total_peers_observed,
            summary.attempted,
            summary.success,
            summary.failure,
            summary.backed_off,
        )
        return summary

    async def trigger(self) -> IngestionResult:
        """Run one cycle and report run-level failures instead of raising."""
        try:
            summary = await self.run_cycle()
        except IngestionAlreadyRunningError as e:
            logger.warning("Ingestion trigger ignored: %s", e)
            return IngestionResult(ok=False, error=str(e))
        except Exception as e:
            self._stats.cycles_failed += 1
            self._stats.last_error = str(e)
            logger.exception("Ingestion cycle failed")
            return IngestionResult(ok=False, error=str(e))

        self._stats.cycles_completed += 1
        self._stats.last_run_id = summary.run_id
        self._stats.last_cycle_at = self._clock()
        return IngestionResult(ok=True, summary=summary)

    # ------------------------------------------------------------------
    # Periodic runner
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start running cycles every ``INGESTION_INTERVAL_SECONDS``.

        Raises:
            RuntimeError: If the runner is already running.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        if self._run_lock is None:
            self._open_run_lock()
        self._stop_event = asyncio.Event()
        logger.info("Starting ingestion loop (interval=%ds)", self._settings.ingestion.interval_seconds)

        self._loop_task = asyncio.create_task(self._run_loop())
        self._stats.started_at = self._clock()
        self._state = PipelineState.RUNNING

    async def stop(self) -> None:
        """Stop the runner and release owned resources."""
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping ingestion loop...")

        if self._stop_event:
            self._stop_event.set()

        if self._loop_task:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

        await self.close()

        self._state = PipelineState.STOPPED
        logger.info("Ingestion loop stopped")

    async def wait(self) -> None:
        """Block until the runner's loop task exits."""
        if self._loop_task:
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task

    async def _run_loop(self) -> None:
        if not self._stop_event:
            return

        interval = self._settings.ingestion.interval_seconds
        while not self._stop_event.is_set():
            await self.trigger()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except TimeoutError:
                pass

    async def close(self) -> None:
        """Close the resources this pipeline created."""
        if self._owns_client:
            await self._client.close()

        if self._owns_db:
            await self._db.dispose_async()

        if self._redis is not None and self._owns_redis:
            await self._redis.aclose()
            self._redis = None
            self._run_lock = None

        logger.debug("Resources cleaned up")


def _seed_counters(
    seeds: list[SeedDTO],
    reconciled: ReconcileResult,
    dispatched: DispatchResult,
    eligible_ids: set[int],
) -> dict[str, RunCounters]:
    """Per-seed counters over the pnodes each seed reported this cycle."""
    counters: dict[str, RunCounters] = {}
    for seed in seeds:
        ids = reconciled.observed_by_seed.get(seed.base_url, set())
        outcomes = [dispatched.outcomes[i] for i in ids if i in dispatched.outcomes]
        success = sum(1 for o in outcomes if o.ok)
        counters[seed.base_url] = RunCounters(
            attempted=len(outcomes),
            success=success,
            backoff=len(ids - eligible_ids),
            failed=len(outcomes) - success,
            observed=len(ids),
        )
    return counters
