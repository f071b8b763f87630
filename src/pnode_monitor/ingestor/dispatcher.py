"""Bounded-concurrency stats fetch dispatcher.

Polls ``get-stats`` on every eligible pnode through a semaphore-sized worker
pool. A failed or hung pnode only ever occupies its own slot; per-pnode
failures are recorded on the registry and never raised. Store failures are
the only errors that escape ``dispatch``.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from pnode_monitor.ingestor.backoff import BackoffScheduler
from pnode_monitor.ingestor.models import NodeStats
from pnode_monitor.ingestor.prpc_client import PrpcClient, PrpcClientError
from pnode_monitor.ingestor.registry import PeerRegistry
from pnode_monitor.storage.database import DatabaseManager
from pnode_monitor.storage.repos import PnodeDTO, StatsSampleDTO, StatsSampleRepository

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 10
DEFAULT_STATS_PORT = 6000


def _utcnow() -> datetime:
    return datetime.now(UTC)


def stats_base_url(host: str, port: int = DEFAULT_STATS_PORT) -> str:
    """Stats endpoint for a gossip host; the gossip-reported port is never used."""
    if ":" in host:
        host = f"[{host}]"
    return f"http://{host}:{port}"


@dataclass(frozen=True)
class StatsTarget:
    """A pnode to poll, with the host and seed taken from its latest gossip."""

    peer: PnodeDTO
    host: str
    seed_id: int | None = None
    seed_base_url: str | None = None


@dataclass(frozen=True)
class PollOutcome:
    pnode_id: int
    ok: bool
    error: str | None = None


@dataclass
class DispatchResult:
    success: int = 0
    failure: int = 0
    outcomes: dict[int, PollOutcome] = field(default_factory=dict)

    @property
    def attempted(self) -> int:
        return self.success + self.failure


class FetchDispatcher:
    """Runs stats polls with a hard concurrency ceiling."""

    def __init__(
        self,
        db: DatabaseManager,
        client: PrpcClient,
        *,
        backoff: BackoffScheduler | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        stats_port: int = DEFAULT_STATS_PORT,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.db = db
        self.client = client
        self.backoff = backoff or BackoffScheduler()
        self.concurrency = concurrency
        self.stats_port = stats_port
        self._clock = clock

    async def dispatch(self, targets: Sequence[StatsTarget]) -> DispatchResult:
        result = DispatchResult()
        if not targets:
            return result

        semaphore = asyncio.Semaphore(self.concurrency)

        async def poll_with_limit(target: StatsTarget) -> PollOutcome:
            async with semaphore:
                return await self._poll(target)

        outcomes = await asyncio.gather(
            *(poll_with_limit(t) for t in targets),
            return_exceptions=True,
        )

        fatal: BaseException | None = None
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                if fatal is None:
                    fatal = outcome
                continue
            result.outcomes[outcome.pnode_id] = outcome
            if outcome.ok:
                result.success += 1
            else:
                result.failure += 1
        if fatal is not None:
            raise fatal

        logger.info(
            "Stats dispatch complete: %d succeeded, %d failed (concurrency=%d)",
            result.success,
            result.failure,
            self.concurrency,
        )
        return result

    async def _poll(self, target: StatsTarget) -> PollOutcome:
        peer = target.peer
        url = stats_base_url(target.host, self.stats_port)
        logger.debug("Fetching stats for pnode %d at %s", peer.id, url)

        try:
            stats = await self.client.get_stats(url)
        except (PrpcClientError, ValueError) as e:
            logger.warning("Stats poll failed for pnode %d (%s): %s", peer.id, url, e)
            await self._record_failure(peer, str(e))
            return PollOutcome(pnode_id=peer.id, ok=False, error=str(e))

        await self._record_success(target, stats)
        return PollOutcome(pnode_id=peer.id, ok=True)

    async def _record_success(self, target: StatsTarget, stats: NodeStats) -> None:
        now = self._clock()
        async with self.db.get_async_session() as session:
            registry = PeerRegistry(session, self.backoff)
            await registry.update_after_poll_success(target.peer, now)
            await StatsSampleRepository(session).insert(
                StatsSampleDTO(
                    pnode_id=target.peer.id,
                    timestamp=now,
                    seed_id=target.seed_id,
                    seed_base_url=target.seed_base_url,
                    cpu_percent=stats.cpu_percent,
                    ram_used_bytes=stats.ram_used_bytes,
                    ram_total_bytes=stats.ram_total_bytes,
                    uptime_seconds=stats.uptime_seconds,
                    packets_in_per_sec=stats.packets_in_per_sec,
                    packets_out_per_sec=stats.packets_out_per_sec,
                    active_streams=stats.active_streams,
                    total_bytes=stats.total_bytes,
                    total_pages=stats.total_pages,
                )
            )

    async def _record_failure(self, peer: PnodeDTO, error: str) -> None:
        now = self._clock()
        async with self.db.get_async_session() as session:
            await PeerRegistry(session, self.backoff).update_after_poll_failure(peer, now, error)
