"""Gossip reconciler.

Merges every enabled seed's peer listing into the registry and the
observation log, and tracks which pnodes each seed reported this cycle.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from pnode_monitor.ingestor.backoff import BackoffScheduler
from pnode_monitor.ingestor.models import PeerListing
from pnode_monitor.ingestor.prpc_client import PrpcClient, PrpcClientError
from pnode_monitor.ingestor.registry import PeerRegistry
from pnode_monitor.storage.database import DatabaseManager
from pnode_monitor.storage.repos import SeedDTO

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ReconcileResult:
    """Distinct pnode ids touched, per seed and for the whole cycle."""

    observed_by_seed: dict[str, set[int]] = field(default_factory=dict)
    failed_seeds: list[str] = field(default_factory=list)

    @property
    def observed(self) -> set[int]:
        union: set[int] = set()
        for ids in self.observed_by_seed.values():
            union |= ids
        return union


class GossipReconciler:
    """Fetches seed listings concurrently and writes them one seed at a time."""

    def __init__(
        self,
        db: DatabaseManager,
        client: PrpcClient,
        *,
        backoff: BackoffScheduler | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.db = db
        self.client = client
        self.backoff = backoff or BackoffScheduler()
        self._clock = clock

    async def reconcile(self, seeds: Sequence[SeedDTO]) -> ReconcileResult:
        result = ReconcileResult()
        if not seeds:
            return result

        listings = await asyncio.gather(
            *(self.client.list_peers(seed.base_url) for seed in seeds),
            return_exceptions=True,
        )

        for seed, listing in zip(seeds, listings, strict=True):
            if isinstance(listing, (PrpcClientError, ValueError)):
                logger.warning("Skipping seed %s this cycle: %s", seed.base_url, listing)
                result.observed_by_seed[seed.base_url] = set()
                result.failed_seeds.append(seed.base_url)
                continue
            if isinstance(listing, BaseException):
                raise listing
            result.observed_by_seed[seed.base_url] = await self._merge_seed(seed, listing)

        logger.info(
            "Reconciled %d seeds (%d skipped): %d distinct pnodes observed",
            len(seeds),
            len(result.failed_seeds),
            len(result.observed),
        )
        return result

    async def _merge_seed(self, seed: SeedDTO, listing: Sequence[PeerListing]) -> set[int]:
        observed: set[int] = set()
        now = self._clock()
        async with self.db.get_async_session() as session:
            registry = PeerRegistry(session, self.backoff)
            for entry in listing:
                peer = await registry.upsert_from_gossip(entry.pubkey, entry.address)
                await registry.record_gossip_observation(peer, seed, entry, now)
                if entry.credits is not None:
                    await registry.record_credits(peer, entry.credits, now)
                observed.add(peer.id)
        logger.debug("Seed %s: %d entries, %d distinct pnodes", seed.base_url, len(listing), len(observed))
        return observed
