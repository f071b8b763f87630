"""Peer identity registry.

Canonical set of known pnodes keyed by pubkey. A pnode without a pubkey is
never merged with another: every anonymous sighting creates its own row.
"""

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from pnode_monitor.ingestor.backoff import BackoffScheduler
from pnode_monitor.ingestor.models import PeerListing
from pnode_monitor.storage.repos import (
    CreditSnapshotDTO,
    CreditSnapshotRepository,
    GossipObservationDTO,
    GossipObservationRepository,
    PnodeDTO,
    PnodeRepository,
    SeedDTO,
)

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500


def truncate_error(message: str, limit: int = MAX_ERROR_LENGTH) -> str:
    if len(message) <= limit:
        return message
    return message[:limit] + "..."


class PeerRegistry:
    """Registry operations bound to one session.

    All updates touch a single row; there are no cross-peer invariants.
    """

    def __init__(self, session: AsyncSession, backoff: BackoffScheduler | None = None) -> None:
        self.session = session
        self.backoff = backoff or BackoffScheduler()
        self._pnodes = PnodeRepository(session)
        self._observations = GossipObservationRepository(session)
        self._credits = CreditSnapshotRepository(session)

    async def upsert_from_gossip(self, pubkey: str | None, address: str) -> PnodeDTO:
        """Find-or-create a pnode by pubkey; anonymous entries always create a row."""
        if pubkey:
            return await self._pnodes.get_or_create_by_pubkey(pubkey)
        peer = await self._pnodes.create_anonymous()
        logger.debug("Created anonymous pnode %d for %s", peer.id, address)
        return peer

    async def record_gossip_observation(
        self,
        peer: PnodeDTO,
        seed: SeedDTO,
        listing: PeerListing,
        now: datetime,
    ) -> GossipObservationDTO:
        observation = await self._observations.insert(
            GossipObservationDTO(
                pnode_id=peer.id,
                seed_id=seed.id,
                seed_base_url=seed.base_url,
                address=listing.address,
                observed_at=now,
                version=listing.version,
                last_seen_timestamp=listing.last_seen_timestamp,
                storage_committed=listing.storage_committed,
                storage_used=listing.storage_used,
                storage_usage_percent=listing.storage_usage_percent,
                is_public=listing.is_public,
            )
        )
        if listing.is_public is not None and listing.is_public != peer.is_public:
            await self._pnodes.update_fields(peer.id, is_public=listing.is_public)
        return observation

    async def record_credits(self, peer: PnodeDTO, credits: float, now: datetime) -> PnodeDTO:
        """Store the latest balance on the pnode and append a credit snapshot."""
        if peer.pubkey is None:
            return peer
        await self._credits.insert(CreditSnapshotDTO(pod_pubkey=peer.pubkey, credits=credits, observed_at=now))
        return await self._pnodes.update_fields(peer.id, latest_credits=credits, credits_updated_at=now)

    async def update_after_poll_success(self, peer: PnodeDTO, now: datetime) -> PnodeDTO:
        return await self._pnodes.update_fields(
            peer.id,
            reachable=True,
            failure_count=0,
            last_error=None,
            last_stats_attempt_at=now,
            last_stats_success_at=now,
            next_stats_allowed_at=self.backoff.on_success(now),
        )

    async def update_after_poll_failure(self, peer: PnodeDTO, now: datetime, error: str) -> PnodeDTO:
        current = await self._pnodes.get_by_id(peer.id)
        if current is None:
            raise LookupError(f"pnode {peer.id} not found")
        failure_count = current.failure_count + 1
        return await self._pnodes.update_fields(
            peer.id,
            reachable=False,
            failure_count=failure_count,
            last_error=truncate_error(error),
            last_stats_attempt_at=now,
            next_stats_allowed_at=self.backoff.on_failure(failure_count, now),
        )
