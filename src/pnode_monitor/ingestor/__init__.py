"""Ingestion layer - gossip discovery and stats polling for pnodes."""

from pnode_monitor.ingestor.backoff import BackoffScheduler
from pnode_monitor.ingestor.dispatcher import (
    DispatchResult,
    FetchDispatcher,
    PollOutcome,
    StatsTarget,
    stats_base_url,
)
from pnode_monitor.ingestor.models import NodeStats, PeerListing, decode_peer_listing
from pnode_monitor.ingestor.prpc_client import (
    PrpcClient,
    PrpcClientError,
    ProtocolError,
    TransportError,
)
from pnode_monitor.ingestor.reconciler import GossipReconciler, ReconcileResult
from pnode_monitor.ingestor.registry import PeerRegistry
from pnode_monitor.ingestor.run_lock import IngestionAlreadyRunningError, RunLock
from pnode_monitor.ingestor.seeds import ensure_default_seeds, set_seed_enabled

__all__ = [
    "BackoffScheduler",
    "DispatchResult",
    "FetchDispatcher",
    "GossipReconciler",
    "IngestionAlreadyRunningError",
    "NodeStats",
    "PeerListing",
    "PeerRegistry",
    "PollOutcome",
    "PrpcClient",
    "PrpcClientError",
    "ProtocolError",
    "ReconcileResult",
    "RunLock",
    "StatsTarget",
    "TransportError",
    "decode_peer_listing",
    "ensure_default_seeds",
    "set_seed_enabled",
    "stats_base_url",
]
