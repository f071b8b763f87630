"""Derived metrics and read-side views."""

from pnode_monitor.analytics.aggregator import (
    compute_credit_deltas,
    find_gossip_gaps,
    median,
    normalize_usage_percent,
    percentile,
    success_rate,
    uptime_continuity,
)
from pnode_monitor.analytics.snapshot import build_network_snapshot, persist_network_snapshot
from pnode_monitor.analytics.views import (
    NetworkSnapshotView,
    PeerDetails,
    PeerPage,
    RunStatus,
    get_latest_network_snapshot,
    get_peer_details,
    get_peer_view,
    get_run_status,
)

__all__ = [
    "NetworkSnapshotView",
    "PeerDetails",
    "PeerPage",
    "RunStatus",
    "build_network_snapshot",
    "compute_credit_deltas",
    "find_gossip_gaps",
    "get_latest_network_snapshot",
    "get_peer_details",
    "get_peer_view",
    "get_run_status",
    "median",
    "normalize_usage_percent",
    "percentile",
    "persist_network_snapshot",
    "success_rate",
    "uptime_continuity",
]
