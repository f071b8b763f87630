"""pnode-monitor - gossip discovery and telemetry ingestion for storage network pnodes."""

__version__ = "0.1.0"
