"""Initial schema for seeds, pnodes, observations, snapshots and runs.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Seeds table
    op.create_table(
        "seeds",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("base_url", sa.String(255), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("base_url"),
    )

    # Pnodes table
    op.create_table(
        "pnodes",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("pubkey", sa.String(128), nullable=True),
        sa.Column("reachable", sa.Boolean(), nullable=False),
        sa.Column("is_public", sa.Boolean(), nullable=False),
        sa.Column("failure_count", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_stats_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_stats_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_stats_allowed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("latest_credits", sa.Float(), nullable=True),
        sa.Column("credits_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("pubkey"),
    )
    op.create_index("idx_pnodes_next_stats_allowed_at", "pnodes", ["next_stats_allowed_at"])

    # Gossip observations table
    op.create_table(
        "gossip_observations",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("pnode_id", sa.Integer(), nullable=False),
        sa.Column("seed_id", sa.Integer(), nullable=False),
        sa.Column("seed_base_url", sa.String(255), nullable=False),
        sa.Column("address", sa.String(255), nullable=False),
        sa.Column("version", sa.String(64), nullable=True),
        sa.Column("last_seen_timestamp", sa.BigInteger(), nullable=True),
        sa.Column("observed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("storage_committed", sa.BigInteger(), nullable=True),
        sa.Column("storage_used", sa.BigInteger(), nullable=True),
        sa.Column("storage_usage_percent", sa.Float(), nullable=True),
        sa.Column("is_public", sa.Boolean(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_gossip_observations_pnode_ts", "gossip_observations", ["pnode_id", "observed_at"])
    op.create_index("idx_gossip_observations_seed_ts", "gossip_observations", ["seed_base_url", "observed_at"])
    op.create_index("idx_gossip_observations_pnode_seed", "gossip_observations", ["pnode_id", "seed_base_url"])

    # Stats samples table
    op.create_table(
        "stats_samples",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("pnode_id", sa.Integer(), nullable=False),
        sa.Column("seed_id", sa.Integer(), nullable=True),
        sa.Column("seed_base_url", sa.String(255), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cpu_percent", sa.Float(), nullable=True),
        sa.Column("ram_used_bytes", sa.BigInteger(), nullable=True),
        sa.Column("ram_total_bytes", sa.BigInteger(), nullable=True),
        sa.Column("uptime_seconds", sa.BigInteger(), nullable=True),
        sa.Column("packets_in_per_sec", sa.Float(), nullable=True),
        sa.Column("packets_out_per_sec", sa.Float(), nullable=True),
        sa.Column("active_streams", sa.Integer(), nullable=True),
        sa.Column("total_bytes", sa.BigInteger(), nullable=True),
        sa.Column("total_pages", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_stats_samples_pnode_ts", "stats_samples", ["pnode_id", "timestamp"])

    # Credit snapshots table
    op.create_table(
        "credit_snapshots",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("pod_pubkey", sa.String(128), nullable=False),
        sa.Column("credits", sa.Float(), nullable=False),
        sa.Column("observed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("pod_pubkey", "observed_at", name="uq_credit_snapshots_pubkey_ts"),
    )
    op.create_index("idx_credit_snapshots_pubkey_ts", "credit_snapshots", ["pod_pubkey", "observed_at"])

    # Network snapshots and their per-snapshot breakdowns
    op.create_table(
        "network_snapshots",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("ingestion_run_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_nodes", sa.Integer(), nullable=False),
        sa.Column("reachable_nodes", sa.Integer(), nullable=False),
        sa.Column("unreachable_nodes", sa.Integer(), nullable=False),
        sa.Column("reachable_percent", sa.Float(), nullable=False),
        sa.Column("median_uptime_seconds", sa.Float(), nullable=True),
        sa.Column("p90_uptime_seconds", sa.Float(), nullable=True),
        sa.Column("total_storage_committed", sa.BigInteger(), nullable=False),
        sa.Column("total_storage_used", sa.BigInteger(), nullable=False),
        sa.Column("nodes_backed_off", sa.Integer(), nullable=False),
        sa.Column("nodes_failing_stats", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_network_snapshots_created_at", "network_snapshots", ["created_at"])

    op.create_table(
        "network_version_stats",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("snapshot_id", sa.Integer(), nullable=False),
        sa.Column("version", sa.String(64), nullable=False),
        sa.Column("node_count", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_network_version_stats_snapshot", "network_version_stats", ["snapshot_id"])

    op.create_table(
        "network_seed_visibility",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("snapshot_id", sa.Integer(), nullable=False),
        sa.Column("seed_base_url", sa.String(255), nullable=False),
        sa.Column("nodes_seen", sa.Integer(), nullable=False),
        sa.Column("fresh_nodes", sa.Integer(), nullable=False),
        sa.Column("stale_nodes", sa.Integer(), nullable=False),
        sa.Column("offline_nodes", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_network_seed_visibility_snapshot", "network_seed_visibility", ["snapshot_id"])

    op.create_table(
        "network_credits_stats",
        sa.Column("snapshot_id", sa.Integer(), nullable=False),
        sa.Column("median_credits", sa.Float(), nullable=True),
        sa.Column("p90_credits", sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint("snapshot_id"),
    )

    # Ingestion runs
    op.create_table(
        "ingestion_runs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("seeds_count", sa.Integer(), nullable=False),
        sa.Column("attempted", sa.Integer(), nullable=False),
        sa.Column("success", sa.Integer(), nullable=False),
        sa.Column("backoff", sa.Integer(), nullable=False),
        sa.Column("failed", sa.Integer(), nullable=False),
        sa.Column("observed", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_ingestion_runs_started_at", "ingestion_runs", ["started_at"])

    op.create_table(
        "ingestion_run_seed_stats",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("ingestion_run_id", sa.Integer(), nullable=False),
        sa.Column("seed_base_url", sa.String(255), nullable=False),
        sa.Column("attempted", sa.Integer(), nullable=False),
        sa.Column("success", sa.Integer(), nullable=False),
        sa.Column("backoff", sa.Integer(), nullable=False),
        sa.Column("failed", sa.Integer(), nullable=False),
        sa.Column("observed", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("ingestion_run_id", "seed_base_url", name="uq_ingestion_run_seed_stats"),
    )


def downgrade() -> None:
    op.drop_table("ingestion_run_seed_stats")
    op.drop_index("idx_ingestion_runs_started_at", table_name="ingestion_runs")
    op.drop_table("ingestion_runs")
    op.drop_table("network_credits_stats")
    op.drop_index("idx_network_seed_visibility_snapshot", table_name="network_seed_visibility")
    op.drop_table("network_seed_visibility")
    op.drop_index("idx_network_version_stats_snapshot", table_name="network_version_stats")
    op.drop_table("network_version_stats")
    op.drop_index("idx_network_snapshots_created_at", table_name="network_snapshots")
    op.drop_table("network_snapshots")
    op.drop_index("idx_credit_snapshots_pubkey_ts", table_name="credit_snapshots")
    op.drop_table("credit_snapshots")
    op.drop_index("idx_stats_samples_pnode_ts", table_name="stats_samples")
    op.drop_table("stats_samples")
    op.drop_index("idx_gossip_observations_pnode_seed", table_name="gossip_observations")
    op.drop_index("idx_gossip_observations_seed_ts", table_name="gossip_observations")
    op.drop_index("idx_gossip_observations_pnode_ts", table_name="gossip_observations")
    op.drop_table("gossip_observations")
    op.drop_index("idx_pnodes_next_stats_allowed_at", table_name="pnodes")
    op.drop_table("pnodes")
    op.drop_table("seeds")
