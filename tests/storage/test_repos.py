"""Tests for storage repositories."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select

from pnode_monitor.storage.database import DatabaseManager, StoreError
from pnode_monitor.storage.models import CreditSnapshotModel
from pnode_monitor.storage.repos import (
    CreditSnapshotDTO,
    CreditSnapshotRepository,
    GossipObservationDTO,
    GossipObservationRepository,
    IngestionRunRepository,
    NetworkSnapshotDTO,
    NetworkSnapshotRepository,
    PnodeRepository,
    RunCounters,
    SeedVisibilityDTO,
    StatsSampleDTO,
    StatsSampleRepository,
    VersionStatDTO,
    series_step,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

SEED_A = "http://seed-a.test:6000"
SEED_B = "http://seed-b.test:6000"


def _observation(pnode_id: int, seed: str, observed_at: datetime, **kwargs) -> GossipObservationDTO:
    return GossipObservationDTO(
        pnode_id=pnode_id,
        seed_id=1 if seed == SEED_A else 2,
        seed_base_url=seed,
        address=kwargs.pop("address", f"10.0.0.{pnode_id}:9001"),
        observed_at=observed_at,
        **kwargs,
    )


class TestDatabaseManager:
    """Tests for session handling."""

    @pytest.mark.asyncio
    async def test_commits_on_exit(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            await PnodeRepository(session).get_or_create_by_pubkey("PubA")

        async with db.get_async_session() as session:
            assert await PnodeRepository(session).get_by_pubkey("PubA") is not None

    @pytest.mark.asyncio
    async def test_rolls_back_and_wraps_errors(self, db: DatabaseManager) -> None:
        with pytest.raises(StoreError):
            async with db.get_async_session() as session:
                await PnodeRepository(session).get_or_create_by_pubkey("PubA")
                await session.execute(select(func.nonexistent_function()))

        async with db.get_async_session() as session:
            assert await PnodeRepository(session).get_by_pubkey("PubA") is None

    @pytest.mark.asyncio
    async def test_naive_datetimes_are_rejected(self, db: DatabaseManager) -> None:
        with pytest.raises(StoreError):
            async with db.get_async_session() as session:
                await IngestionRunRepository(session).create(datetime(2026, 10, 19, 12, 0))


class TestPnodeRepository:
    """Tests for pnode paging and seed filtering."""

    @pytest.mark.asyncio
    async def test_list_page_with_seed_filter(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            pnodes = PnodeRepository(session)
            observations = GossipObservationRepository(session)
            peers = [await pnodes.get_or_create_by_pubkey(f"Pub{i}") for i in range(4)]
            for p in peers:
                await observations.insert(_observation(p.id, SEED_A, NOW))
            await observations.insert(_observation(peers[2].id, SEED_B, NOW))
            await observations.insert(_observation(peers[2].id, SEED_B, NOW + timedelta(minutes=1)))

            assert await pnodes.count() == 4
            assert await pnodes.count(seed_base_url=SEED_B) == 1
            page = await pnodes.list_page(limit=2, offset=1)
            assert [p.id for p in page] == [peers[1].id, peers[2].id]
            filtered = await pnodes.list_page(limit=10, offset=0, seed_base_url=SEED_B)
            assert [p.id for p in filtered] == [peers[2].id]

    @pytest.mark.asyncio
    async def test_update_unknown_pnode(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            with pytest.raises(LookupError):
                await PnodeRepository(session).update_fields(999, reachable=True)


class TestGossipObservationRepository:
    """Tests for bulk latest-per-pnode reads."""

    @pytest.mark.asyncio
    async def test_latest_by_pnode(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            repo = GossipObservationRepository(session)
            await repo.insert(_observation(1, SEED_A, NOW - timedelta(hours=2), version="0.7.2"))
            await repo.insert(_observation(1, SEED_B, NOW, version="0.7.3"))
            await repo.insert(_observation(2, SEED_A, NOW - timedelta(hours=1), version="0.7.1"))

            latest = await repo.latest_by_pnode()
            assert latest[1].version == "0.7.3"
            assert latest[2].version == "0.7.1"

            from_a = await repo.latest_by_pnode([1], seed_base_url=SEED_A)
            assert from_a[1].version == "0.7.2"
            assert await repo.latest_by_pnode([]) == {}

    @pytest.mark.asyncio
    async def test_seeds_and_last_observed(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            repo = GossipObservationRepository(session)
            await repo.insert(_observation(1, SEED_A, NOW - timedelta(hours=3)))
            await repo.insert(_observation(1, SEED_A, NOW - timedelta(hours=1)))
            await repo.insert(_observation(1, SEED_B, NOW))
            await repo.insert(_observation(2, SEED_B, NOW))

            assert await repo.seeds_by_pnode([1, 2]) == {1: [SEED_A, SEED_B], 2: [SEED_B]}
            assert await repo.distinct_seed_urls() == [SEED_A, SEED_B]
            assert await repo.distinct_seed_urls(pnode_id=2) == [SEED_B]

            last = await repo.last_observed_by_seed()
            assert last[SEED_A] == {1: NOW - timedelta(hours=1)}
            assert last[SEED_B] == {1: NOW, 2: NOW}

            times = await repo.observed_times_since(1, NOW - timedelta(hours=2))
            assert times == [NOW - timedelta(hours=1), NOW]


class TestStatsSampleRepository:
    @pytest.mark.asyncio
    async def test_window_and_latest(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            repo = StatsSampleRepository(session)
            for minutes, uptime in ((90, 100), (30, 200), (0, 300)):
                await repo.insert(
                    StatsSampleDTO(pnode_id=1, timestamp=NOW - timedelta(minutes=minutes), uptime_seconds=uptime)
                )

            window = await repo.window(1, NOW - timedelta(hours=1))
            assert window.count == 2
            assert window.first == NOW - timedelta(minutes=30)
            assert window.last == NOW

            assert (await repo.latest_by_pnode())[1].uptime_seconds == 300
            assert (await repo.window(2, NOW - timedelta(hours=1))).count == 0
            since = await repo.list_since(1, NOW - timedelta(hours=2), limit=2)
            assert [s.uptime_seconds for s in since] == [100, 200]

    @pytest.mark.asyncio
    async def test_window_includes_sample_at_start(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            repo = StatsSampleRepository(session)
            for ts in (NOW - timedelta(hours=1), NOW):
                await repo.insert(StatsSampleDTO(pnode_id=1, timestamp=ts))

            window = await repo.window(1, NOW - timedelta(hours=1))
            assert window.count == 2
            assert window.first == NOW - timedelta(hours=1)
            assert window.first.tzinfo is not None
            assert window.last == NOW


class TestSeriesStep:
    def test_short_series_keeps_every_row(self) -> None:
        assert series_step(3, 150) == 1
        assert series_step(150, 150) == 1

    def test_long_series_is_strided(self) -> None:
        assert series_step(151, 150) == 2
        assert series_step(300, 150) == 2
        assert series_step(10_080, 150) == 68

    def test_rejects_non_positive_limit(self) -> None:
        with pytest.raises(ValueError):
            series_step(10, 0)


class TestCreditSnapshotRepository:
    @pytest.mark.asyncio
    async def test_duplicate_observation_is_ignored(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            repo = CreditSnapshotRepository(session)
            await repo.insert(CreditSnapshotDTO(pod_pubkey="PubA", credits=10.0, observed_at=NOW))
            await repo.insert(CreditSnapshotDTO(pod_pubkey="PubA", credits=11.0, observed_at=NOW))

            result = await session.execute(select(func.count()).select_from(CreditSnapshotModel))
            assert int(result.scalar_one()) == 1

    @pytest.mark.asyncio
    async def test_latest_at_or_before(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            repo = CreditSnapshotRepository(session)
            await repo.insert(CreditSnapshotDTO("PubA", 1000.0, NOW - timedelta(hours=30)))
            await repo.insert(CreditSnapshotDTO("PubA", 1200.0, NOW - timedelta(hours=1)))
            await repo.insert(CreditSnapshotDTO("PubB", 5.0, NOW - timedelta(hours=2)))

            latest = await repo.latest_by_pubkey(["PubA", "PubB", "PubC"])
            assert latest["PubA"].credits == 1200.0
            assert latest["PubB"].credits == 5.0
            assert "PubC" not in latest

            windowed = await repo.latest_by_pubkey(["PubA", "PubB"], at_or_before=NOW - timedelta(hours=24))
            assert windowed["PubA"].credits == 1000.0
            assert "PubB" not in windowed

    @pytest.mark.asyncio
    async def test_series_is_thinned_and_ends_at_latest(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            repo = CreditSnapshotRepository(session)
            for minutes in range(299, -1, -1):
                await repo.insert(CreditSnapshotDTO("PubA", float(300 - minutes), NOW - timedelta(minutes=minutes)))

            series = await repo.series("PubA", NOW - timedelta(days=7), limit=150)
            assert len(series) == 150
            assert series[-1].observed_at == NOW
            assert series[-1].credits == 300.0
            assert series[0].observed_at == NOW - timedelta(minutes=298)

            short = await repo.series("PubA", NOW - timedelta(minutes=2), limit=150)
            assert [s.credits for s in short] == [298.0, 299.0, 300.0]
            assert await repo.series("PubB", NOW - timedelta(days=7), limit=150) == []


class TestNetworkSnapshotRepository:
    @pytest.mark.asyncio
    async def test_insert_and_latest(self, db: DatabaseManager) -> None:
        snapshot = NetworkSnapshotDTO(
            created_at=NOW,
            total_nodes=3,
            reachable_nodes=2,
            unreachable_nodes=1,
            reachable_percent=66.67,
            median_uptime_seconds=3600.0,
            p90_uptime_seconds=7200.0,
            total_storage_committed=3000,
            total_storage_used=1000,
            nodes_backed_off=1,
            nodes_failing_stats=1,
            version_stats=[VersionStatDTO("0.7.3", 2), VersionStatDTO("unknown", 1)],
            seed_visibility=[SeedVisibilityDTO(SEED_A, 2, 2, 0, 1)],
            median_credits=10.0,
            p90_credits=20.0,
            has_credits_stat=True,
        )

        async with db.get_async_session() as session:
            repo = NetworkSnapshotRepository(session)
            older = await repo.insert(
                NetworkSnapshotDTO(
                    created_at=NOW - timedelta(days=8),
                    total_nodes=1,
                    reachable_nodes=1,
                    unreachable_nodes=0,
                    reachable_percent=100.0,
                    median_uptime_seconds=None,
                    p90_uptime_seconds=None,
                    total_storage_committed=0,
                    total_storage_used=0,
                    nodes_backed_off=0,
                    nodes_failing_stats=0,
                )
            )
            snapshot_id = await repo.insert(snapshot)

            latest = await repo.latest()
            assert latest is not None
            assert latest.id == snapshot_id != older
            assert [(v.version, v.node_count) for v in latest.version_stats] == [("0.7.3", 2), ("unknown", 1)]
            assert latest.seed_visibility[0].offline_nodes == 1
            assert latest.median_credits == 10.0
            assert latest.has_credits_stat

            series = await repo.series(NOW - timedelta(days=7), limit=150)
            assert [p.total_nodes for p in series] == [3]


class TestIngestionRunRepository:
    @pytest.mark.asyncio
    async def test_lifecycle(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            repo = IngestionRunRepository(session)
            run = await repo.create(NOW)
            assert run.is_running

            await repo.finish(
                run.id,
                finished_at=NOW + timedelta(seconds=30),
                seeds_count=2,
                counters=RunCounters(attempted=2, success=1, backoff=0, failed=1, observed=2),
                seed_counters={SEED_A: RunCounters(attempted=1, success=1, observed=1)},
            )
            second = await repo.create(NOW + timedelta(minutes=1))

            latest = await repo.latest()
            assert latest.id == second.id
            assert latest.is_running

            completed = await repo.latest(finished_only=True)
            assert completed.id == run.id
            assert completed.counters.failed == 1
            assert (await repo.seed_counters(run.id, SEED_A)).success == 1
            assert await repo.seed_counters(run.id, SEED_B) is None
