"""Tests for the ingestion cycle coordinator."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from pnode_monitor.analytics.views import get_latest_network_snapshot, get_run_status
from pnode_monitor.config import Settings
from pnode_monitor.ingestor.models import NodeStats, PeerListing
from pnode_monitor.ingestor.prpc_client import TransportError
from pnode_monitor.pipeline import IngestionPipeline, PipelineState
from pnode_monitor.storage.database import DatabaseManager, StoreError
from pnode_monitor.storage.repos import GossipObservationRepository, PnodeRepository

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

SEED_A = "http://seed-a.test:6000"
SEED_B = "http://seed-b.test:6000"

LISTING = [
    PeerListing(address="1.2.3.4:6000", pubkey="A", version="0.8.0"),
    PeerListing(address="5.6.7.8:6000", pubkey="B", version="0.8.0"),
]


class Clock:
    """Manually advanced clock."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> Clock:
    return Clock(NOW)


@pytest.fixture
def network(mock_client: MagicMock) -> MagicMock:
    """Seed A reports A and B; seed B reports nothing; A's stats endpoint is down."""

    async def list_peers(base_url: str) -> list[PeerListing]:
        return LISTING if base_url == SEED_A else []

    async def get_stats(base_url: str) -> NodeStats:
        if base_url == "http://1.2.3.4:6000":
            raise TransportError(f"get-stats {base_url}: connection refused")
        return NodeStats(uptime_seconds=3600, total_bytes=4096)

    mock_client.list_peers.side_effect = list_peers
    mock_client.get_stats.side_effect = get_stats
    return mock_client


@pytest.fixture
def pipeline(settings: Settings, db: DatabaseManager, network: MagicMock, clock: Clock) -> IngestionPipeline:
    return IngestionPipeline(settings, db=db, client=network, clock=clock)


class TestPipelineState:
    """Tests for pipeline state management."""

    @pytest.mark.asyncio
    async def test_initial_state_is_stopped(self, pipeline: IngestionPipeline) -> None:
        assert pipeline.state == PipelineState.STOPPED
        assert not pipeline.is_running

    @pytest.mark.asyncio
    async def test_initial_stats(self, pipeline: IngestionPipeline) -> None:
        stats = pipeline.stats
        assert stats.started_at is None
        assert stats.cycles_completed == 0
        assert stats.cycles_failed == 0

    @pytest.mark.asyncio
    async def test_backoff_from_settings(self, pipeline: IngestionPipeline) -> None:
        assert pipeline.backoff.base_seconds == 60
        assert pipeline.backoff.cap_exponent == 5


class TestRunCycle:
    """End-to-end cycles against an in-memory network."""

    @pytest.mark.asyncio
    async def test_first_cycle(self, pipeline: IngestionPipeline, db: DatabaseManager) -> None:
        summary = await pipeline.run_cycle()

        assert summary.seeds_count == 2
        assert summary.total_peers_observed == 2
        assert summary.attempted == 2
        assert summary.success == 1
        assert summary.failure == 1
        assert summary.backed_off == 0

        async with db.get_async_session() as session:
            pnodes = await PnodeRepository(session).list_all()
            assert sorted(p.pubkey for p in pnodes) == ["A", "B"]
            observations = GossipObservationRepository(session)
            for p in pnodes:
                assert await observations.count_for_pnode(p.id) == 1

    @pytest.mark.asyncio
    async def test_repeated_failures_back_off(
        self, pipeline: IngestionPipeline, db: DatabaseManager, clock: Clock
    ) -> None:
        await pipeline.run_cycle()
        clock.advance(seconds=120)
        second = await pipeline.run_cycle()

        async with db.get_async_session() as session:
            a = await PnodeRepository(session).get_by_pubkey("A")

        assert second.attempted == 2
        assert a.failure_count == 2
        assert a.reachable is False
        assert a.next_stats_allowed_at == clock.now + timedelta(seconds=240)

    @pytest.mark.asyncio
    async def test_backed_off_peers_are_skipped(
        self, pipeline: IngestionPipeline, network: MagicMock, clock: Clock
    ) -> None:
        await pipeline.run_cycle()
        clock.advance(seconds=30)
        network.get_stats.reset_mock()

        summary = await pipeline.run_cycle()

        assert summary.attempted == 0
        assert summary.backed_off == 2
        network.get_stats.assert_not_called()

    @pytest.mark.asyncio
    async def test_run_record_and_snapshot(
        self, pipeline: IngestionPipeline, db: DatabaseManager, clock: Clock
    ) -> None:
        summary = await pipeline.run_cycle()

        status = await get_run_status(db)
        assert status.is_running is False
        assert status.last_run_finished_at == NOW
        assert (status.attempted, status.success, status.failed, status.observed) == (2, 1, 1, 2)

        seed_a = await get_run_status(db, SEED_A)
        assert (seed_a.attempted, seed_a.observed) == (2, 2)
        seed_b = await get_run_status(db, SEED_B)
        assert (seed_b.attempted, seed_b.observed) == (0, 0)

        view = await get_latest_network_snapshot(db, clock=clock)
        assert view is not None
        assert view.snapshot.ingestion_run_id == summary.run_id
        assert view.snapshot.total_nodes == 2
        assert view.snapshot.reachable_nodes == 1
        assert [(s.version, s.percentage) for s in view.version_shares] == [("0.8.0", 100.0)]

    @pytest.mark.asyncio
    async def test_failing_seed_does_not_fail_cycle(self, pipeline: IngestionPipeline, network: MagicMock) -> None:
        async def list_peers(base_url: str) -> list[PeerListing]:
            if base_url == SEED_B:
                raise TransportError("get-pods: timed out")
            return LISTING

        network.list_peers.side_effect = list_peers

        summary = await pipeline.run_cycle()

        assert summary.total_peers_observed == 2


class TestTrigger:
    """Tests for trigger() error reporting."""

    @pytest.mark.asyncio
    async def test_success_updates_stats(self, pipeline: IngestionPipeline) -> None:
        result = await pipeline.trigger()

        assert result.ok is True
        assert result.summary is not None
        assert pipeline.stats.cycles_completed == 1
        assert pipeline.stats.last_run_id == result.summary.run_id

    @pytest.mark.asyncio
    async def test_store_error_is_reported(
        self, settings: Settings, network: MagicMock, clock: Clock
    ) -> None:
        db = MagicMock(spec=DatabaseManager)
        db.get_async_session = MagicMock(side_effect=StoreError("database is locked"))
        pipeline = IngestionPipeline(settings, db=db, client=network, clock=clock)

        result = await pipeline.trigger()

        assert result.ok is False
        assert "database is locked" in (result.error or "")
        assert pipeline.stats.cycles_failed == 1

    @pytest.mark.asyncio
    async def test_concurrent_trigger_is_rejected(
        self, settings: Settings, db: DatabaseManager, network: MagicMock, clock: Clock
    ) -> None:
        redis = AsyncMock()
        redis.set = AsyncMock(return_value=None)
        pipeline = IngestionPipeline(settings, db=db, client=network, redis=redis, clock=clock)

        result = await pipeline.trigger()

        assert result.ok is False
        assert "already running" in (result.error or "")
        network.list_peers.assert_not_called()

    @pytest.mark.asyncio
    async def test_lock_is_released(
        self, settings: Settings, db: DatabaseManager, network: MagicMock, clock: Clock
    ) -> None:
        redis = AsyncMock()
        redis.set = AsyncMock(return_value=True)
        redis.eval = AsyncMock(return_value=1)
        pipeline = IngestionPipeline(settings, db=db, client=network, redis=redis, clock=clock)

        result = await pipeline.trigger()

        assert result.ok is True
        redis.eval.assert_awaited_once()


class TestPeriodicRunner:
    """Tests for start/stop of the interval loop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, pipeline: IngestionPipeline, network: MagicMock) -> None:
        await pipeline.start()
        assert pipeline.is_running
        assert pipeline.stats.started_at == NOW

        with pytest.raises(RuntimeError):
            await pipeline.start()

        for _ in range(500):
            if pipeline.stats.cycles_completed:
                break
            await asyncio.sleep(0.01)

        await pipeline.stop()
        assert pipeline.state == PipelineState.STOPPED
        assert pipeline.stats.cycles_completed >= 1

    @pytest.mark.asyncio
    async def test_restart_reopens_owned_redis(
        self,
        settings: Settings,
        db: DatabaseManager,
        network: MagicMock,
        clock: Clock,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        clients: list[AsyncMock] = []

        def from_url(url: str) -> AsyncMock:
            client = AsyncMock()
            client.set = AsyncMock(return_value=True)
            client.eval = AsyncMock(return_value=1)
            clients.append(client)
            return client

        redis_cls = MagicMock()
        redis_cls.from_url.side_effect = from_url
        monkeypatch.setattr("pnode_monitor.pipeline.Redis", redis_cls)
        monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
        pipeline = IngestionPipeline(Settings(), db=db, client=network, clock=clock)

        assert (await pipeline.trigger()).ok is True
        await pipeline.close()
        clients[0].aclose.assert_awaited_once()

        await pipeline.start()
        for _ in range(500):
            if pipeline.stats.cycles_completed >= 2:
                break
            await asyncio.sleep(0.01)
        await pipeline.stop()

        assert pipeline.stats.cycles_completed >= 2
        assert len(clients) == 2
        assert clients[0].set.await_count == 1
        clients[1].set.assert_awaited()

    @pytest.mark.asyncio
    async def test_close_keeps_injected_resources(self, pipeline: IngestionPipeline, network: MagicMock) -> None:
        await pipeline.close()
        network.close.assert_not_called()
