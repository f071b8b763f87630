"""Tests for the bounded-concurrency fetch dispatcher."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from pnode_monitor.ingestor.backoff import BackoffScheduler
from pnode_monitor.ingestor.dispatcher import FetchDispatcher, StatsTarget, stats_base_url
from pnode_monitor.ingestor.models import NodeStats
from pnode_monitor.ingestor.prpc_client import PrpcClient, TransportError
from pnode_monitor.storage.database import DatabaseManager, StoreError
from pnode_monitor.storage.repos import PnodeDTO, PnodeRepository, StatsSampleRepository

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


async def _create_peers(db: DatabaseManager, count: int) -> list[PnodeDTO]:
    async with db.get_async_session() as session:
        repo = PnodeRepository(session)
        return [await repo.get_or_create_by_pubkey(f"Pub{i}") for i in range(count)]


def _targets(peers: list[PnodeDTO]) -> list[StatsTarget]:
    return [
        StatsTarget(peer=p, host=f"10.0.0.{p.id}", seed_id=1, seed_base_url="http://seed-a.test:6000")
        for p in peers
    ]


class ConcurrencyProbe:
    """get_stats double that records the peak number of in-flight calls."""

    def __init__(self, fail_hosts: set[str] | None = None) -> None:
        self.in_flight = 0
        self.peak = 0
        self.calls: list[str] = []
        self.fail_hosts = fail_hosts or set()

    async def __call__(self, base_url: str) -> NodeStats:
        self.calls.append(base_url)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            if any(f"//{host}:" in base_url for host in self.fail_hosts):
                raise TransportError(f"get-stats {base_url}: connection refused")
            return NodeStats(uptime_seconds=3600, total_bytes=1024)
        finally:
            self.in_flight -= 1


def _client(probe: ConcurrencyProbe) -> MagicMock:
    client = MagicMock(spec=PrpcClient)
    client.get_stats = AsyncMock(side_effect=probe.__call__)
    return client


def test_stats_base_url_uses_fixed_port() -> None:
    assert stats_base_url("1.2.3.4") == "http://1.2.3.4:6000"
    assert stats_base_url("2001:db8::1", 7000) == "http://[2001:db8::1]:7000"


class TestDispatch:
    """Tests for FetchDispatcher.dispatch."""

    @pytest.mark.asyncio
    async def test_concurrency_never_exceeds_ceiling(self, db: DatabaseManager) -> None:
        peers = await _create_peers(db, 37)
        probe = ConcurrencyProbe()
        dispatcher = FetchDispatcher(db, _client(probe), concurrency=10, clock=lambda: NOW)

        result = await dispatcher.dispatch(_targets(peers))

        assert len(probe.calls) == 37
        assert probe.peak <= 10
        assert result.success == 37
        assert result.failure == 0
        assert result.attempted == 37

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self, db: DatabaseManager) -> None:
        peers = await _create_peers(db, 5)
        failing = {f"10.0.0.{peers[0].id}", f"10.0.0.{peers[3].id}"}
        dispatcher = FetchDispatcher(
            db,
            _client(ConcurrencyProbe(fail_hosts=failing)),
            backoff=BackoffScheduler(),
            concurrency=2,
            clock=lambda: NOW,
        )

        result = await dispatcher.dispatch(_targets(peers))

        assert result.success == 3
        assert result.failure == 2
        assert result.outcomes[peers[0].id].ok is False
        assert "connection refused" in (result.outcomes[peers[0].id].error or "")

        async with db.get_async_session() as session:
            repo = PnodeRepository(session)
            failed = await repo.get_by_id(peers[0].id)
            ok = await repo.get_by_id(peers[1].id)
            samples = StatsSampleRepository(session)

            assert failed.reachable is False
            assert failed.failure_count == 1
            assert failed.next_stats_allowed_at == NOW + timedelta(seconds=120)
            assert await samples.count_for_pnode(peers[0].id) == 0

            assert ok.reachable is True
            assert ok.next_stats_allowed_at == NOW + timedelta(seconds=60)
            sample = (await samples.latest_by_pnode([peers[1].id]))[peers[1].id]
            assert sample.uptime_seconds == 3600
            assert sample.seed_base_url == "http://seed-a.test:6000"

    @pytest.mark.asyncio
    async def test_polls_fixed_stats_port(self, db: DatabaseManager) -> None:
        peers = await _create_peers(db, 1)
        probe = ConcurrencyProbe()
        dispatcher = FetchDispatcher(db, _client(probe), stats_port=6000, clock=lambda: NOW)

        await dispatcher.dispatch([StatsTarget(peer=peers[0], host="1.2.3.4")])

        assert probe.calls == ["http://1.2.3.4:6000"]

    @pytest.mark.asyncio
    async def test_empty_targets(self, db: DatabaseManager) -> None:
        client = MagicMock(spec=PrpcClient)
        client.get_stats = AsyncMock()
        result = await FetchDispatcher(db, client).dispatch([])
        assert result.attempted == 0
        client.get_stats.assert_not_called()

    @pytest.mark.asyncio
    async def test_store_failure_is_fatal(self) -> None:
        failing_db = MagicMock(spec=DatabaseManager)
        failing_db.get_async_session = MagicMock(side_effect=StoreError("disk full"))
        probe = ConcurrencyProbe()
        dispatcher = FetchDispatcher(failing_db, _client(probe), clock=lambda: NOW)

        with pytest.raises(StoreError):
            await dispatcher.dispatch([StatsTarget(peer=PnodeDTO(id=1, pubkey="PubA"), host="1.2.3.4")])

    def test_rejects_zero_concurrency(self) -> None:
        with pytest.raises(ValueError):
            FetchDispatcher(MagicMock(spec=DatabaseManager), MagicMock(spec=PrpcClient), concurrency=0)
