"""Pytest configuration and fixtures."""

from collections.abc import AsyncIterator
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from pnode_monitor.config import Settings, clear_settings_cache
from pnode_monitor.ingestor.prpc_client import PrpcClient
from pnode_monitor.storage.database import DatabaseManager

pytest.importorskip("aiosqlite", exc_type=ImportError)

SEED_A = "http://seed-a.test:6000"
SEED_B = "http://seed-b.test:6000"


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """File-backed SQLite URL so concurrent sessions see each other's commits."""
    return f"sqlite+aiosqlite:///{tmp_path / 'pnode_monitor.db'}"


@pytest.fixture
async def db(database_url: str) -> AsyncIterator[DatabaseManager]:
    """Database manager with the schema created."""
    manager = DatabaseManager(database_url)
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, database_url: str) -> Settings:
    """Settings loaded from a controlled environment (two seeds, no Redis)."""
    monkeypatch.chdir(tmp_path)
    for name in ("REDIS_URL", "LOG_LEVEL", "PRPC_STATS_PORT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DATABASE_URL", database_url)
    monkeypatch.setenv("SEEDS", f"A={SEED_A},B={SEED_B}")
    clear_settings_cache()
    return Settings()


@pytest.fixture
def mock_client() -> MagicMock:
    """pRPC client double; tests set list_peers/get_stats side effects."""
    client = MagicMock(spec=PrpcClient)
    client.list_peers = AsyncMock(return_value=[])
    client.get_stats = AsyncMock()
    client.close = AsyncMock()
    return client
