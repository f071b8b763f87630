"""Seed bootstrap and enable/disable."""

import logging
from collections.abc import Iterable

from pnode_monitor.config import SeedConfig
from pnode_monitor.storage.database import DatabaseManager
from pnode_monitor.storage.repos import SeedDTO, SeedRepository

logger = logging.getLogger(__name__)


async def ensure_default_seeds(db: DatabaseManager, seeds: Iterable[SeedConfig]) -> list[SeedDTO]:
    """Upsert the configured seeds by base URL and return every enabled seed.

    New seeds are inserted enabled. Existing rows only get their name
    refreshed, so a seed disabled with ``set_seed_enabled`` stays disabled.
    """
    async with db.get_async_session() as session:
        repo = SeedRepository(session)
        for seed in seeds:
            await repo.upsert(seed.name, seed.base_url)
        enabled = await repo.list_enabled()
    logger.debug("Enabled seeds: %s", [s.base_url for s in enabled])
    return enabled


async def set_seed_enabled(db: DatabaseManager, base_url: str, enabled: bool) -> bool:
    """Enable or disable a seed; returns False if it is unknown."""
    async with db.get_async_session() as session:
        changed = await SeedRepository(session).set_enabled(base_url.rstrip("/"), enabled)
    if changed:
        logger.info("Seed %s %s", base_url, "enabled" if enabled else "disabled")
    else:
        logger.warning("Unknown seed %s", base_url)
    return changed
