"""CLI entry point: ``python -m pnode_monitor <command>``."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import json
import logging
import signal
import sys
from datetime import datetime, timedelta
from typing import Any

from pnode_monitor.analytics.views import (
    DEFAULT_PAGE_LIMIT,
    get_latest_network_snapshot,
    get_peer_details,
    get_peer_view,
    get_run_status,
)
from pnode_monitor.config import Settings, get_settings
from pnode_monitor.pipeline import IngestionPipeline
from pnode_monitor.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, set):
        return sorted(value)
    raise TypeError(f"not JSON serializable: {type(value).__name__}")


def _dump(obj: Any) -> None:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        obj = dataclasses.asdict(obj)
    print(json.dumps(obj, default=_json_default, indent=2))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="pnode_monitor", description="pnode gossip discovery and telemetry ingestion")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="create all tables (use alembic for managed schemas)")
    sub.add_parser("ingest", help="run a single ingestion cycle and print its summary")
    sub.add_parser("run", help="run ingestion cycles every INGESTION_INTERVAL_SECONDS")

    status = sub.add_parser("status", help="latest ingestion run status")
    status.add_argument("--seed", default=None, help="scope counters to one seed base URL")

    sub.add_parser("snapshot", help="latest network snapshot with time series")

    peers = sub.add_parser("peers", help="paginated peer view")
    peers.add_argument("--limit", type=int, default=DEFAULT_PAGE_LIMIT)
    peers.add_argument("--offset", type=int, default=0)
    peers.add_argument("--seed", default=None, help="only peers reported by this seed base URL")

    peer = sub.add_parser("peer", help="details for one peer")
    peer.add_argument("pubkey")
    return p


async def _run_forever(pipeline: IngestionPipeline) -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops.
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    await pipeline.start()
    try:
        await stop.wait()
    finally:
        await pipeline.stop()


async def _dispatch(args: argparse.Namespace, settings: Settings) -> int:
    credit_window = timedelta(hours=settings.metrics.credit_window_hours)

    if args.command == "ingest":
        pipeline = IngestionPipeline(settings)
        try:
            result = await pipeline.trigger()
        finally:
            await pipeline.close()
        _dump(result)
        return 0 if result.ok else 1

    if args.command == "run":
        await _run_forever(IngestionPipeline(settings))
        return 0

    db = DatabaseManager(settings.database.url)
    try:
        if args.command == "init-db":
            await db.init_schema_async()
        elif args.command == "status":
            _dump(await get_run_status(db, args.seed))
        elif args.command == "snapshot":
            view = await get_latest_network_snapshot(db)
            _dump(view if view is not None else {"snapshot": None})
        elif args.command == "peers":
            _dump(await get_peer_view(db, args.limit, args.offset, args.seed, credit_window=credit_window))
        elif args.command == "peer":
            details = await get_peer_details(db, args.pubkey, credit_window=credit_window)
            if details is None:
                logger.error("Node not found: %s", args.pubkey)
                return 1
            _dump(details)
    finally:
        await db.dispose_async()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    logger.debug("Settings: %s", settings.redacted_summary())

    return asyncio.run(_dispatch(args, settings))


if __name__ == "__main__":
    sys.exit(main())
