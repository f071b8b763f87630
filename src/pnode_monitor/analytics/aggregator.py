"""Windowed derived metrics over the observation and sample history.

Everything here reads; nothing mutates registry state.
"""

import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from pnode_monitor.storage.repos import CreditSnapshotRepository

logger = logging.getLogger(__name__)

DEFAULT_CREDIT_WINDOW = timedelta(hours=24)
MAX_CREDIT_DELTA_BATCH = 500

CONTINUITY_WINDOWS: dict[str, timedelta] = {
    "h1": timedelta(hours=1),
    "h6": timedelta(hours=6),
    "h24": timedelta(hours=24),
}

GOSSIP_GAP_THRESHOLD = timedelta(hours=1)
MAX_GOSSIP_GAPS = 50


def percentile(values: Iterable[float], q: float) -> float | None:
    """Percentile with linear interpolation between closest ranks.

    Matches numpy's default ("linear") method. Returns None for no values.
    """
    if not 0 <= q <= 100:
        raise ValueError("q must be within [0, 100]")
    ordered = sorted(values)
    if not ordered:
        return None
    position = (len(ordered) - 1) * q / 100
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return float(ordered[lower])
    fraction = position - lower
    return float(ordered[lower] + (ordered[upper] - ordered[lower]) * fraction)


def median(values: Iterable[float]) -> float | None:
    return percentile(values, 50)


def uptime_continuity(first: datetime | None, last: datetime | None, window: timedelta) -> float:
    """Share of ``window`` spanned by the first and last sample in it, 0-100.

    Measures polling continuity, not self-reported uptime.
    """
    if first is None or last is None:
        return 0.0
    span = (last - first).total_seconds()
    return min(100.0, span / window.total_seconds() * 100)


def success_rate(samples_in_window: int, failure_count: int, is_public: bool) -> float:
    """Approximate 24h success rate, 0-100.

    ``samples / max(1, samples + failure_count)``. ``failure_count`` is the
    consecutive-failure counter, not a count of failures in the window.
    """
    if not is_public or samples_in_window <= 0:
        return 0.0
    return min(100.0, samples_in_window / max(1, samples_in_window + failure_count) * 100)


def normalize_usage_percent(value: float | None) -> float | None:
    """Seeds report usage either as a 0-1 fraction or as 0-100."""
    if value is None:
        return None
    return value if value > 1 else value * 100


@dataclass(frozen=True)
class GossipGap:
    start: datetime
    end: datetime


def find_gossip_gaps(
    observed_at: Sequence[datetime],
    *,
    threshold: timedelta = GOSSIP_GAP_THRESHOLD,
    max_gaps: int = MAX_GOSSIP_GAPS,
) -> list[GossipGap]:
    """Intervals between consecutive (ascending) observations longer than ``threshold``."""
    gaps: list[GossipGap] = []
    for prev, curr in zip(observed_at, observed_at[1:]):
        if curr - prev > threshold:
            gaps.append(GossipGap(start=prev, end=curr))
            if len(gaps) >= max_gaps:
                break
    return gaps


async def compute_credit_deltas(
    session: AsyncSession,
    pubkeys: Sequence[str],
    now: datetime,
    window: timedelta = DEFAULT_CREDIT_WINDOW,
) -> dict[str, float | None]:
    """Trailing credit delta per pubkey in two bulk queries.

    delta = latest snapshot - latest snapshot at or before ``now - window``.
    None unless both exist and are distinct rows. Batches above
    ``MAX_CREDIT_DELTA_BATCH`` pubkeys are skipped.
    """
    keys = list(dict.fromkeys(pubkeys))
    if not keys:
        return {}
    if len(keys) > MAX_CREDIT_DELTA_BATCH:
        logger.warning("Skipping credit deltas for %d pubkeys (limit %d)", len(keys), MAX_CREDIT_DELTA_BATCH)
        return {}

    repo = CreditSnapshotRepository(session)
    latest = await repo.latest_by_pubkey(keys)
    windowed = await repo.latest_by_pubkey(keys, at_or_before=now - window)

    deltas: dict[str, float | None] = {}
    for key in keys:
        head = latest.get(key)
        base = windowed.get(key)
        if head is None or base is None or head.observed_at == base.observed_at:
            deltas[key] = None
        else:
            deltas[key] = head.credits - base.credits
    return deltas
