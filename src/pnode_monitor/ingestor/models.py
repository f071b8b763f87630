"""Data models for the ingestor module.

pRPC responses are loosely shaped: the peer listing arrives either as a bare
array or as ``{"pods": [...], "count": n}``, and every numeric field may be
missing. Everything is decoded once here so the rest of the engine only sees
``PeerListing`` and ``NodeStats``.
"""

import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


class ProtocolDecodeError(ValueError):
    """Raised when a pRPC result does not have the expected shape."""


def _opt_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _opt_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _opt_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    return None


def address_host(address: str) -> str:
    """Strip the gossip-reported port from ``ip:port`` or ``[ipv6]:port``."""
    if address.startswith("["):
        return address[1:].split("]", 1)[0]
    if address.count(":") == 1:
        return address.split(":", 1)[0]
    return address


@dataclass(frozen=True)
class PeerListing:
    """One entry of a seed's peer listing."""

    address: str
    pubkey: str | None = None
    version: str | None = None
    last_seen_timestamp: int | None = None
    credits: float | None = None
    storage_committed: int | None = None
    storage_used: int | None = None
    storage_usage_percent: float | None = None
    is_public: bool | None = None

    @property
    def host(self) -> str:
        return address_host(self.address)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PeerListing":
        """Create a PeerListing from a ``get-pods`` entry."""
        address = _opt_str(data.get("address"))
        if address is None:
            raise ProtocolDecodeError("peer entry has no address")
        return cls(
            address=address,
            pubkey=_opt_str(data.get("pubkey")),
            version=_opt_str(data.get("version")),
            last_seen_timestamp=_opt_int(data.get("last_seen_timestamp")),
            credits=_opt_float(data.get("credits")),
            storage_committed=_opt_int(data.get("storage_committed")),
            storage_used=_opt_int(data.get("storage_used")),
            storage_usage_percent=_opt_float(data.get("storage_usage_percent")),
            is_public=_opt_bool(data.get("is_public")),
        )


def decode_peer_listing(result: Any) -> list[PeerListing]:
    """Normalize a ``get-pods`` result into a list of listings.

    Accepts a bare array or an object with a ``pods`` array (null or absent
    means no peers). Entries that are not objects or have no address are
    dropped with a warning.
    """
    if isinstance(result, list):
        entries = result
    elif isinstance(result, dict):
        pods = result.get("pods") or []
        if not isinstance(pods, list):
            raise ProtocolDecodeError("'pods' is not an array")
        entries = pods
    else:
        raise ProtocolDecodeError(f"unexpected peer listing type: {type(result).__name__}")

    listings: list[PeerListing] = []
    for entry in entries:
        if not isinstance(entry, dict):
            logger.warning("Dropping non-object peer entry: %r", entry)
            continue
        try:
            listings.append(PeerListing.from_dict(entry))
        except ProtocolDecodeError as e:
            logger.warning("Dropping peer entry: %s", e)
    return listings


@dataclass(frozen=True)
class NodeStats:
    """Live telemetry returned by ``get-stats``."""

    cpu_percent: float | None = None
    uptime_seconds: int | None = None
    ram_used_bytes: int | None = None
    ram_total_bytes: int | None = None
    packets_in_per_sec: float | None = None
    packets_out_per_sec: float | None = None
    active_streams: int | None = None
    total_bytes: int | None = None
    total_pages: int | None = None

    @classmethod
    def from_dict(cls, data: Any) -> "NodeStats":
        """Create NodeStats from a ``get-stats`` result object."""
        if not isinstance(data, dict):
            raise ProtocolDecodeError(f"unexpected stats type: {type(data).__name__}")

        ram = data.get("ram") if isinstance(data.get("ram"), dict) else {}
        network = data.get("network") if isinstance(data.get("network"), dict) else {}
        storage = data.get("storage") if isinstance(data.get("storage"), dict) else {}

        return cls(
            cpu_percent=_opt_float(data.get("cpu_percent")),
            uptime_seconds=_opt_int(data.get("uptime_seconds")),
            ram_used_bytes=_opt_int(ram.get("used")),
            ram_total_bytes=_opt_int(ram.get("total")),
            packets_in_per_sec=_opt_float(network.get("packets_in_per_sec")),
            packets_out_per_sec=_opt_float(network.get("packets_out_per_sec")),
            active_streams=_opt_int(network.get("active_streams")),
            total_bytes=_opt_int(storage.get("total_bytes")),
            total_pages=_opt_int(storage.get("total_pages")),
        )
