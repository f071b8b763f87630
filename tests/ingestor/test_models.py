"""Tests for pRPC response decoding."""

import pytest

from pnode_monitor.ingestor.models import (
    NodeStats,
    PeerListing,
    ProtocolDecodeError,
    address_host,
    decode_peer_listing,
)


class TestAddressHost:
    """Tests for stripping the gossip-reported port."""

    def test_ipv4_with_port(self) -> None:
        assert address_host("1.2.3.4:9001") == "1.2.3.4"

    def test_bracketed_ipv6(self) -> None:
        assert address_host("[2001:db8::1]:9001") == "2001:db8::1"

    def test_bare_host(self) -> None:
        assert address_host("1.2.3.4") == "1.2.3.4"


class TestPeerListing:
    """Tests for the PeerListing dataclass."""

    def test_from_dict_full(self) -> None:
        listing = PeerListing.from_dict(
            {
                "address": "1.2.3.4:9001",
                "pubkey": "PubA",
                "version": "0.7.3",
                "last_seen_timestamp": 1760875200,
                "credits": 1200,
                "storage_committed": 1_000_000,
                "storage_used": 250_000,
                "storage_usage_percent": 0.25,
                "is_public": True,
            }
        )

        assert listing.address == "1.2.3.4:9001"
        assert listing.host == "1.2.3.4"
        assert listing.pubkey == "PubA"
        assert listing.credits == 1200.0
        assert listing.storage_usage_percent == 0.25
        assert listing.is_public is True

    def test_from_dict_minimal(self) -> None:
        listing = PeerListing.from_dict({"address": "5.6.7.8:9001", "pubkey": "  "})
        assert listing.pubkey is None
        assert listing.version is None
        assert listing.last_seen_timestamp is None
        assert listing.is_public is None

    def test_bad_numbers_become_none(self) -> None:
        listing = PeerListing.from_dict({"address": "5.6.7.8:9001", "credits": "lots", "last_seen_timestamp": True})
        assert listing.credits is None
        assert listing.last_seen_timestamp is None

    def test_missing_address_raises(self) -> None:
        with pytest.raises(ProtocolDecodeError):
            PeerListing.from_dict({"pubkey": "PubA"})


class TestDecodePeerListing:
    """Tests for the two peer listing shapes."""

    def test_bare_array(self) -> None:
        peers = decode_peer_listing([{"address": "1.2.3.4:9001"}, {"address": "5.6.7.8:9001"}])
        assert [p.address for p in peers] == ["1.2.3.4:9001", "5.6.7.8:9001"]

    def test_pods_object(self) -> None:
        peers = decode_peer_listing({"pods": [{"address": "1.2.3.4:9001", "pubkey": "PubA"}], "count": 1})
        assert len(peers) == 1
        assert peers[0].pubkey == "PubA"

    def test_null_pods_is_empty(self) -> None:
        assert decode_peer_listing({"pods": None, "count": 0}) == []
        assert decode_peer_listing({"count": 0}) == []

    def test_drops_bad_entries(self) -> None:
        peers = decode_peer_listing([{"address": "1.2.3.4:9001"}, "garbage", {"pubkey": "no-address"}])
        assert [p.address for p in peers] == ["1.2.3.4:9001"]

    def test_rejects_unknown_shape(self) -> None:
        with pytest.raises(ProtocolDecodeError):
            decode_peer_listing("nope")
        with pytest.raises(ProtocolDecodeError):
            decode_peer_listing({"pods": "nope"})


class TestNodeStats:
    """Tests for get-stats decoding."""

    def test_from_dict(self) -> None:
        stats = NodeStats.from_dict(
            {
                "cpu_percent": 12.5,
                "uptime_seconds": 86400,
                "ram": {"used": 512, "total": 2048},
                "network": {"packets_in_per_sec": 10.5, "packets_out_per_sec": 3, "active_streams": 4},
                "storage": {"total_bytes": 1_000_000, "total_pages": 250},
            }
        )

        assert stats.cpu_percent == 12.5
        assert stats.uptime_seconds == 86400
        assert stats.ram_used_bytes == 512
        assert stats.ram_total_bytes == 2048
        assert stats.packets_out_per_sec == 3.0
        assert stats.active_streams == 4
        assert stats.total_bytes == 1_000_000
        assert stats.total_pages == 250

    def test_missing_sections(self) -> None:
        stats = NodeStats.from_dict({"uptime_seconds": 5, "ram": "n/a"})
        assert stats.uptime_seconds == 5
        assert stats.ram_used_bytes is None
        assert stats.total_bytes is None

    def test_rejects_non_object(self) -> None:
        with pytest.raises(ProtocolDecodeError):
            NodeStats.from_dict([1, 2, 3])
