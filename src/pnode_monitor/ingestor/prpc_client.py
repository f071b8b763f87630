"""Async pRPC client for seeds and pnodes.

Every call is a single JSON-RPC POST to ``<base_url><rpc_path>``. There is
no retry here: retry policy belongs to the backoff scheduler.
"""

import asyncio
import json
import logging
from types import TracebackType
from typing import Any

import aiohttp

from pnode_monitor.ingestor.models import (
    NodeStats,
    PeerListing,
    ProtocolDecodeError,
    decode_peer_listing,
)

logger = logging.getLogger(__name__)

DEFAULT_RPC_PATH = "/rpc"
DEFAULT_TIMEOUT_SECONDS = 10.0

METHOD_GET_PODS = "get-pods"
METHOD_GET_STATS = "get-stats"


class PrpcClientError(Exception):
    """Base exception for pRPC client errors."""


class TransportError(PrpcClientError):
    """Connection refused, timeout, or non-2xx response."""


class ProtocolError(PrpcClientError):
    """Malformed JSON, an RPC error object, or a missing result."""


class PrpcClient:
    """JSON-RPC caller for ``get-pods`` and ``get-stats``.

    The underlying ``aiohttp.ClientSession`` is created lazily and shared by
    all calls; use the client as an async context manager or call
    ``close()`` when done.

    Example:
        >>> async with PrpcClient(timeout_seconds=5) as client:
        ...     peers = await client.list_peers("http://192.190.136.36:6000")
    """

    def __init__(
        self,
        *,
        rpc_path: str = DEFAULT_RPC_PATH,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._rpc_path = rpc_path
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "PrpcClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def endpoint(self, base_url: str) -> str:
        if not base_url.startswith(("http://", "https://")):
            raise ValueError(f"pRPC base URL must be http(s): {base_url}")
        return base_url.rstrip("/") + self._rpc_path

    async def call(self, base_url: str, method: str) -> Any:
        """Issue one JSON-RPC call and return its ``result``.

        Raises:
            TransportError: On connection failure, timeout, or non-2xx status.
            ProtocolError: On malformed JSON, an ``error`` object, or no ``result``.
        """
        url = self.endpoint(base_url)
        payload = {"jsonrpc": "2.0", "method": method, "id": 1}
        session = self._get_session()

        try:
            async with session.post(url, json=payload, timeout=self._timeout) as resp:
                if resp.status < 200 or resp.status >= 300:
                    raise TransportError(f"{method} {url}: HTTP {resp.status}")
                body = await resp.text()
        except asyncio.TimeoutError as e:
            raise TransportError(f"{method} {url}: timed out") from e
        except aiohttp.ClientError as e:
            raise TransportError(f"{method} {url}: {e}") from e

        try:
            data = json.loads(body)
        except ValueError as e:
            raise ProtocolError(f"{method} {url}: malformed JSON") from e

        if not isinstance(data, dict):
            raise ProtocolError(f"{method} {url}: response is not an object")
        error = data.get("error")
        if error is not None:
            if isinstance(error, dict):
                raise ProtocolError(
                    f"{method} {url}: RPC error {error.get('code')}: {error.get('message')}"
                )
            raise ProtocolError(f"{method} {url}: RPC error {error}")
        if data.get("result") is None:
            raise ProtocolError(f"{method} {url}: missing result")
        return data["result"]

    async def list_peers(self, base_url: str) -> list[PeerListing]:
        """Fetch and decode a seed's peer listing."""
        result = await self.call(base_url, METHOD_GET_PODS)
        try:
            peers = decode_peer_listing(result)
        except ProtocolDecodeError as e:
            raise ProtocolError(f"{METHOD_GET_PODS} {base_url}: {e}") from e
        logger.debug("Seed %s reported %d peers", base_url, len(peers))
        return peers

    async def get_stats(self, base_url: str) -> NodeStats:
        """Fetch and decode a pnode's live stats."""
        result = await self.call(base_url, METHOD_GET_STATS)
        try:
            return NodeStats.from_dict(result)
        except ProtocolDecodeError as e:
            raise ProtocolError(f"{METHOD_GET_STATS} {base_url}: {e}") from e
