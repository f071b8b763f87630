"""Single-flight guard for ingestion cycles backed by Redis."""

import logging
import uuid

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

DEFAULT_KEY = "pnode_monitor:ingestion:lock"
DEFAULT_TTL_SECONDS = 900

# Delete the key only if it still holds our token.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class IngestionAlreadyRunningError(RuntimeError):
    """Raised when another cycle holds the run lock."""


class RunLock:
    """Redis ``SET NX EX`` lock with a per-holder token.

    The TTL covers holders that crash without releasing.

    Example:
        >>> lock = RunLock(Redis.from_url("redis://localhost:6379"))
        >>> token = await lock.acquire()
        >>> try:
        ...     ...
        ... finally:
        ...     await lock.release(token)
    """

    def __init__(
        self,
        redis: Redis,
        *,
        key: str = DEFAULT_KEY,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        self._redis = redis
        self._key = key
        self._ttl_seconds = ttl_seconds

    async def acquire(self) -> str:
        """Take the lock and return the holder token.

        Raises:
            IngestionAlreadyRunningError: If the lock is already held.
        """
        token = uuid.uuid4().hex
        was_set = await self._redis.set(self._key, token, nx=True, ex=self._ttl_seconds)
        if not was_set:
            raise IngestionAlreadyRunningError("an ingestion cycle is already running")
        logger.debug("Acquired run lock %s", self._key)
        return token

    async def release(self, token: str) -> bool:
        """Release the lock if ``token`` still holds it."""
        released = await self._redis.eval(_RELEASE_SCRIPT, 1, self._key, token)
        if not released:
            logger.warning("Run lock %s expired or was taken over before release", self._key)
        return bool(released)
