"""Redis connection management — the shared store for pub/sub and job queues.

Learn: Redis pub/sub is fire-and-forget. If no one is listening, the message
is lost. That's fine for real-time UI updates (the frontend can always query
the API to catch up).

One RedisConnections object exists per process (owned by the Runtime). It
holds the shared client used for PUBLISH and for job-queue commands. Every
pub/sub consumer (multiplexer, invalidation listener, queue events) calls
pubsub(), which checks a dedicated connection out of the same pool.

Reconnects are the client's job: the pool is built with an exponential
backoff Retry policy, and redis-py re-issues SUBSCRIBE/PSUBSCRIBE for a
PubSub object when its connection is re-established.
"""

from typing import Optional

import redis.asyncio as aioredis
import structlog
from redis.asyncio.client import PubSub
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

logger = structlog.get_logger()

MAX_RETRIES = 20
MAX_BACKOFF_SECONDS = 20.0


class RedisConnections:
    """Owns the process-wide Redis client.

    Either pass a URL (production) or an already-built client (tests pass
    a fakeredis instance).
    """

    def __init__(
        self,
        url: Optional[str] = None,
        client: Optional[aioredis.Redis] = None,
    ):
        if url is None and client is None:
            raise ValueError("RedisConnections needs a url or a client")
        self._url = url
        self._client = client

    async def connect(self) -> aioredis.Redis:
        """Create the client (if needed) and verify the connection."""
        if self._client is None:
            self._client = aioredis.from_url(
                self._url,
                encoding="utf-8",
                decode_responses=True,
                health_check_interval=30,
                socket_keepalive=True,
                socket_connect_timeout=10,
                retry=Retry(
                    ExponentialBackoff(cap=MAX_BACKOFF_SECONDS, base=1),
                    MAX_RETRIES,
                ),
                retry_on_error=[RedisConnectionError, RedisTimeoutError],
            )
        await self._client.ping()
        return self._client

    @property
    def client(self) -> aioredis.Redis:
        """Get the Redis client (must be connected first)."""
        if self._client is None:
            raise RuntimeError("Redis not initialized. Call connect() first.")
        return self._client

    def pubsub(self) -> PubSub:
        """A new PubSub object; it holds its own pooled connection once subscribed."""
        return self.client.pubsub()

    async def publish(self, channel: str, message: str) -> int:
        """PUBLISH and return how many subscribers received the message."""
        return await self.client.publish(channel, message)

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception as e:
            logger.warning("redis.ping_failed", error=str(e))
            return False

    async def close(self) -> None:
        """Close the client and its pool. Call last during shutdown."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("redis.closed")
