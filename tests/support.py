"""Helpers shared by the async tests."""

import asyncio
import time
from typing import Any, AsyncIterator, Callable, Optional

from fakeredis import FakeServer
from fakeredis import aioredis as fake_aioredis

from hearth.realtime.pubsub import RedisConnections


def make_redis() -> RedisConnections:
    """A RedisConnections around a fresh in-memory server."""
    client = fake_aioredis.FakeRedis(server=FakeServer(), decode_responses=True)
    return RedisConnections(client=client)


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    """Poll `predicate` until it is true; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(0.01)


def wait_until_sync(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    """Same as wait_until, for the synchronous TestClient tests."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met within timeout")
        time.sleep(0.01)


async def collect_into(iterator: AsyncIterator[Any], items: list) -> None:
    async for item in iterator:
        items.append(item)


async def channel_subscribers(redis, channel: str) -> int:
    result = await redis.client.pubsub_numsub(channel)
    return int(result[0][1]) if result else 0


class FakeHandle:
    """Stands in for a WebSocket: records how it was closed."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.closed_with: Optional[tuple[int, Optional[str]]] = None

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self.fail:
            raise RuntimeError("socket already gone")
        self.closed_with = (code, reason)
