"""Test fixtures — an in-memory Redis per test.

Learn: fakeredis implements the Redis protocol in process, pub/sub and
pattern subscriptions included. Each test gets its own FakeServer, so
channels, queues and job hashes never leak from one test into the next.

Everything else (multiplexers, emitters, queues) is built on top of the
`redis` fixture exactly the way Runtime builds it in production.
"""

import pytest_asyncio

from hearth.queue.registry import QueueRegistry
from hearth.realtime.emitter import TypedEmitter
from hearth.realtime.events import DOMAIN_EVENTS, RECIPES
from hearth.realtime.multiplexer import MultiplexerRegistry
from support import make_redis

NAMESPACE = "hearth"


@pytest_asyncio.fixture()
async def redis():
    connections = make_redis()
    await connections.connect()
    yield connections
    await connections.close()


@pytest_asyncio.fixture()
async def emitter(redis):
    return TypedEmitter(redis, NAMESPACE, RECIPES, DOMAIN_EVENTS[RECIPES])


@pytest_asyncio.fixture()
async def multiplexers(redis):
    registry = MultiplexerRegistry(redis, NAMESPACE)
    yield registry
    await registry.close_all()


@pytest_asyncio.fixture()
async def queues(redis):
    registry = QueueRegistry(redis, "test:queue")
    registry.initialize()
    yield registry
    await registry.close_all()
