"""Queue registry tests."""

import pytest

from hearth.queue.config import JOB_OPTIONS, QueueName
from hearth.queue.registry import QueueRegistry, QueueRegistryNotInitialized


@pytest.mark.asyncio
async def test_queues_requested_before_startup_fail_loudly(redis):
    registry = QueueRegistry(redis, "test:queue")
    assert not registry.initialized
    with pytest.raises(QueueRegistryNotInitialized):
        registry.get_queues()
    with pytest.raises(QueueRegistryNotInitialized):
        registry.get(QueueName.RECIPE_IMPORT)


@pytest.mark.asyncio
async def test_initialize_creates_every_queue_once(redis):
    registry = QueueRegistry(redis, "test:queue")
    queues = registry.initialize()
    assert set(queues) == set(QueueName)
    assert registry.initialize() is queues

    caldav = registry.get("caldav-sync")
    assert caldav is registry.get(QueueName.CALDAV_SYNC)
    assert caldav.default_options == JOB_OPTIONS[QueueName.CALDAV_SYNC]
    await registry.close_all()


@pytest.mark.asyncio
async def test_close_all_closes_queues_and_resets(redis):
    registry = QueueRegistry(redis, "test:queue")
    queue = registry.initialize()[QueueName.AUTO_TAGGING]
    await registry.close_all()
    assert queue.is_closed
    assert not registry.initialized
    with pytest.raises(QueueRegistryNotInitialized):
        registry.get_queues()
