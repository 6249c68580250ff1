"""Queue registry — the one place queues are created and closed.

Learn: Queues are created once at startup and closed once at shutdown,
after workers stop (a worker mid-job still needs its queue) and before the
Redis connection closes (closing a queue may still talk to Redis).
Application code asks the registry for a queue instead of building its own,
and gets a loud error if it asks before startup.
"""

from typing import Optional

import structlog

from hearth.queue.config import JOB_OPTIONS, QueueName
from hearth.queue.job_queue import JobQueue
from hearth.realtime.pubsub import RedisConnections

logger = structlog.get_logger()


class QueueRegistryNotInitialized(RuntimeError):
    """Raised when queues are requested before initialize()."""


class QueueRegistry:
    """Creates every named queue exactly once."""

    def __init__(self, redis: RedisConnections, prefix: str):
        self.redis = redis
        self.prefix = prefix
        self._queues: Optional[dict[QueueName, JobQueue]] = None

    @property
    def initialized(self) -> bool:
        return self._queues is not None

    def initialize(self) -> dict[QueueName, JobQueue]:
        """Create all queues. Safe to call more than once."""
        if self._queues is not None:
            logger.debug("queue.registry_already_initialized")
            return self._queues

        self._queues = {
            name: JobQueue(self.redis, name.value, self.prefix, JOB_OPTIONS[name])
            for name in QueueName
        }
        logger.info("queue.registry_initialized", queues=len(self._queues))
        return self._queues

    def get_queues(self) -> dict[QueueName, JobQueue]:
        if self._queues is None:
            raise QueueRegistryNotInitialized(
                "Queue registry not initialized. Call initialize() at startup."
            )
        return self._queues

    def get(self, name: QueueName | str) -> JobQueue:
        return self.get_queues()[QueueName(name)]

    async def close_all(self) -> None:
        if self._queues is None:
            logger.debug("queue.registry_nothing_to_close")
            return
        for queue in self._queues.values():
            await queue.close()
        self._queues = None
        logger.info("queue.registry_closed")
