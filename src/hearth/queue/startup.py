"""Worker startup and shutdown.

Learn: Job processors belong to the feature code (import pipeline, AI
enrichment, CalDAV client), not to this package. They are passed in as a
mapping queue name → processor (or a full config when a queue needs an
on_failed hook or custom timings):

    workers = await start_workers(queues, manager, {
        QueueName.RECIPE_IMPORT: import_recipe,
        QueueName.CALDAV_SYNC: LazyWorkerConfig(
            QueueName.CALDAV_SYNC, sync_item, on_failed=record_sync_failure
        ),
        QueueName.SCHEDULED_TASKS: run_scheduled_task,
    })

Most queues get a lazy worker. The scheduled-tasks queue gets an always-on
Worker instead: its jobs are delayed until midnight, and only a polling
worker promotes them on time. Giving it a handler also seeds the daily
repeatable jobs.

Queues are always initialized, even without processors, so producers can
enqueue from a process that doesn't run workers.
"""

import asyncio
from dataclasses import dataclass
from typing import Mapping, Optional, Union

import structlog

from hearth.config import settings
from hearth.queue.config import WORKER_CONCURRENCY, QueueName
from hearth.queue.lazy_worker import LazyWorkerConfig, LazyWorkerManager
from hearth.queue.producers import initialize_scheduled_jobs
from hearth.queue.registry import QueueRegistry
from hearth.queue.worker import FailedHandler, Processor, Worker

logger = structlog.get_logger()

ALWAYS_ON_QUEUES = frozenset({QueueName.SCHEDULED_TASKS})


@dataclass
class AlwaysOnWorkerConfig:
    queue_name: str
    processor: Processor
    concurrency: int = 1
    drain_delay: Optional[float] = None
    on_failed: Optional[FailedHandler] = None
    stalled_interval: Optional[float] = None

    def __post_init__(self):
        self.queue_name = QueueName(self.queue_name).value


HandlerSpec = Union[Processor, LazyWorkerConfig, AlwaysOnWorkerConfig]


def build_config(
    queue_name: QueueName | str, spec: HandlerSpec
) -> Union[LazyWorkerConfig, AlwaysOnWorkerConfig]:
    if isinstance(spec, (LazyWorkerConfig, AlwaysOnWorkerConfig)):
        return spec
    name = QueueName(queue_name)
    if name in ALWAYS_ON_QUEUES:
        return AlwaysOnWorkerConfig(
            queue_name=name.value,
            processor=spec,
            concurrency=WORKER_CONCURRENCY[name],
        )
    return LazyWorkerConfig(
        queue_name=name.value,
        processor=spec,
        concurrency=WORKER_CONCURRENCY[name],
        drain_delay=settings.worker_drain_delay_seconds,
    )


async def start_always_on(queues: QueueRegistry, config: AlwaysOnWorkerConfig) -> Worker:
    worker = Worker(
        queues.get(config.queue_name),
        config.processor,
        concurrency=config.concurrency,
        drain_delay=(
            settings.worker_drain_delay_seconds
            if config.drain_delay is None
            else config.drain_delay
        ),
        on_failed=config.on_failed,
        stalled_interval=config.stalled_interval,
    )
    await worker.start()
    return worker


async def start_workers(
    queues: QueueRegistry,
    manager: LazyWorkerManager,
    handlers: Mapping[QueueName | str, HandlerSpec],
) -> dict[str, Worker]:
    """Initialize queues, register lazy workers, start always-on ones.

    Returns the always-on workers by queue name; pass them to stop_workers.
    """
    queues.initialize()
    configs = [build_config(name, spec) for name, spec in handlers.items()]
    lazy = [c for c in configs if isinstance(c, LazyWorkerConfig)]
    always_on = [c for c in configs if isinstance(c, AlwaysOnWorkerConfig)]

    # Registration waits for each queue's event subscription to be live
    await asyncio.gather(*(manager.register(config) for config in lazy))

    workers: dict[str, Worker] = {}
    for config in always_on:
        workers[config.queue_name] = await start_always_on(queues, config)
    if QueueName.SCHEDULED_TASKS.value in workers:
        await initialize_scheduled_jobs(queues.get(QueueName.SCHEDULED_TASKS))

    logger.info("queue.workers_started", lazy_workers=len(lazy), always_on_workers=len(workers))
    return workers


async def stop_workers(
    queues: QueueRegistry,
    manager: LazyWorkerManager,
    always_on: Optional[Mapping[str, Worker]] = None,
) -> None:
    """Stop every worker first, then close the queues they were using."""
    await manager.stop_all()
    if always_on:
        await asyncio.gather(*(worker.close() for worker in always_on.values()))
    await queues.close_all()
    logger.info("queue.workers_stopped")
