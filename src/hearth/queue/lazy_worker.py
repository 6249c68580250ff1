"""Lazy worker manager — workers that exist only while there is work.

Learn: Most queues here are bursty and user-triggered (imports, AI
enrichment, calendar sync). Keeping a polling worker per queue alive all day
costs Redis round-trips and memory for nothing. Each registered queue gets a
small state machine instead:

    waiting_for_job ──job ready──► running ──drained──► (warm idle timer)
           ▲                          ▲                        │ no jobs
           │                          │ job ready              ▼
           │                          └──────────────── warm_idle (paused)
           │                                                   │ (cold timer)
           └───────────── job ready ◄──── cold_shutdown ◄──────┘ no jobs
                                         (worker destroyed)

Every change goes through _transition(), serialized by a per-queue lock.
Both idle timers re-check the live active + waiting + delayed counts right
before acting, so a job that slipped in while a timer slept is never
stranded behind a paused or destroyed worker.

A new job cancels any idle timer that is still sleeping and resumes a paused
worker (or rebuilds it if resume fails).
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from hearth.config import settings
from hearth.queue.config import DRAIN_DELAY_SECONDS, QueueName
from hearth.queue.events import QueueEvents
from hearth.queue.job_queue import ACTIVE, DELAYED, WAITING, JobQueue
from hearth.queue.registry import QueueRegistry
from hearth.queue.worker import FailedHandler, Processor, Worker
from hearth.realtime.pubsub import RedisConnections

logger = structlog.get_logger()


class WorkerPhase(str, Enum):
    WAITING_FOR_JOB = "waiting_for_job"
    RUNNING = "running"
    WARM_IDLE = "warm_idle"
    COLD_SHUTDOWN = "cold_shutdown"


class Trigger(str, Enum):
    JOB_READY = "job_ready"
    DRAINED = "drained"
    WARM_IDLE_ELAPSED = "warm_idle_elapsed"
    COLD_SHUTDOWN_ELAPSED = "cold_shutdown_elapsed"


@dataclass
class LazyWorkerConfig:
    queue_name: str
    processor: Processor
    concurrency: int = 1
    drain_delay: float = DRAIN_DELAY_SECONDS
    on_failed: Optional[FailedHandler] = None
    # None means "use the settings default / per-queue override"
    warm_idle_seconds: Optional[float] = None
    cold_shutdown_seconds: Optional[float] = None
    # None means "the queue's stalled-check interval"
    stalled_interval: Optional[float] = None

    def __post_init__(self):
        self.queue_name = QueueName(self.queue_name).value


@dataclass
class LazyWorkerState:
    config: LazyWorkerConfig
    queue: JobQueue
    events: Optional[QueueEvents] = None
    worker: Optional[Worker] = None
    phase: WorkerPhase = WorkerPhase.WAITING_FOR_JOB
    warm_idle_timer: Optional[asyncio.Task] = None
    cold_shutdown_timer: Optional[asyncio.Task] = None
    stopped: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def is_running(self) -> bool:
        return self.phase is WorkerPhase.RUNNING

    @property
    def queue_name(self) -> str:
        return self.config.queue_name


class LazyWorkerManager:
    """Owns one LazyWorkerState per registered queue."""

    def __init__(
        self,
        queues: QueueRegistry,
        redis: RedisConnections,
        worker_factory: Callable[..., Worker] = Worker,
    ):
        self.queues = queues
        self.redis = redis
        self.worker_factory = worker_factory
        self._states: dict[str, LazyWorkerState] = {}

    # ─── Registration ─────────────────────────────────────

    async def register(self, config: LazyWorkerConfig) -> bool:
        """Start watching a queue. Returns False if it is already registered."""
        name = config.queue_name
        if name in self._states:
            logger.warning("queue.lazy_worker_exists", queue=name)
            return False

        queue = self.queues.get(name)
        state = LazyWorkerState(config=config, queue=queue)
        self._states[name] = state

        events = QueueEvents(self.redis, queue)
        events.on("waiting", lambda _: self._transition(state, Trigger.JOB_READY))
        events.on("delayed", lambda _: self._transition(state, Trigger.JOB_READY))
        events.on("drained", lambda _: self._transition(state, Trigger.DRAINED))
        try:
            await events.start()
        except Exception:
            del self._states[name]
            await events.close()
            raise
        state.events = events

        # Jobs added before the listener was attached produce no event, and
        # active jobs left by a dead process need a worker to recover them
        counts = await queue.get_job_counts(WAITING, DELAYED, ACTIVE)
        if any(counts.values()):
            logger.info("queue.lazy_worker_found_pending", queue=name, **counts)
            await self._transition(state, Trigger.JOB_READY)

        logger.info("queue.lazy_worker_registered", queue=name, phase=state.phase.value)
        return True

    # ─── State machine ────────────────────────────────────

    def _warm_idle_seconds(self, state: LazyWorkerState) -> float:
        if state.config.warm_idle_seconds is not None:
            return state.config.warm_idle_seconds
        return settings.warm_idle_for(state.queue_name)

    def _cold_shutdown_seconds(self, state: LazyWorkerState) -> float:
        if state.config.cold_shutdown_seconds is not None:
            return state.config.cold_shutdown_seconds
        return settings.cold_shutdown_for(state.queue_name)

    async def _transition(self, state: LazyWorkerState, trigger: Trigger) -> None:
        async with state.lock:
            if state.stopped:
                return
            log = logger.bind(queue=state.queue_name, trigger=trigger.value, phase=state.phase.value)

            if trigger is Trigger.JOB_READY:
                self._cancel_timers(state)
                await self._ensure_running(state)

            elif trigger is Trigger.DRAINED:
                if state.phase is not WorkerPhase.RUNNING:
                    return
                self._cancel_timers(state)
                state.warm_idle_timer = self._start_timer(
                    state, self._warm_idle_seconds(state), Trigger.WARM_IDLE_ELAPSED
                )
                log.debug("queue.warm_idle_scheduled")

            elif trigger is Trigger.WARM_IDLE_ELAPSED:
                if state.phase is not WorkerPhase.RUNNING or state.worker is None:
                    return
                if await self._has_pending_jobs(state):
                    # Check again later; jobs still active here may be stalled
                    log.debug("queue.warm_idle_skipped")
                    state.warm_idle_timer = self._start_timer(
                        state, self._warm_idle_seconds(state), Trigger.WARM_IDLE_ELAPSED
                    )
                    return
                await state.worker.pause()
                state.phase = WorkerPhase.WARM_IDLE
                log.info("queue.lazy_worker_paused")
                state.cold_shutdown_timer = self._start_timer(
                    state, self._cold_shutdown_seconds(state), Trigger.COLD_SHUTDOWN_ELAPSED
                )

            elif trigger is Trigger.COLD_SHUTDOWN_ELAPSED:
                if state.phase is not WorkerPhase.WARM_IDLE:
                    return
                if await self._has_pending_jobs(state):
                    log.debug("queue.cold_shutdown_resuming")
                    await self._ensure_running(state)
                    return
                await self._destroy(state)
                state.phase = WorkerPhase.COLD_SHUTDOWN
                log.info("queue.lazy_worker_destroyed")

    async def _has_pending_jobs(self, state: LazyWorkerState) -> bool:
        try:
            counts = await state.queue.get_job_counts(ACTIVE, WAITING, DELAYED)
        except Exception as e:
            # Can't prove the queue is idle, so don't idle
            logger.error("queue.idle_check_failed", queue=state.queue_name, error=str(e))
            return True
        return any(counts.values())

    # ─── Timers ───────────────────────────────────────────

    def _start_timer(self, state: LazyWorkerState, delay: float, trigger: Trigger) -> asyncio.Task:
        return asyncio.create_task(self._fire_after(state, delay, trigger))

    async def _fire_after(self, state: LazyWorkerState, delay: float, trigger: Trigger) -> None:
        await asyncio.sleep(delay)
        me = asyncio.current_task()
        # Drop our handle so _cancel_timers can't interrupt the transition
        if trigger is Trigger.WARM_IDLE_ELAPSED:
            if state.warm_idle_timer is not me:
                return
            state.warm_idle_timer = None
        else:
            if state.cold_shutdown_timer is not me:
                return
            state.cold_shutdown_timer = None
        await self._transition(state, trigger)

    def _cancel_timers(self, state: LazyWorkerState) -> None:
        for timer in (state.warm_idle_timer, state.cold_shutdown_timer):
            if timer is not None:
                timer.cancel()
        state.warm_idle_timer = None
        state.cold_shutdown_timer = None

    # ─── Worker instances ─────────────────────────────────

    async def _ensure_running(self, state: LazyWorkerState) -> None:
        worker = state.worker
        if worker is not None and state.phase is WorkerPhase.RUNNING and not worker.is_paused():
            worker.wake()
            return

        if worker is not None and worker.is_paused():
            try:
                await worker.resume()
                state.phase = WorkerPhase.RUNNING
                logger.info("queue.lazy_worker_resumed", queue=state.queue_name)
                return
            except Exception as e:
                logger.error(
                    "queue.lazy_worker_resume_failed",
                    queue=state.queue_name,
                    error=str(e),
                )

        if state.worker is not None:
            await self._destroy(state)
        await self._create(state)

    async def _create(self, state: LazyWorkerState) -> None:
        config = state.config
        worker = self.worker_factory(
            state.queue,
            config.processor,
            concurrency=config.concurrency,
            drain_delay=config.drain_delay,
            on_failed=config.on_failed,
            stalled_interval=config.stalled_interval,
        )
        state.worker = worker
        try:
            await worker.start()
        except Exception as e:
            logger.error("queue.lazy_worker_start_failed", queue=state.queue_name, error=str(e))
            await self._destroy(state)
            state.phase = WorkerPhase.WAITING_FOR_JOB
            return
        state.phase = WorkerPhase.RUNNING
        logger.info("queue.lazy_worker_created", queue=state.queue_name)

    async def _destroy(self, state: LazyWorkerState) -> None:
        worker, state.worker = state.worker, None
        if worker is None:
            return
        try:
            await worker.close()
        except Exception as e:
            logger.error("queue.lazy_worker_close_failed", queue=state.queue_name, error=str(e))

    # ─── Stopping & introspection ─────────────────────────

    async def stop(self, queue_name: QueueName | str) -> None:
        queue_name = QueueName(queue_name).value
        state = self._states.pop(queue_name, None)
        if state is None:
            logger.debug("queue.lazy_worker_not_registered", queue=queue_name)
            return

        state.stopped = True
        self._cancel_timers(state)
        if state.events is not None:
            await state.events.close()
            state.events = None
        async with state.lock:
            await self._destroy(state)
            state.phase = WorkerPhase.COLD_SHUTDOWN
        logger.info("queue.lazy_worker_stopped", queue=queue_name)

    async def stop_all(self) -> None:
        if not self._states:
            logger.debug("queue.no_lazy_workers")
            return
        names = list(self._states)
        logger.info("queue.stopping_lazy_workers", count=len(names))
        await asyncio.gather(*(self.stop(name) for name in names))
        logger.info("queue.lazy_workers_stopped")

    def state(self, queue_name: QueueName | str) -> Optional[LazyWorkerState]:
        return self._states.get(QueueName(queue_name).value)

    def phase(self, queue_name: QueueName | str) -> Optional[WorkerPhase]:
        state = self.state(queue_name)
        return state.phase if state is not None else None

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {
            name: {
                "phase": state.phase.value,
                "is_running": state.is_running,
                "in_flight": state.worker.in_flight if state.worker is not None else 0,
            }
            for name, state in self._states.items()
        }
