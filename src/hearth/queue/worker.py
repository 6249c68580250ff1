"""Queue worker — pulls jobs from one JobQueue and runs a processor on them.

Learn: The worker is a polling loop with bounded concurrency:

    acquire slot (semaphore) → fetch_next() → job? → run processor in a task
                                     │ none
                                     └──► sleep drain_delay (wake() cuts it short)

When the queue runs dry after having had work and nothing is in flight, the
worker announces "drained" on the queue's event channel. The lazy worker
manager uses that to decide when to pause or destroy the worker.

Each claimed job holds a lock in Redis that a background task renews while
the job runs. A second task periodically asks the queue for stalled jobs
(claimed by a worker that died) so they are retried or failed instead of
sitting in the active list forever.

Job outcomes go back to the queue: complete() on success, fail() on error
(which retries with backoff until attempts run out). Terminal failures are
reported to the optional on_failed(job, error) callback; anything that
callback raises is logged, never propagated.
"""

import asyncio
import inspect
import uuid
from typing import Any, Awaitable, Callable, Optional

import structlog

from hearth.queue.config import (
    DRAIN_DELAY_SECONDS,
    LOCK_DURATION_SECONDS,
    LOCK_RENEW_SECONDS,
    MAX_STALLED_COUNT,
    stalled_interval_for,
)
from hearth.queue.job_queue import FAILED, Job, JobQueue, QueueClosedError

logger = structlog.get_logger()

Processor = Callable[[Job], Awaitable[Any]]
FailedHandler = Callable[[Job, BaseException], Any]


class WorkerClosedError(RuntimeError):
    """Raised when a closed worker is started or resumed."""


class Worker:
    """Processes jobs from one queue with at most `concurrency` in flight."""

    def __init__(
        self,
        queue: JobQueue,
        processor: Processor,
        concurrency: int = 1,
        drain_delay: float = DRAIN_DELAY_SECONDS,
        on_failed: Optional[FailedHandler] = None,
        stalled_interval: Optional[float] = None,
        lock_duration: float = LOCK_DURATION_SECONDS,
        max_stalled_count: int = MAX_STALLED_COUNT,
    ):
        self.queue = queue
        self.processor = processor
        self.concurrency = concurrency
        self.drain_delay = drain_delay
        self.on_failed = on_failed
        self.stalled_interval = (
            stalled_interval_for(queue.name) if stalled_interval is None else stalled_interval
        )
        self.lock_duration = lock_duration
        self.lock_renew_interval = min(LOCK_RENEW_SECONDS, lock_duration / 4)
        self.max_stalled_count = max_stalled_count
        self.token = uuid.uuid4().hex

        self._semaphore = asyncio.Semaphore(concurrency)
        self._in_flight: set[asyncio.Task] = set()
        self._wakeup = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._maintenance: list[asyncio.Task] = []
        self._jobs: dict[str, Job] = {}
        self._report_drained = True
        self._paused = False
        self._closed = False
        self.processed = 0
        self.failed = 0

    # ─── Lifecycle ────────────────────────────────────────

    async def start(self) -> None:
        if self._closed:
            raise WorkerClosedError(f"Worker for {self.queue.name} is closed")
        if self._loop_task is not None and not self._loop_task.done():
            return
        self._paused = False
        self._report_drained = True
        self._loop_task = asyncio.create_task(self._run_loop())
        self._maintenance = [
            asyncio.create_task(self._renew_locks_loop()),
            asyncio.create_task(self._stalled_check_loop()),
        ]
        logger.info(
            "queue.worker_started",
            queue=self.queue.name,
            concurrency=self.concurrency,
        )

    async def pause(self) -> None:
        """Stop taking new jobs and wait for in-flight ones to finish."""
        self._paused = True
        self.wake()
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        logger.debug("queue.worker_paused", queue=self.queue.name)

    async def resume(self) -> None:
        if self._closed:
            raise WorkerClosedError(f"Worker for {self.queue.name} is closed")
        if self._loop_task is None or self._loop_task.done():
            raise WorkerClosedError(f"Worker for {self.queue.name} is not running")
        self._paused = False
        self._report_drained = True
        self.wake()
        logger.debug("queue.worker_resumed", queue=self.queue.name)

    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_running(self) -> bool:
        return (
            not self._closed
            and not self._paused
            and self._loop_task is not None
            and not self._loop_task.done()
        )

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def wake(self) -> None:
        """Cut the current idle sleep short (new work, pause, close)."""
        self._wakeup.set()

    async def close(self) -> None:
        """Stop polling, let in-flight jobs finish, then stop the loop."""
        if self._closed:
            return
        self._closed = True
        self.wake()
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        tasks = list(self._maintenance)
        if self._loop_task is not None:
            tasks.append(self._loop_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(
            "queue.worker_closed",
            queue=self.queue.name,
            processed=self.processed,
            failed=self.failed,
        )

    # ─── Polling loop ─────────────────────────────────────

    async def _sleep(self, seconds: float) -> None:
        self._wakeup.clear()
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run_loop(self) -> None:
        while not self._closed:
            if self._paused:
                await self._sleep(self.drain_delay)
                continue

            await self._semaphore.acquire()
            if self._paused or self._closed:
                self._semaphore.release()
                continue

            try:
                job = await self.queue.fetch_next(self.token, self.lock_duration)
            except QueueClosedError:
                self._semaphore.release()
                logger.warning("queue.worker_queue_closed", queue=self.queue.name)
                return
            except Exception as e:
                self._semaphore.release()
                logger.warning("queue.fetch_failed", queue=self.queue.name, error=str(e))
                await self._sleep(self.drain_delay)
                continue

            if job is None:
                self._semaphore.release()
                # A fresh or resumed worker that finds nothing reports drained too
                if self._report_drained and not self._in_flight:
                    self._report_drained = False
                    await self._announce_drained()
                await self._sleep(self.drain_delay)
                continue

            self._report_drained = True
            task = asyncio.create_task(self._process(job))
            self._in_flight.add(task)
            task.add_done_callback(self._job_done)

    def _job_done(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        self._semaphore.release()
        self.wake()

    async def _announce_drained(self) -> None:
        try:
            await self.queue.notify_drained()
        except Exception as e:
            logger.warning("queue.drained_notify_failed", queue=self.queue.name, error=str(e))

    # ─── Job execution ────────────────────────────────────

    async def _process(self, job: Job) -> None:
        self._jobs[job.id] = job
        try:
            await self._run_job(job)
        finally:
            self._jobs.pop(job.id, None)

    async def _run_job(self, job: Job) -> None:
        log = logger.bind(queue=self.queue.name, job_id=job.id, attempt=job.attempts_made + 1)
        try:
            result = await self.processor(job)
        except Exception as e:
            log.error("queue.job_failed", error=str(e))
            try:
                state = await self.queue.fail(job, e)
            except Exception as store_error:
                log.error("queue.job_fail_record_failed", error=str(store_error))
                return
            self.failed += 1
            if state == FAILED:
                await self._notify_failed(job, e)
            return

        try:
            await self.queue.complete(job, result)
        except Exception as e:
            log.error("queue.job_complete_record_failed", error=str(e))
            return
        self.processed += 1
        log.debug("queue.job_completed")

    async def _notify_failed(self, job: Job, error: BaseException) -> None:
        if self.on_failed is None:
            return
        try:
            result = self.on_failed(job, error)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                "queue.on_failed_handler_error",
                queue=self.queue.name,
                job_id=job.id,
                error=str(e),
            )

    # ─── Locks & stalled jobs ─────────────────────────────

    async def _renew_locks_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.lock_renew_interval)
            for job in list(self._jobs.values()):
                try:
                    if not await self.queue.extend_lock(job, self.lock_duration):
                        logger.warning("queue.job_lock_lost", queue=self.queue.name, job_id=job.id)
                except QueueClosedError:
                    return
                except Exception as e:
                    logger.warning(
                        "queue.job_lock_renew_failed",
                        queue=self.queue.name,
                        job_id=job.id,
                        error=str(e),
                    )

    async def _stalled_check_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.stalled_interval)
            # A paused worker stays quiet; it only pauses with nothing active
            if self._paused:
                continue
            try:
                failed = await self.queue.check_stalled(self.max_stalled_count)
            except QueueClosedError:
                return
            except Exception as e:
                logger.warning("queue.stalled_check_failed", queue=self.queue.name, error=str(e))
                continue
            for job in failed:
                await self._notify_failed(job, RuntimeError(job.failed_reason))
