"""Lazy worker manager tests.

Learn: Idle timers are shrunk to fractions of a second so the whole
waiting → running → warm idle → cold shutdown cycle runs in well under a
second. The manager only learns about jobs through queue events, exactly as
in production, so these tests also exercise the event stream.
"""

import asyncio

import pytest
import pytest_asyncio

from hearth.queue.config import JobOptions, QueueName
from hearth.queue.lazy_worker import LazyWorkerConfig, LazyWorkerManager, WorkerPhase
from hearth.queue.worker import Worker, WorkerClosedError
from support import wait_until

QUEUE = QueueName.AUTO_TAGGING


def make_config(processor, warm=0.1, cold=0.2, **kwargs) -> LazyWorkerConfig:
    return LazyWorkerConfig(
        queue_name=QUEUE,
        processor=processor,
        drain_delay=0.02,
        warm_idle_seconds=warm,
        cold_shutdown_seconds=cold,
        **kwargs,
    )


@pytest_asyncio.fixture()
async def manager(redis, queues):
    lazy = LazyWorkerManager(queues, redis)
    yield lazy
    await lazy.stop_all()


class Recorder:
    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.job_ids: list[str] = []

    async def __call__(self, job):
        if self.delay:
            await asyncio.sleep(self.delay)
        self.job_ids.append(job.id)


@pytest.mark.asyncio
async def test_no_worker_until_a_job_arrives(manager, queues):
    processor = Recorder()
    assert await manager.register(make_config(processor, warm=5.0))
    state = manager.state(QUEUE)
    assert state.phase is WorkerPhase.WAITING_FOR_JOB
    assert state.worker is None

    await queues.get(QUEUE).add("auto-tag", {}, job_id="auto-tag-r1")
    await wait_until(lambda: processor.job_ids == ["auto-tag-r1"])
    assert manager.phase(QUEUE) is WorkerPhase.RUNNING


@pytest.mark.asyncio
async def test_jobs_queued_before_registration_start_the_worker(manager, queues):
    await queues.get(QUEUE).add("auto-tag", {}, job_id="early")
    processor = Recorder()
    await manager.register(make_config(processor))
    assert manager.phase(QUEUE) is WorkerPhase.RUNNING
    await wait_until(lambda: processor.job_ids == ["early"])


@pytest.mark.asyncio
async def test_idle_worker_is_paused_then_destroyed(manager, queues):
    processor = Recorder()
    await manager.register(make_config(processor))
    await queues.get(QUEUE).add("auto-tag", {}, job_id="j1")
    await wait_until(lambda: processor.job_ids == ["j1"])

    state = manager.state(QUEUE)
    worker = state.worker
    await wait_until(lambda: state.phase is WorkerPhase.WARM_IDLE)
    assert worker.is_paused()
    assert state.worker is worker

    await wait_until(lambda: state.phase is WorkerPhase.COLD_SHUTDOWN)
    assert state.worker is None


@pytest.mark.asyncio
async def test_job_during_warm_idle_resumes_the_same_worker(manager, queues):
    processor = Recorder()
    await manager.register(make_config(processor, warm=0.05, cold=5.0))
    queue = queues.get(QUEUE)
    await queue.add("auto-tag", {}, job_id="j1")
    state = manager.state(QUEUE)
    await wait_until(lambda: state.phase is WorkerPhase.WARM_IDLE)
    paused = state.worker

    await queue.add("auto-tag", {}, job_id="j2")
    await wait_until(lambda: processor.job_ids == ["j1", "j2"])
    assert state.worker is paused


@pytest.mark.asyncio
async def test_job_after_cold_shutdown_builds_a_new_worker(manager, queues):
    processor = Recorder()
    await manager.register(make_config(processor, warm=0.05, cold=0.05))
    queue = queues.get(QUEUE)
    await queue.add("auto-tag", {}, job_id="j1")
    state = manager.state(QUEUE)
    await wait_until(lambda: state.phase is WorkerPhase.COLD_SHUTDOWN)

    await queue.add("auto-tag", {}, job_id="j2")
    await wait_until(lambda: processor.job_ids == ["j1", "j2"])
    assert state.worker is not None


@pytest.mark.asyncio
async def test_new_job_cancels_a_pending_pause(manager, queues):
    fast_then_slow = Recorder()
    await manager.register(make_config(fast_then_slow, warm=0.3, cold=5.0))
    queue = queues.get(QUEUE)
    state = manager.state(QUEUE)

    await queue.add("auto-tag", {}, job_id="j1")
    # Drained → the warm idle timer is armed
    await wait_until(lambda: state.warm_idle_timer is not None)
    pending_pause = state.warm_idle_timer

    fast_then_slow.delay = 0.5
    await queue.add("auto-tag", {}, job_id="j2")
    await wait_until(lambda: pending_pause.done())
    assert pending_pause.cancelled()

    # Past the original deadline, with the slow job still running
    await asyncio.sleep(0.35)
    assert state.phase is WorkerPhase.RUNNING
    assert not state.worker.is_paused()
    await wait_until(lambda: fast_then_slow.job_ids == ["j1", "j2"])


@pytest.mark.asyncio
async def test_failed_resume_falls_back_to_a_new_worker(redis, queues):
    class NoResumeWorker(Worker):
        async def resume(self):
            raise WorkerClosedError("cannot resume")

    manager = LazyWorkerManager(queues, redis, worker_factory=NoResumeWorker)
    processor = Recorder()
    try:
        await manager.register(make_config(processor, warm=0.05, cold=5.0))
        queue = queues.get(QUEUE)
        await queue.add("auto-tag", {}, job_id="j1")
        state = manager.state(QUEUE)
        await wait_until(lambda: state.phase is WorkerPhase.WARM_IDLE)
        first = state.worker

        await queue.add("auto-tag", {}, job_id="j2")
        await wait_until(lambda: processor.job_ids == ["j1", "j2"])
        assert state.worker is not first
        assert state.phase is not WorkerPhase.COLD_SHUTDOWN
    finally:
        await manager.stop_all()


@pytest.mark.asyncio
async def test_duplicate_registration_is_refused(manager):
    processor = Recorder()
    assert await manager.register(make_config(processor)) is True
    assert await manager.register(make_config(processor)) is False


@pytest.mark.asyncio
async def test_on_failed_is_passed_to_the_worker(manager, queues):
    failures = []

    async def always_fails(job):
        raise RuntimeError("model unavailable")

    config = make_config(always_fails, on_failed=lambda job, err: failures.append(job.id))
    await manager.register(config)
    # The queue default is 3 attempts; this job gets one
    await queues.get(QUEUE).add("auto-tag", {}, job_id="j1", options=JobOptions(attempts=1))
    await wait_until(lambda: failures == ["j1"])


@pytest.mark.asyncio
async def test_stop_destroys_worker_and_forgets_queue(manager, queues):
    processor = Recorder()
    await manager.register(make_config(processor, warm=5.0))
    await queues.get(QUEUE).add("auto-tag", {}, job_id="j1")
    await wait_until(lambda: processor.job_ids == ["j1"])
    state = manager.state(QUEUE)
    worker = state.worker

    await manager.stop(QUEUE)
    assert manager.state(QUEUE) is None
    assert state.worker is None
    assert not worker.is_running
    assert state.warm_idle_timer is None

    # Unknown queues are ignored
    await manager.stop(QueueName.CALDAV_SYNC)


@pytest.mark.asyncio
async def test_snapshot(manager, queues):
    await manager.register(make_config(Recorder()))
    assert manager.snapshot() == {
        "auto-tagging": {"phase": "waiting_for_job", "is_running": False, "in_flight": 0}
    }


@pytest.mark.asyncio
async def test_idle_timers_wait_their_full_duration(manager, queues):
    loop = asyncio.get_running_loop()
    finished = []

    async def processor(job):
        finished.append(loop.time())

    await manager.register(make_config(processor, warm=0.2, cold=0.3))
    state = manager.state(QUEUE)
    await queues.get(QUEUE).add("auto-tag", {}, job_id="j1")

    await wait_until(lambda: state.phase is WorkerPhase.WARM_IDLE)
    paused_at = loop.time()
    await wait_until(lambda: state.phase is WorkerPhase.COLD_SHUTDOWN)
    destroyed_at = loop.time()

    # Polling notices a phase change up to one tick late
    tick = 0.02
    assert paused_at - finished[0] >= 0.2
    assert destroyed_at - paused_at >= 0.3 - tick
    assert destroyed_at - finished[0] >= 0.5


@pytest.mark.asyncio
async def test_job_left_active_by_a_dead_process_is_recovered(manager, queues):
    queue = queues.get(QUEUE)
    await queue.add("auto-tag", {}, job_id="orphan")
    await queue.fetch_next(token="dead-process", lock_duration=0.05)

    processor = Recorder()
    await manager.register(make_config(processor, warm=0.1, cold=0.1, stalled_interval=0.05))
    # An active job alone is enough to start a worker
    assert manager.phase(QUEUE) is WorkerPhase.RUNNING

    await wait_until(lambda: processor.job_ids == ["orphan"])
    state = manager.state(QUEUE)
    await wait_until(lambda: state.phase is WorkerPhase.COLD_SHUTDOWN)

    assert await queue.add("auto-tag", {}, job_id="orphan") is not None
