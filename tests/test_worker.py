"""Worker tests — processing, retries, concurrency and pause/resume."""

import asyncio

import pytest
import pytest_asyncio

from hearth.queue.config import Backoff, JobOptions
from hearth.queue.events import QueueEvents
from hearth.queue.job_queue import COMPLETED, FAILED, WAITING, JobQueue
from hearth.queue.worker import Worker, WorkerClosedError
from support import wait_until

DRAIN = 0.02


@pytest_asyncio.fixture()
async def queue(redis):
    q = JobQueue(redis, "worker-test", "test:queue")
    yield q
    await q.close()


async def _completed(queue) -> int:
    return (await queue.get_job_counts(COMPLETED))[COMPLETED]


@pytest.mark.asyncio
async def test_worker_processes_and_completes_jobs(queue):
    seen = []

    async def processor(job):
        seen.append(job.data["n"])
        return {"doubled": job.data["n"] * 2}

    for n in range(3):
        await queue.add("double", {"n": n})
    worker = Worker(queue, processor, drain_delay=DRAIN)
    await worker.start()
    await wait_until(lambda: worker.processed == 3)
    await worker.close()

    assert seen == [0, 1, 2]
    assert await _completed(queue) == 3


@pytest.mark.asyncio
async def test_retry_then_success_does_not_report_failure(queue):
    calls = []
    failures = []

    async def flaky(job):
        calls.append(job.attempts_made)
        if len(calls) == 1:
            raise RuntimeError("upstream timeout")

    options = JobOptions(attempts=2, backoff=Backoff("fixed", 0.0))
    await queue.add("import", {}, job_id="j1", options=options)
    worker = Worker(queue, flaky, drain_delay=DRAIN, on_failed=lambda job, err: failures.append(job.id))
    await worker.start()
    await wait_until(lambda: worker.processed == 1)
    await worker.close()

    assert calls == [0, 1]
    assert failures == []
    assert worker.failed == 1


@pytest.mark.asyncio
async def test_terminal_failure_calls_on_failed_once(queue):
    failures = []

    async def always_fails(job):
        raise ValueError("not a recipe page")

    async def on_failed(job, error):
        failures.append((job.id, str(error)))

    await queue.add("import", {}, job_id="bad", options=JobOptions(attempts=1))
    worker = Worker(queue, always_fails, drain_delay=DRAIN, on_failed=on_failed)
    await worker.start()
    await wait_until(lambda: failures)
    await worker.close()

    assert failures == [("bad", "not a recipe page")]
    assert await queue.get_state("bad") == FAILED


@pytest.mark.asyncio
async def test_on_failed_errors_are_swallowed(queue):
    def on_failed(job, error):
        raise RuntimeError("handler bug")

    async def processor(job):
        if job.id == "bad":
            raise ValueError("boom")

    await queue.add("job", {}, job_id="bad", options=JobOptions(attempts=1))
    await queue.add("job", {}, job_id="good")
    worker = Worker(queue, processor, drain_delay=DRAIN, on_failed=on_failed)
    await worker.start()
    await wait_until(lambda: worker.processed == 1 and worker.failed == 1)
    assert worker.is_running
    await worker.close()


@pytest.mark.asyncio
async def test_concurrency_is_bounded(queue):
    running = 0
    peak = 0

    async def slow(job):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.05)
        running -= 1

    for _ in range(6):
        await queue.add("slow", {})
    worker = Worker(queue, slow, concurrency=2, drain_delay=DRAIN)
    await worker.start()
    await wait_until(lambda: worker.processed == 6)
    await worker.close()
    assert peak == 2


@pytest.mark.asyncio
async def test_paused_worker_leaves_jobs_waiting(queue):
    async def processor(job):
        return None

    worker = Worker(queue, processor, drain_delay=DRAIN)
    await worker.start()
    await worker.pause()
    assert worker.is_paused()
    assert not worker.is_running

    await queue.add("job", {}, job_id="held")
    await asyncio.sleep(0.1)
    assert await queue.get_state("held") == WAITING

    await worker.resume()
    await wait_until(lambda: worker.processed == 1)
    await worker.close()


@pytest.mark.asyncio
async def test_pause_waits_for_in_flight_jobs(queue):
    finished = asyncio.Event()

    async def slow(job):
        await asyncio.sleep(0.1)
        finished.set()

    await queue.add("slow", {})
    worker = Worker(queue, slow, drain_delay=DRAIN)
    await worker.start()
    await wait_until(lambda: worker.in_flight == 1)
    await worker.pause()
    assert finished.is_set()
    assert worker.in_flight == 0
    await worker.close()


@pytest.mark.asyncio
async def test_closed_worker_cannot_resume(queue):
    async def processor(job):
        return None

    worker = Worker(queue, processor, drain_delay=DRAIN)
    await worker.start()
    await worker.close()
    with pytest.raises(WorkerClosedError):
        await worker.resume()
    with pytest.raises(WorkerClosedError):
        await worker.start()


@pytest.mark.asyncio
async def test_drained_is_announced_after_work(redis, queue):
    drained = asyncio.Event()
    events = QueueEvents(redis, queue)
    events.on("drained", lambda payload: drained.set())
    await events.start()

    async def processor(job):
        return None

    await queue.add("job", {})
    worker = Worker(queue, processor, drain_delay=DRAIN)
    await worker.start()
    await asyncio.wait_for(drained.wait(), 2)
    await worker.close()
    await events.close()


@pytest.mark.asyncio
async def test_queue_events_report_job_state_changes(redis, queue):
    seen = []
    events = QueueEvents(redis, queue)
    events.on("waiting", lambda payload: seen.append(("waiting", payload["job_id"])))
    events.on("delayed", lambda payload: seen.append(("delayed", payload["job_id"])))
    await events.start()

    await queue.add("job", {}, job_id="now")
    await queue.add("job", {}, job_id="later", options=JobOptions(delay=60))
    await wait_until(lambda: len(seen) == 2)
    assert seen == [("waiting", "now"), ("delayed", "later")]
    await events.close()


# ─── Locks & stalled jobs ─────────────────────────────────


@pytest.mark.asyncio
async def test_long_job_keeps_its_lock_and_runs_once(queue):
    runs = []

    async def slow(job):
        runs.append(job.id)
        await asyncio.sleep(0.5)

    await queue.add("import", {}, job_id="slow")
    worker = Worker(queue, slow, drain_delay=DRAIN, lock_duration=0.2, stalled_interval=0.05)
    await worker.start()
    await wait_until(lambda: worker.processed == 1)
    await worker.close()

    assert runs == ["slow"]
    assert await queue.get_state("slow") == COMPLETED


@pytest.mark.asyncio
async def test_job_left_by_a_dead_worker_is_picked_up_again(queue):
    seen = []

    async def processor(job):
        seen.append(job.id)

    await queue.add("import", {}, job_id="orphan")
    # Claimed by a process that died before finishing
    await queue.fetch_next(token="dead-worker", lock_duration=0.05)

    worker = Worker(queue, processor, drain_delay=DRAIN, stalled_interval=0.05)
    await worker.start()
    await wait_until(lambda: worker.processed == 1)
    await worker.close()

    assert seen == ["orphan"]
    assert await queue.get_state("orphan") == COMPLETED


@pytest.mark.asyncio
async def test_job_stalled_too_often_reports_failure(queue):
    failures = []

    async def processor(job):
        pass

    await queue.add("import", {}, job_id="orphan")
    await queue.fetch_next(token="dead-worker", lock_duration=0.05)
    worker = Worker(
        queue,
        processor,
        drain_delay=DRAIN,
        stalled_interval=0.05,
        max_stalled_count=0,
        on_failed=lambda job, err: failures.append((job.id, str(err))),
    )
    await worker.start()
    await wait_until(lambda: failures)
    await worker.close()

    assert failures == [("orphan", "job stalled more than allowable limit")]
    assert await queue.get_state("orphan") == FAILED
    assert worker.processed == 0
