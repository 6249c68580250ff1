"""Redis-backed job queue — the storage side of background work.

Learn: A job is a Redis hash plus its id sitting in exactly one of the
queue's state collections:

    {prefix}:{queue}:wait       LIST  ids ready to run (LPUSH in, RPOP side out)
    {prefix}:{queue}:active     LIST  ids a worker is processing
    {prefix}:{queue}:delayed    ZSET  ids waiting for a retry/delay, score = due time
    {prefix}:{queue}:completed  ZSET  finished ids, score = finish time
    {prefix}:{queue}:failed     ZSET  terminally failed ids, score = finish time
    {prefix}:{queue}:job:{id}   HASH  name, data, options, state, attempts
    {prefix}:{queue}:lock:{id}  STR   claim token, expires unless renewed
    {prefix}:{queue}:repeat     HASH  repeatable job key → schedule

The caller picks the job id, which makes it the dedup key: adding a job whose
id is still waiting/active/delayed is a no-op that returns None.

A worker that dies mid-job leaves the id in the active list with nothing
renewing its lock. check_stalled() finds such ids in two passes (seen
lockless once, still lockless on the next check), puts them back in the
wait list, and fails them for good once they stall more than
max_stalled_count times.

Every state change is announced on {prefix}:{queue}:events (waiting, active,
delayed, completed, failed, drained) so QueueEvents listeners in any process
can react, which is how lazy workers learn that work has arrived.
"""

import json
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

import structlog

from hearth.queue.config import (
    LOCK_DURATION_SECONDS,
    MAX_STALLED_COUNT,
    Backoff,
    JobOptions,
    Repeat,
    Retention,
)
from hearth.realtime import codec
from hearth.realtime.pubsub import RedisConnections

logger = structlog.get_logger()

WAITING = "waiting"
ACTIVE = "active"
DELAYED = "delayed"
COMPLETED = "completed"
FAILED = "failed"

JOB_STATES = (WAITING, ACTIVE, DELAYED, COMPLETED, FAILED)
PENDING_STATES = frozenset({WAITING, ACTIVE, DELAYED})
TERMINAL_STATES = frozenset({COMPLETED, FAILED})

STALLED_REASON = "job stalled more than allowable limit"


class QueueClosedError(RuntimeError):
    """Raised when a closed queue is used."""


@dataclass
class Job:
    queue_name: str
    id: str
    name: str
    data: Any
    options: JobOptions = field(default_factory=JobOptions)
    attempts_made: int = 0
    state: str = WAITING
    failed_reason: Optional[str] = None
    created_at: float = 0.0
    repeat_key: Optional[str] = None
    lock_token: Optional[str] = None


def options_to_json(options: JobOptions) -> str:
    return json.dumps(asdict(options))


def options_from_json(raw: Optional[str]) -> JobOptions:
    if not raw:
        return JobOptions()
    values = json.loads(raw)
    return JobOptions(
        attempts=values.get("attempts", 1),
        backoff=Backoff(**values.get("backoff", {})),
        delay=values.get("delay", 0.0),
        remove_on_complete=Retention(**values.get("remove_on_complete", {})),
        remove_on_fail=Retention(**values.get("remove_on_fail", {})),
    )


def repeat_job_id(key: str, due: float) -> str:
    """One id per occurrence, so two processes can't schedule it twice."""
    return f"repeat:{key}:{int(due * 1000)}"


class JobQueue:
    """One named queue. Created and closed by the QueueRegistry."""

    def __init__(
        self,
        redis: RedisConnections,
        name: str,
        prefix: str,
        default_options: Optional[JobOptions] = None,
    ):
        self.redis = redis
        self.name = name
        self.prefix = prefix
        self.default_options = default_options or JobOptions()
        self._closed = False

    # ─── Keys ─────────────────────────────────────────────

    def _key(self, suffix: str) -> str:
        return f"{self.prefix}:{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    def _lock_key(self, job_id: str) -> str:
        return self._key(f"lock:{job_id}")

    @property
    def events_channel(self) -> str:
        return self._key("events")

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _client(self):
        if self._closed:
            raise QueueClosedError(f"Queue {self.name} is closed")
        return self.redis.client

    async def _emit(self, event: str, job_id: Optional[str] = None, **extra: Any) -> None:
        payload = {"event": event, "job_id": job_id, **extra}
        await self.redis.publish(self.events_channel, codec.dumps(payload))

    # ─── Adding ───────────────────────────────────────────

    async def add(
        self,
        name: str,
        data: Any,
        job_id: Optional[str] = None,
        options: Optional[JobOptions] = None,
        repeat_key: Optional[str] = None,
    ) -> Optional[Job]:
        """Enqueue a job. Returns None if `job_id` is already pending.

        Raises codec.SerializationError if `data` can't be encoded; nothing
        is written in that case.
        """
        client = self._client()
        options = options or self.default_options
        now = time.time()
        fields = {
            "name": name,
            "data": codec.dumps(data),
            "options": options_to_json(options),
            "attempts_made": 0,
            "created_at": now,
        }
        if repeat_key is not None:
            fields["repeat_key"] = repeat_key
        if job_id is None:
            job_id = str(await client.incr(self._key("id")))

        state = DELAYED if options.delay > 0 else WAITING
        key = self._job_key(job_id)
        if not await client.hsetnx(key, "state", state):
            existing = await client.hget(key, "state")
            if existing in PENDING_STATES:
                logger.debug("queue.duplicate_job", queue=self.name, job_id=job_id, state=existing)
                return None
            # A finished job with the same id is replaced by the new one
            await self._purge(job_id)
            if not await client.hsetnx(key, "state", state):
                return None

        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=fields)
                if state == DELAYED:
                    pipe.zadd(self._key(DELAYED), {job_id: now + options.delay})
                else:
                    pipe.lpush(self._key("wait"), job_id)
                await pipe.execute()
        except Exception:
            # Release the claimed id so the next add can succeed
            await client.delete(key)
            raise

        job = Job(
            queue_name=self.name,
            id=job_id,
            name=name,
            data=data,
            options=options,
            state=state,
            created_at=now,
            repeat_key=repeat_key,
        )
        await self._emit(state, job_id)
        logger.debug("queue.job_added", queue=self.name, job_id=job_id, job_name=name, state=state)
        return job

    # ─── Reading ──────────────────────────────────────────

    async def get_job(self, job_id: str) -> Optional[Job]:
        raw = await self._client().hgetall(self._job_key(job_id))
        if not raw or "name" not in raw:
            return None
        return Job(
            queue_name=self.name,
            id=job_id,
            name=raw["name"],
            data=codec.loads(raw["data"]),
            options=options_from_json(raw.get("options")),
            attempts_made=int(raw.get("attempts_made", 0)),
            state=raw.get("state", WAITING),
            failed_reason=raw.get("failed_reason") or None,
            created_at=float(raw.get("created_at", 0.0)),
            repeat_key=raw.get("repeat_key") or None,
        )

    async def get_state(self, job_id: str) -> Optional[str]:
        return await self._client().hget(self._job_key(job_id), "state")

    async def is_job_in_queue(self, job_id: str) -> bool:
        """True while the job is waiting, active or delayed."""
        return await self.get_state(job_id) in PENDING_STATES

    async def get_job_counts(self, *states: str) -> dict[str, int]:
        client = self._client()
        states = states or JOB_STATES
        counts = {}
        for state in states:
            if state == WAITING:
                counts[state] = await client.llen(self._key("wait"))
            elif state == ACTIVE:
                counts[state] = await client.llen(self._key(ACTIVE))
            elif state in (DELAYED, COMPLETED, FAILED):
                counts[state] = await client.zcard(self._key(state))
            else:
                raise ValueError(f"Unknown job state: {state!r}")
        return counts

    # ─── Removing ─────────────────────────────────────────

    async def remove(self, job_id: str) -> bool:
        """Remove a waiting or delayed job. Active jobs are left alone."""
        client = self._client()
        if await self.get_state(job_id) not in (WAITING, DELAYED):
            return False
        async with client.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("wait"), 0, job_id)
            pipe.zrem(self._key(DELAYED), job_id)
            pipe.delete(self._job_key(job_id))
            await pipe.execute()
        logger.debug("queue.job_removed", queue=self.name, job_id=job_id)
        return True

    async def _purge(self, job_id: str) -> None:
        async with self._client().pipeline(transaction=True) as pipe:
            pipe.zrem(self._key(COMPLETED), job_id)
            pipe.zrem(self._key(FAILED), job_id)
            pipe.delete(self._job_key(job_id))
            await pipe.execute()

    # ─── Processing (used by Worker) ──────────────────────

    async def promote_delayed(self) -> int:
        """Move delayed jobs whose time has come back to waiting."""
        client = self._client()
        due = await client.zrangebyscore(self._key(DELAYED), "-inf", time.time())
        promoted = 0
        for job_id in due:
            # Only the process that wins the ZREM promotes the job
            if not await client.zrem(self._key(DELAYED), job_id):
                continue
            async with client.pipeline(transaction=True) as pipe:
                pipe.hset(self._job_key(job_id), "state", WAITING)
                pipe.lpush(self._key("wait"), job_id)
                await pipe.execute()
            await self._emit(WAITING, job_id)
            promoted += 1
        return promoted

    async def fetch_next(
        self,
        token: Optional[str] = None,
        lock_duration: float = LOCK_DURATION_SECONDS,
    ) -> Optional[Job]:
        """Claim the oldest waiting job, or None if there isn't one.

        The claim holds a lock under `token` for `lock_duration` seconds;
        the caller renews it with extend_lock() while the job runs.
        """
        client = self._client()
        await self.promote_delayed()
        job_id = await client.lmove(self._key("wait"), self._key(ACTIVE), "RIGHT", "LEFT")
        if job_id is None:
            return None

        token = token or uuid.uuid4().hex
        await client.set(self._lock_key(job_id), token, px=int(lock_duration * 1000))
        await client.hset(self._job_key(job_id), "state", ACTIVE)
        job = await self.get_job(job_id)
        if job is None:
            await client.lrem(self._key(ACTIVE), 0, job_id)
            await client.delete(self._lock_key(job_id))
            return None
        job.state = ACTIVE
        job.lock_token = token
        await self._emit(ACTIVE, job_id)

        if job.repeat_key is not None:
            await self._schedule_next_repeat(job.repeat_key)
        return job

    async def extend_lock(self, job: Job, lock_duration: float = LOCK_DURATION_SECONDS) -> bool:
        """Push the job's lock expiry out. False if the lock is no longer ours."""
        client = self._client()
        key = self._lock_key(job.id)
        if job.lock_token is None or await client.get(key) != job.lock_token:
            return False
        return bool(await client.pexpire(key, int(lock_duration * 1000)))

    async def complete(self, job: Job, result: Any = None) -> None:
        client = self._client()
        retention = job.options.remove_on_complete
        now = time.time()
        async with client.pipeline(transaction=True) as pipe:
            self._release(pipe, job.id)
            if retention.remove:
                pipe.delete(self._job_key(job.id))
            else:
                pipe.hset(
                    self._job_key(job.id),
                    mapping={
                        "state": COMPLETED,
                        "finished_at": now,
                        "result": codec.dumps(result),
                    },
                )
                pipe.zadd(self._key(COMPLETED), {job.id: now})
            await pipe.execute()
        job.state = COMPLETED
        await self._trim(COMPLETED, retention)
        await self._emit(COMPLETED, job.id)

    async def fail(self, job: Job, error: BaseException) -> str:
        """Record a failed attempt. Returns the job's new state."""
        client = self._client()
        attempts = await client.hincrby(self._job_key(job.id), "attempts_made", 1)
        job.attempts_made = attempts
        job.failed_reason = str(error)
        now = time.time()

        if attempts < job.options.attempts:
            delay = job.options.backoff.delay_for(attempts)
            async with client.pipeline(transaction=True) as pipe:
                self._release(pipe, job.id)
                pipe.hset(
                    self._job_key(job.id),
                    mapping={"state": DELAYED, "failed_reason": job.failed_reason},
                )
                pipe.zadd(self._key(DELAYED), {job.id: now + delay})
                await pipe.execute()
            job.state = DELAYED
            await self._emit(DELAYED, job.id, attempts_made=attempts, retry_in=delay)
            return DELAYED

        await self._fail_for_good(job)
        return FAILED

    async def _fail_for_good(self, job: Job) -> None:
        client = self._client()
        retention = job.options.remove_on_fail
        now = time.time()
        async with client.pipeline(transaction=True) as pipe:
            self._release(pipe, job.id)
            if retention.remove:
                pipe.delete(self._job_key(job.id))
            else:
                pipe.hset(
                    self._job_key(job.id),
                    mapping={
                        "state": FAILED,
                        "failed_reason": job.failed_reason,
                        "finished_at": now,
                    },
                )
                pipe.zadd(self._key(FAILED), {job.id: now})
            await pipe.execute()
        job.state = FAILED
        await self._trim(FAILED, retention)
        await self._emit(FAILED, job.id, reason=job.failed_reason)

    def _release(self, pipe, job_id: str) -> None:
        """Queue the commands that take a job out of the active set."""
        pipe.lrem(self._key(ACTIVE), 0, job_id)
        pipe.delete(self._lock_key(job_id))
        pipe.srem(self._key("stalled"), job_id)

    # ─── Stalled jobs ─────────────────────────────────────

    async def check_stalled(self, max_stalled_count: int = MAX_STALLED_COUNT) -> list[Job]:
        """Recover active jobs whose worker stopped renewing their lock.

        Returns the jobs failed for stalling too often, so the caller can
        report them the way it reports any terminal failure.
        """
        client = self._client()
        stalled_key = self._key("stalled")
        candidates = await client.smembers(stalled_key)
        await client.delete(stalled_key)

        failed: list[Job] = []
        for job_id in candidates:
            if await client.exists(self._lock_key(job_id)):
                continue
            # Only the process that wins the LREM recovers the job
            if not await client.lrem(self._key(ACTIVE), 0, job_id):
                continue
            job = await self.get_job(job_id)
            if job is None:
                continue
            stalled_count = await client.hincrby(self._job_key(job_id), "stalled_count", 1)
            if stalled_count > max_stalled_count:
                job.failed_reason = STALLED_REASON
                await self._fail_for_good(job)
                logger.warning("queue.job_stalled_failed", queue=self.name, job_id=job_id)
                failed.append(job)
                continue
            async with client.pipeline(transaction=True) as pipe:
                pipe.hset(self._job_key(job_id), "state", WAITING)
                pipe.lpush(self._key("wait"), job_id)
                await pipe.execute()
            logger.warning("queue.job_stalled_recovered", queue=self.name, job_id=job_id)
            await self._emit(WAITING, job_id)

        # Anything lockless now is a candidate for the next check
        for job_id in await client.lrange(self._key(ACTIVE), 0, -1):
            if not await client.exists(self._lock_key(job_id)):
                await client.sadd(stalled_key, job_id)
        return failed

    # ─── Repeatable jobs ──────────────────────────────────

    async def add_repeatable(
        self, key: str, name: str, data: Any, repeat: Repeat
    ) -> Optional[Job]:
        """Register a schedule under `key` and queue its next occurrence.

        Each occurrence, once claimed by a worker, queues the one after it.
        """
        schedule = {
            "name": name,
            "data": data,
            "every": repeat.every,
            "daily_at": repeat.daily_at,
        }
        await self._client().hset(self._key("repeat"), key, codec.dumps(schedule))
        job = await self._schedule_next_repeat(key)
        logger.info("queue.repeatable_added", queue=self.name, key=key, job_id=job and job.id)
        return job

    async def get_repeatables(self) -> dict[str, Repeat]:
        raw = await self._client().hgetall(self._key("repeat"))
        schedules = {}
        for key, encoded in raw.items():
            schedule = codec.loads(encoded)
            schedules[key] = Repeat(every=schedule["every"], daily_at=schedule["daily_at"])
        return schedules

    async def remove_repeatable(self, key: str) -> bool:
        """Drop a schedule and its not-yet-started occurrence."""
        client = self._client()
        removed = bool(await client.hdel(self._key("repeat"), key))
        prefix = f"repeat:{key}:"
        for job_id in await client.zrange(self._key(DELAYED), 0, -1):
            if job_id.startswith(prefix):
                await self.remove(job_id)
        return removed

    async def _schedule_next_repeat(self, key: str) -> Optional[Job]:
        encoded = await self._client().hget(self._key("repeat"), key)
        if encoded is None:
            # Schedule was removed; let this occurrence be the last
            return None
        schedule = codec.loads(encoded)
        repeat = Repeat(every=schedule["every"], daily_at=schedule["daily_at"])
        now = time.time()
        due = repeat.next_run(now)
        options = JobOptions(
            attempts=self.default_options.attempts,
            backoff=self.default_options.backoff,
            delay=max(due - now, 0.001),
            remove_on_complete=self.default_options.remove_on_complete,
            remove_on_fail=self.default_options.remove_on_fail,
        )
        return await self.add(
            schedule["name"],
            schedule["data"],
            job_id=repeat_job_id(key, due),
            options=options,
            repeat_key=key,
        )

    async def _trim(self, state: str, retention: Retention) -> None:
        """Apply age/count retention to the completed or failed set."""
        if retention.remove or (retention.age is None and retention.count is None):
            return
        client = self._client()
        key = self._key(state)
        expired: list[str] = []
        if retention.age is not None:
            expired += await client.zrangebyscore(key, "-inf", time.time() - retention.age)
        if retention.count is not None:
            excess = await client.zcard(key) - retention.count
            if excess > 0:
                expired += await client.zrange(key, 0, excess - 1)
        if not expired:
            return
        expired = list(dict.fromkeys(expired))
        async with client.pipeline(transaction=True) as pipe:
            pipe.zrem(key, *expired)
            pipe.delete(*(self._job_key(job_id) for job_id in expired))
            await pipe.execute()

    async def notify_drained(self) -> None:
        """Announce that a worker found nothing left to do."""
        await self._emit("drained")

    async def close(self) -> None:
        self._closed = True
        logger.debug("queue.closed", queue=self.name)
