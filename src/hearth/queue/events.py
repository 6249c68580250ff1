"""Queue event stream — react to job state changes from any process.

Learn: JobQueue publishes every state change on the queue's events channel.
QueueEvents subscribes to it and calls registered handlers:

    events = QueueEvents(redis, queue)
    events.on("waiting", on_job_ready)
    events.on("drained", on_drained)
    await events.start()   # returns once the SUBSCRIBE is acknowledged

Waiting for the acknowledgement matters: a job added between "listener
created" and "listener subscribed" would otherwise go unnoticed. Callers
still re-check the queue after start() to catch jobs added before it.
"""

import asyncio
import inspect
from typing import Any, Callable, Optional

import structlog

from hearth.queue.job_queue import JobQueue
from hearth.realtime import codec
from hearth.realtime.pubsub import RedisConnections

logger = structlog.get_logger()

READ_TIMEOUT_SECONDS = 1.0
READY_TIMEOUT_SECONDS = 5.0
INITIAL_BACKOFF_SECONDS = 0.5
MAX_BACKOFF_SECONDS = 20.0

EventHandler = Callable[[dict[str, Any]], Any]


class QueueEvents:
    """Subscriber for one queue's event channel."""

    def __init__(self, redis: RedisConnections, queue: JobQueue):
        self.redis = redis
        self.queue = queue
        self._handlers: dict[str, list[EventHandler]] = {}
        self._pubsub = None
        self._reader: Optional[asyncio.Task] = None
        self._dispatches: set[asyncio.Task] = set()

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    async def start(self) -> None:
        if self._reader is not None:
            return
        self._pubsub = self.redis.pubsub()
        await self._pubsub.subscribe(self.queue.events_channel)
        await self._wait_until_ready()
        self._reader = asyncio.create_task(self._read_loop())
        logger.debug("queue.events_listening", queue=self.queue.name)

    async def _wait_until_ready(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + READY_TIMEOUT_SECONDS
        while loop.time() < deadline:
            message = await self._pubsub.get_message(timeout=READ_TIMEOUT_SECONDS)
            if message is not None and message.get("type") == "subscribe":
                return
        logger.warning(
            "queue.events_ack_timeout",
            queue=self.queue.name,
            timeout=READY_TIMEOUT_SECONDS,
        )

    async def _read_loop(self) -> None:
        delay = INITIAL_BACKOFF_SECONDS
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=READ_TIMEOUT_SECONDS
                )
            except Exception as e:
                logger.warning(
                    "queue.events_read_error",
                    queue=self.queue.name,
                    error=str(e),
                    retry_in=delay,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, MAX_BACKOFF_SECONDS)
                continue

            delay = INITIAL_BACKOFF_SECONDS
            if message is None or message.get("type") != "message":
                continue
            try:
                payload = codec.loads(message["data"])
            except codec.SerializationError as e:
                logger.warning("queue.events_malformed", queue=self.queue.name, error=str(e))
                continue
            if isinstance(payload, dict):
                self._dispatch(payload)

    def _dispatch(self, payload: dict[str, Any]) -> None:
        for handler in self._handlers.get(payload.get("event"), ()):
            task = asyncio.create_task(self._run_handler(handler, payload))
            self._dispatches.add(task)
            task.add_done_callback(self._dispatches.discard)

    async def _run_handler(self, handler: EventHandler, payload: dict[str, Any]) -> None:
        try:
            result = handler(payload)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                "queue.event_handler_failed",
                queue=self.queue.name,
                queue_event=payload.get("event"),
                error=str(e),
            )

    async def close(self) -> None:
        self._handlers.clear()
        pending = list(self._dispatches)
        if self._reader is not None:
            pending.append(self._reader)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._reader = None

        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe()
                await self._pubsub.aclose()
            except Exception as e:
                logger.debug("queue.events_close_error", queue=self.queue.name, error=str(e))
            self._pubsub = None
