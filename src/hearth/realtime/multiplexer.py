"""Subscription multiplexer — one Redis pub/sub connection per client connection.

Learn: A browser tab typically opens a dozen logical subscriptions (recipe
created, grocery updated, calendar changed...). Opening a Redis pub/sub
connection for each would multiply Redis connections by the number of open
views. Instead each WebSocket connection gets ONE multiplexer:

    ┌──────────────┐   psubscribe (≤3 patterns)   ┌────────────────┐
    │  Redis       │ ───────────────────────────► │  reader task   │
    └──────────────┘                              └───────┬────────┘
                                                          │ exact channel
                          ┌───────────────┬───────────────┼──────────────┐
                          ▼               ▼               ▼              ▼
                       Mailbox         Mailbox         Mailbox        Mailbox
                          │               │               │              │
                     subscribe()     subscribe()     subscribe()    subscribe()

The patterns depend only on who the connection is (broadcast, this user,
this household) so they are fixed for the connection's lifetime. Messages
arrive with their exact channel name and are routed to the mailboxes
registered for that channel.

Initialization is lazy and shared: the first subscribe() starts the
PSUBSCRIBE and every concurrent subscribe() awaits the same future. When
the last logical listener leaves, the patterns are released; the next
subscribe() acquires them again.
"""

import asyncio
from typing import Any, AsyncIterator, Optional

import structlog

from hearth.realtime import codec
from hearth.realtime.channels import connection_patterns
from hearth.realtime.mailbox import Mailbox, MailboxClosed, is_aborted, race_signal
from hearth.realtime.pubsub import RedisConnections

logger = structlog.get_logger()

READ_TIMEOUT_SECONDS = 1.0
READY_TIMEOUT_SECONDS = 5.0
INITIAL_BACKOFF_SECONDS = 0.5
MAX_BACKOFF_SECONDS = 20.0


class SubscriptionMultiplexer:
    """Fans one pattern subscription out to many logical subscriptions."""

    def __init__(
        self,
        redis: RedisConnections,
        namespace: str,
        user_id: str,
        household_key: Optional[str] = None,
    ):
        self.redis = redis
        self.user_id = user_id
        self.household_key = household_key
        self.patterns = connection_patterns(namespace, user_id, household_key)

        self._listeners: dict[str, set[Mailbox]] = {}
        self._pubsub = None
        self._reader: Optional[asyncio.Task] = None
        self._init_future: Optional[asyncio.Future] = None
        self._lock = asyncio.Lock()
        self._ready = asyncio.Event()
        self._subscribed = False
        self._closed = False
        self._background: set[asyncio.Task] = set()

    # ─── Introspection ────────────────────────────────────

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def is_subscribed(self) -> bool:
        """True while the connection's patterns are held upstream."""
        return self._subscribed

    @property
    def active_listener_count(self) -> int:
        return sum(len(listeners) for listeners in self._listeners.values())

    def listener_count(self, channel: str) -> int:
        return len(self._listeners.get(channel, ()))

    # ─── Subscribing ──────────────────────────────────────

    async def subscribe(
        self, channel: str, signal: Optional[asyncio.Event] = None
    ) -> AsyncIterator[Any]:
        """Yield decoded messages published on `channel`, in order.

        The iterator ends when `signal` is set, the multiplexer closes, or
        the consumer stops iterating. Transport problems are logged, never
        raised here.
        """
        if self._closed or is_aborted(signal):
            return

        # Register before awaiting readiness so nothing published after the
        # patterns are acknowledged can be missed.
        mailbox = Mailbox()
        self._listeners.setdefault(channel, set()).add(mailbox)
        try:
            try:
                ready = await race_signal(asyncio.shield(self._ensure_ready()), signal)
            except Exception as e:
                logger.warning(
                    "realtime.multiplexer_init_failed",
                    user_id=self.user_id,
                    channel=channel,
                    error=str(e),
                )
                return
            if not ready:
                return

            while True:
                try:
                    item = await mailbox.get(signal)
                except MailboxClosed:
                    return
                yield item
        finally:
            self._remove_listener(channel, mailbox)

    def _ensure_ready(self) -> asyncio.Future:
        """The shared in-flight (or finished) pattern acquisition."""
        future = self._init_future
        if future is None or (future.done() and not self._subscribed):
            future = asyncio.ensure_future(self._acquire_patterns())
            self._init_future = future
        return future

    async def _acquire_patterns(self) -> None:
        while True:
            async with self._lock:
                if self._closed:
                    return
                if not self._subscribed:
                    if self._pubsub is None:
                        self._pubsub = self.redis.pubsub()
                    self._ready.clear()
                    await self._pubsub.psubscribe(*self.patterns)
                    self._subscribed = True
                    if self._reader is None or self._reader.done():
                        self._reader = asyncio.create_task(self._read_loop())
                    logger.debug(
                        "realtime.patterns_subscribed",
                        user_id=self.user_id,
                        patterns=self.patterns,
                    )

            try:
                await asyncio.wait_for(self._ready.wait(), READY_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.warning(
                    "realtime.subscribe_ack_timeout",
                    user_id=self.user_id,
                    timeout=READY_TIMEOUT_SECONDS,
                )
            # Released while we waited for the ack: go again if anyone still listens
            if self._subscribed or self._closed or not self._listeners:
                break
        self._schedule_release()

    # ─── Unsubscribing ────────────────────────────────────

    def _remove_listener(self, channel: str, mailbox: Mailbox) -> None:
        mailbox.close()
        listeners = self._listeners.get(channel)
        if listeners is not None:
            listeners.discard(mailbox)
            if not listeners:
                del self._listeners[channel]
        self._schedule_release()

    def _schedule_release(self) -> None:
        if self._closed or self._listeners or not self._subscribed:
            return
        task = asyncio.create_task(self._release_patterns())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _release_patterns(self) -> None:
        async with self._lock:
            # A new listener may have arrived while we waited for the lock
            if self._closed or self._listeners or not self._subscribed:
                return
            self._subscribed = False
            # Wake an acquisition still waiting for its ack
            self._ready.set()
            try:
                await self._pubsub.punsubscribe(*self.patterns)
            except Exception as e:
                logger.warning(
                    "realtime.pattern_release_failed",
                    user_id=self.user_id,
                    error=str(e),
                )
                return
            logger.debug("realtime.patterns_released", user_id=self.user_id)

    # ─── Reader ───────────────────────────────────────────

    async def _read_loop(self) -> None:
        delay = INITIAL_BACKOFF_SECONDS
        while not self._closed:
            try:
                message = await self._pubsub.get_message(timeout=READ_TIMEOUT_SECONDS)
            except Exception as e:
                logger.warning(
                    "realtime.multiplexer_read_error",
                    user_id=self.user_id,
                    error=str(e),
                    retry_in=delay,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, MAX_BACKOFF_SECONDS)
                continue

            delay = INITIAL_BACKOFF_SECONDS
            if message is None:
                continue

            kind = message.get("type")
            if kind == "pmessage":
                self._dispatch(message["channel"], message["data"])
            elif kind == "psubscribe" and int(message["data"]) >= len(self.patterns):
                self._ready.set()

    def _dispatch(self, channel: str, data: Any) -> None:
        listeners = self._listeners.get(channel)
        if not listeners:
            return
        try:
            payload = codec.loads(data)
        except codec.SerializationError as e:
            logger.error(
                "realtime.decode_failed",
                user_id=self.user_id,
                channel=channel,
                error=str(e),
            )
            return
        for mailbox in list(listeners):
            mailbox.put(payload)

    # ─── Shutdown ─────────────────────────────────────────

    async def close(self) -> None:
        """Drop every listener and the upstream connection. Idempotent."""
        if self._closed:
            return
        self._closed = True

        for listeners in self._listeners.values():
            for mailbox in listeners:
                mailbox.close()
        self._listeners.clear()
        self._ready.set()

        pending = list(self._background)
        if self._reader is not None:
            pending.append(self._reader)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if self._pubsub is not None:
            try:
                if self._subscribed:
                    await self._pubsub.punsubscribe()
                await self._pubsub.aclose()
            except Exception as e:
                logger.warning(
                    "realtime.multiplexer_close_error",
                    user_id=self.user_id,
                    error=str(e),
                )
        self._subscribed = False
        logger.debug("realtime.multiplexer_closed", user_id=self.user_id)


class MultiplexerRegistry:
    """One multiplexer per live connection id, created on demand."""

    def __init__(self, redis: RedisConnections, namespace: str):
        self.redis = redis
        self.namespace = namespace
        self._multiplexers: dict[str, SubscriptionMultiplexer] = {}

    def get(self, connection_id: str) -> Optional[SubscriptionMultiplexer]:
        return self._multiplexers.get(connection_id)

    def get_or_create(
        self,
        connection_id: str,
        user_id: str,
        household_key: Optional[str] = None,
    ) -> SubscriptionMultiplexer:
        existing = self._multiplexers.get(connection_id)
        if existing is not None and not existing.is_closed:
            return existing
        multiplexer = SubscriptionMultiplexer(
            self.redis, self.namespace, user_id, household_key
        )
        self._multiplexers[connection_id] = multiplexer
        return multiplexer

    async def close(self, connection_id: str) -> None:
        multiplexer = self._multiplexers.pop(connection_id, None)
        if multiplexer is not None:
            await multiplexer.close()

    async def close_all(self) -> None:
        multiplexers = list(self._multiplexers.values())
        self._multiplexers.clear()
        await asyncio.gather(*(m.close() for m in multiplexers), return_exceptions=True)
        if multiplexers:
            logger.info("realtime.multiplexers_closed", count=len(multiplexers))

    def stats(self) -> dict[str, int]:
        return {
            "count": len(self._multiplexers),
            "subscribed": sum(m.is_subscribed for m in self._multiplexers.values()),
            "total_listeners": sum(
                m.active_listener_count for m in self._multiplexers.values()
            ),
        }
