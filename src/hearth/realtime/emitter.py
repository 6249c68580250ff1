"""Typed emitter — publish/subscribe for one domain's events.

Learn: Routers and workers never build channel names by hand. They ask the
domain's emitter:

    await recipe_emitter.emit_to_household(household_key, "created", {...})
    await recipe_emitter.broadcast("updated", {...})

The emitter knows its namespace and domain, validates the event name
against the catalog in realtime.events, encodes the payload with the codec
and PUBLISHes it.

create_subscription() is the fallback consumer for contexts without a
multiplexer (HTTP polling, tests): it opens its own pub/sub connection for
a single exact channel.
"""

import asyncio
from typing import Any, AsyncIterator, Iterable, Optional

import structlog

from hearth.realtime import codec
from hearth.realtime.channels import BROADCAST_SCOPE_ID, Scope, channel_name
from hearth.realtime.mailbox import Mailbox, MailboxClosed, is_aborted
from hearth.realtime.pubsub import RedisConnections

logger = structlog.get_logger()

READ_TIMEOUT_SECONDS = 1.0
MAX_READ_BACKOFF_SECONDS = 20.0
SUBSCRIBE_ACK_TIMEOUT_SECONDS = 5.0


class TypedEmitter:
    """Publishes and subscribes to the events of one domain."""

    def __init__(
        self,
        redis: RedisConnections,
        namespace: str,
        domain: str,
        events: Iterable[str],
    ):
        self.redis = redis
        self.namespace = namespace
        self.domain = domain
        self.events = frozenset(events)

    def _check_event(self, event: str) -> str:
        if event not in self.events:
            raise ValueError(f"Unknown {self.domain} event: {event!r}")
        return event

    # ─── Channel names ────────────────────────────────────

    def broadcast_event(self, event: str) -> str:
        return channel_name(
            self.namespace,
            self.domain,
            Scope.BROADCAST,
            BROADCAST_SCOPE_ID,
            self._check_event(event),
        )

    def household_event(self, household_key: str, event: str) -> str:
        return channel_name(
            self.namespace,
            self.domain,
            Scope.HOUSEHOLD,
            household_key,
            self._check_event(event),
        )

    def user_event(self, user_id: str, event: str) -> str:
        return channel_name(
            self.namespace,
            self.domain,
            Scope.USER,
            user_id,
            self._check_event(event),
        )

    # ─── Publishing ───────────────────────────────────────

    async def _publish(self, channel: str, data: Any) -> int:
        receivers = await self.redis.publish(channel, codec.dumps(data))
        logger.debug("realtime.published", channel=channel, receivers=receivers)
        return receivers

    async def broadcast(self, event: str, data: Any) -> str:
        """Publish to everyone. Returns the channel used."""
        channel = self.broadcast_event(event)
        await self._publish(channel, data)
        return channel

    async def emit_to_household(self, household_key: str, event: str, data: Any) -> str:
        channel = self.household_event(household_key, event)
        await self._publish(channel, data)
        return channel

    async def emit_to_user(self, user_id: str, event: str, data: Any) -> str:
        channel = self.user_event(user_id, event)
        await self._publish(channel, data)
        return channel

    # ─── Direct subscription (no multiplexer) ─────────────

    async def create_subscription(
        self, channel: str, signal: Optional[asyncio.Event] = None
    ) -> AsyncIterator[Any]:
        """Subscribe to one exact channel on a dedicated pub/sub connection.

        Ends cleanly when `signal` is set, the consumer closes the iterator,
        or the surrounding task is cancelled.
        """
        if is_aborted(signal):
            return

        pubsub = self.redis.pubsub()
        mailbox = Mailbox()
        reader: Optional[asyncio.Task] = None
        try:
            try:
                await pubsub.subscribe(channel)
                await _wait_for_ack(pubsub, channel)
            except Exception as e:
                logger.warning(
                    "realtime.direct_subscribe_failed", channel=channel, error=str(e)
                )
                return

            reader = asyncio.create_task(_pump(pubsub, mailbox, channel))
            while True:
                try:
                    item = await mailbox.get(signal)
                except MailboxClosed:
                    return
                yield item
        finally:
            mailbox.close()
            if reader is not None:
                reader.cancel()
                await asyncio.gather(reader, return_exceptions=True)
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()
            except Exception as e:
                logger.debug("realtime.direct_cleanup_error", channel=channel, error=str(e))


async def _wait_for_ack(pubsub, channel: str) -> None:
    """Block until Redis confirms the SUBSCRIBE.

    Anything published after this returns reaches the connection.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + SUBSCRIBE_ACK_TIMEOUT_SECONDS
    while loop.time() < deadline:
        message = await pubsub.get_message(timeout=READ_TIMEOUT_SECONDS)
        if message is not None and message.get("type") == "subscribe":
            return
    logger.warning(
        "realtime.direct_subscribe_ack_timeout",
        channel=channel,
        timeout=SUBSCRIBE_ACK_TIMEOUT_SECONDS,
    )


async def _pump(pubsub, mailbox: Mailbox, channel: str) -> None:
    """Move messages from one pub/sub connection into a mailbox."""
    delay = 0.5
    while not mailbox.closed:
        try:
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=READ_TIMEOUT_SECONDS
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("realtime.direct_read_error", channel=channel, error=str(e))
            await asyncio.sleep(delay)
            delay = min(delay * 2, MAX_READ_BACKOFF_SECONDS)
            continue

        delay = 0.5
        if message is None or message.get("type") != "message":
            continue
        try:
            mailbox.put(codec.loads(message["data"]))
        except codec.SerializationError as e:
            logger.error("realtime.decode_failed", channel=channel, error=str(e))
