"""Connection registry — who is connected to this process, and how to kick them.

Learn: A user can be connected from several devices at once, and those
sockets may be spread across several server processes. When their session
changes (logout, password change, household switch) every one of those
sockets must reconnect so it re-authenticates with fresh claims.

Each process keeps its own map user_id → {handles}. invalidate() doesn't
touch that map directly; it PUBLISHes {user_id, reason} on a fixed channel.
Every process (this one included) runs an invalidation listener that reacts
by closing its local sockets for that user with close code 4000, which
clients treat as "reconnect", not as a fatal error.
"""

import asyncio
from typing import Optional, Protocol

import structlog
from pydantic import BaseModel, ValidationError

from hearth.realtime import codec
from hearth.realtime.multiplexer import MultiplexerRegistry
from hearth.realtime.pubsub import RedisConnections

logger = structlog.get_logger()

RECONNECT_CLOSE_CODE = 4000

READ_TIMEOUT_SECONDS = 1.0
READY_TIMEOUT_SECONDS = 5.0
INITIAL_BACKOFF_SECONDS = 0.5
MAX_BACKOFF_SECONDS = 20.0


class ConnectionHandle(Protocol):
    """What the registry needs from a transport (a Starlette WebSocket fits)."""

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...


class InvalidationMessage(BaseModel):
    user_id: str
    reason: str


class ConnectionRegistry:
    """Local connection bookkeeping plus the cross-process invalidation feed."""

    def __init__(
        self,
        redis: RedisConnections,
        multiplexers: MultiplexerRegistry,
        invalidation_channel: str,
    ):
        self.redis = redis
        self.multiplexers = multiplexers
        self.invalidation_channel = invalidation_channel
        self.accepting = True

        self._by_user: dict[str, set[ConnectionHandle]] = {}
        self._connection_ids: dict[ConnectionHandle, str] = {}
        self._listener: Optional[asyncio.Task] = None
        self._listener_ready = asyncio.Event()

    # ─── Local bookkeeping ────────────────────────────────

    def register(self, user_id: str, handle: ConnectionHandle, connection_id: str) -> None:
        self._by_user.setdefault(user_id, set()).add(handle)
        self._connection_ids[handle] = connection_id
        logger.debug(
            "realtime.connection_registered",
            user_id=user_id,
            connection_id=connection_id,
            user_connections=len(self._by_user[user_id]),
        )

    async def unregister(self, user_id: str, handle: ConnectionHandle) -> None:
        handles = self._by_user.get(user_id)
        if handles is not None:
            handles.discard(handle)
            if not handles:
                del self._by_user[user_id]

        connection_id = self._connection_ids.pop(handle, None)
        if connection_id is not None:
            await self.multiplexers.close(connection_id)
            logger.debug(
                "realtime.connection_unregistered",
                user_id=user_id,
                connection_id=connection_id,
            )

    def connection_count(self, user_id: Optional[str] = None) -> int:
        if user_id is not None:
            return len(self._by_user.get(user_id, ()))
        return len(self._connection_ids)

    def connection_id(self, handle: ConnectionHandle) -> Optional[str]:
        return self._connection_ids.get(handle)

    # ─── Termination ──────────────────────────────────────

    async def _close_handles(self, handles: list[ConnectionHandle], reason: str) -> int:
        closed = 0
        for handle in handles:
            try:
                await handle.close(code=RECONNECT_CLOSE_CODE, reason=reason)
                closed += 1
            except Exception as e:
                logger.warning(
                    "realtime.connection_close_failed",
                    connection_id=self._connection_ids.get(handle),
                    error=str(e),
                )
        return closed

    async def terminate(self, user_id: str, reason: str) -> int:
        """Close every local connection of `user_id`. Returns how many closed."""
        handles = list(self._by_user.get(user_id, ()))
        if not handles:
            return 0
        closed = await self._close_handles(handles, reason)
        logger.info(
            "realtime.connections_terminated",
            user_id=user_id,
            reason=reason,
            closed=closed,
        )
        return closed

    async def terminate_all(self, reason: str) -> int:
        handles = list(self._connection_ids)
        if not handles:
            return 0
        closed = await self._close_handles(handles, reason)
        logger.info("realtime.all_connections_terminated", reason=reason, closed=closed)
        return closed

    # ─── Cross-process invalidation ───────────────────────

    async def invalidate(self, user_id: str, reason: str) -> int:
        """Ask every process to drop `user_id`'s connections."""
        message = InvalidationMessage(user_id=user_id, reason=reason)
        receivers = await self.redis.publish(self.invalidation_channel, codec.dumps(message))
        logger.info(
            "realtime.invalidation_published",
            user_id=user_id,
            reason=reason,
            receivers=receivers,
        )
        return receivers

    async def start_invalidation_listener(self) -> None:
        """Start listening; returns once the channel subscription is live."""
        if self._listener is not None and not self._listener.done():
            return
        self._listener_ready.clear()
        self._listener = asyncio.create_task(self._listen())
        ready = asyncio.ensure_future(self._listener_ready.wait())
        await asyncio.wait(
            {ready, self._listener},
            timeout=READY_TIMEOUT_SECONDS,
            return_when=asyncio.FIRST_COMPLETED,
        )
        ready.cancel()
        if not self._listener_ready.is_set():
            logger.warning(
                "realtime.invalidation_listener_not_ready",
                channel=self.invalidation_channel,
                timeout=READY_TIMEOUT_SECONDS,
            )
            return
        logger.info("realtime.invalidation_listener_started", channel=self.invalidation_channel)

    async def stop_invalidation_listener(self) -> None:
        if self._listener is None:
            return
        self._listener.cancel()
        await asyncio.gather(self._listener, return_exceptions=True)
        self._listener = None
        logger.info("realtime.invalidation_listener_stopped")

    async def _listen(self) -> None:
        delay = INITIAL_BACKOFF_SECONDS
        while True:
            pubsub = self.redis.pubsub()
            try:
                await pubsub.subscribe(self.invalidation_channel)
                while True:
                    message = await pubsub.get_message(timeout=READ_TIMEOUT_SECONDS)
                    if message is None:
                        continue
                    if message.get("type") == "subscribe":
                        self._listener_ready.set()
                        delay = INITIAL_BACKOFF_SECONDS
                    elif message.get("type") == "message":
                        await self._handle_invalidation(message["data"])
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "realtime.invalidation_listener_error",
                    error=str(e),
                    retry_in=delay,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, MAX_BACKOFF_SECONDS)
            finally:
                try:
                    await pubsub.aclose()
                except Exception as e:
                    logger.debug("realtime.invalidation_pubsub_close_error", error=str(e))

    async def _handle_invalidation(self, raw: str) -> None:
        try:
            message = InvalidationMessage.model_validate(codec.loads(raw))
        except (codec.SerializationError, ValidationError) as e:
            logger.warning("realtime.invalidation_malformed", error=str(e))
            return
        await self.terminate(message.user_id, message.reason)
