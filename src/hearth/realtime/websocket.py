"""WebSocket endpoint — authenticated, multiplexed event delivery.

Learn: Each browser tab opens ONE socket to the realtime path. The handshake
is authenticated before the upgrade is accepted:

    cookie / Bearer JWT ──► verify ──► accept ──► uuid4 connection id
                 │ invalid
                 └──► HTTP 401 (no socket is ever opened)

After that, the client opens logical subscriptions over the same socket:

    → {"type": "subscribe", "id": "s1", "domain": "recipes", "event": "created"}
    ← {"type": "data", "id": "s1", "data": {...}}
    → {"type": "unsubscribe", "id": "s1"}
    → {"type": "ping"}          ← {"type": "pong"}

Every logical subscription is a policy-aware merged stream read through the
connection's single multiplexer, so one socket = at most one Redis pub/sub
connection.
"""

import asyncio
import uuid
from typing import TYPE_CHECKING, Any, Optional

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.responses import PlainTextResponse
from starlette.websockets import WebSocketState

from hearth.auth.dependencies import CurrentIdentity, extract_token, identity_from_token
from hearth.auth.jwt import TokenError
from hearth.config import settings
from hearth.realtime import codec
from hearth.realtime.policy import PolicySubscribeContext, create_policy_aware_subscription

if TYPE_CHECKING:
    from hearth.runtime import Runtime

logger = structlog.get_logger()
router = APIRouter()

POLICY_VIOLATION_CLOSE_CODE = 1008


async def deny_handshake(websocket: WebSocket, status_code: int, message: str) -> None:
    """Reject an upgrade with a plain HTTP response where the server allows it."""
    if "websocket.http.response" in websocket.scope.get("extensions", {}):
        await websocket.send_denial_response(
            PlainTextResponse(message, status_code=status_code)
        )
    else:
        await websocket.close(code=POLICY_VIOLATION_CLOSE_CODE, reason=message)


def authenticate_handshake(websocket: WebSocket) -> CurrentIdentity:
    """Resolve the socket's identity. Raises TokenError when it can't."""
    token = extract_token(websocket.headers, websocket.cookies)
    if not token:
        raise TokenError("Authentication required")
    return identity_from_token(token)


class RealtimeSession:
    """Client protocol state for one accepted socket."""

    def __init__(
        self,
        websocket: WebSocket,
        runtime: "Runtime",
        identity: CurrentIdentity,
        connection_id: str,
    ):
        self.websocket = websocket
        self.runtime = runtime
        self.identity = identity
        self.connection_id = connection_id
        self._subscriptions: dict[str, tuple[asyncio.Event, asyncio.Task]] = {}
        self._send_lock = asyncio.Lock()

    async def send(self, frame: dict[str, Any]) -> None:
        async with self._send_lock:
            await self.websocket.send_text(codec.dumps(frame))

    async def send_error(self, sub_id: Optional[str], message: str) -> None:
        await self.send({"type": "error", "id": sub_id, "message": message})

    async def run(self) -> None:
        """Read client frames until the socket goes away."""
        try:
            # A server-side close (invalidation, shutdown) ends the loop
            while self.websocket.application_state == WebSocketState.CONNECTED:
                message = await self.websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
                raw = message.get("text")
                if raw is None:
                    await self.send_error(None, "Binary frames are not supported")
                    continue
                await self.handle_frame(raw)
        except WebSocketDisconnect as e:
            logger.debug("realtime.client_disconnected", code=e.code)

    async def handle_frame(self, raw: str) -> None:
        try:
            frame = codec.loads(raw)
        except codec.SerializationError:
            await self.send_error(None, "Malformed frame")
            return
        if not isinstance(frame, dict):
            await self.send_error(None, "Malformed frame")
            return

        kind = frame.get("type")
        if kind == "ping":
            await self.send({"type": "pong"})
        elif kind == "subscribe":
            await self.subscribe(frame.get("id"), frame.get("domain"), frame.get("event"))
        elif kind == "unsubscribe":
            await self.unsubscribe(frame.get("id"))
        else:
            await self.send_error(frame.get("id"), f"Unknown frame type: {kind!r}")

    async def subscribe(self, sub_id: Any, domain: Any, event: Any) -> None:
        if not isinstance(sub_id, str) or not sub_id:
            await self.send_error(None, "Subscription id required")
            return
        if sub_id in self._subscriptions:
            await self.send_error(sub_id, "Subscription id already in use")
            return
        emitter = self.runtime.emitters.get(domain)
        if emitter is None:
            await self.send_error(sub_id, f"Unknown domain: {domain!r}")
            return
        if event not in emitter.events:
            await self.send_error(sub_id, f"Unknown {domain} event: {event!r}")
            return

        multiplexer = self.runtime.multiplexers.get_or_create(
            self.connection_id, self.identity.user_id, self.identity.household_key
        )
        ctx = PolicySubscribeContext(
            user_id=self.identity.user_id,
            household_key=self.identity.household_key,
            multiplexer=multiplexer,
        )
        signal = asyncio.Event()
        task = asyncio.create_task(self._forward(sub_id, emitter, ctx, event, signal))
        self._subscriptions[sub_id] = (signal, task)
        task.add_done_callback(lambda _: self._forget(sub_id, task))

    def _forget(self, sub_id: str, task: asyncio.Task) -> None:
        current = self._subscriptions.get(sub_id)
        if current is not None and current[1] is task:
            del self._subscriptions[sub_id]

    async def _forward(self, sub_id, emitter, ctx, event, signal) -> None:
        try:
            async for data in create_policy_aware_subscription(emitter, ctx, event, signal):
                await self.send({"type": "data", "id": sub_id, "data": data})
        except (WebSocketDisconnect, RuntimeError) as e:
            # The socket closed underneath us; the receive loop cleans up
            logger.debug("realtime.forward_stopped", subscription_id=sub_id, error=str(e))
        except ValueError as e:
            await self.send_error(sub_id, str(e))

    async def unsubscribe(self, sub_id: Any) -> None:
        entry = self._subscriptions.pop(sub_id, None) if isinstance(sub_id, str) else None
        if entry is None:
            await self.send_error(sub_id, "Unknown subscription id")
            return
        signal, task = entry
        signal.set()
        await asyncio.gather(task, return_exceptions=True)

    async def close(self) -> None:
        entries = list(self._subscriptions.values())
        self._subscriptions.clear()
        for signal, task in entries:
            signal.set()
            task.cancel()
        await asyncio.gather(*(task for _, task in entries), return_exceptions=True)


@router.websocket(settings.realtime_path)
async def realtime_websocket(websocket: WebSocket):
    """The single realtime socket endpoint."""
    runtime: "Runtime" = websocket.app.state.runtime
    connections = runtime.connections

    if not connections.accepting:
        await deny_handshake(websocket, 503, "Server is shutting down")
        return

    try:
        identity = authenticate_handshake(websocket)
    except TokenError as e:
        logger.info("realtime.handshake_rejected", reason=str(e))
        await deny_handshake(websocket, 401, "Unauthorized")
        return

    await websocket.accept()
    connection_id = str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(
        connection_id=connection_id, user_id=identity.user_id
    )
    connections.register(identity.user_id, websocket, connection_id)
    logger.info("realtime.connection_opened", household_key=identity.household_key)

    session = RealtimeSession(websocket, runtime, identity, connection_id)
    try:
        await session.run()
    finally:
        await session.close()
        await connections.unregister(identity.user_id, websocket)
        if websocket.client_state == WebSocketState.CONNECTED:
            try:
                await websocket.close()
            except RuntimeError as e:
                logger.debug("realtime.close_after_disconnect", error=str(e))
        logger.info("realtime.connection_closed")
        structlog.contextvars.unbind_contextvars("connection_id", "user_id")
