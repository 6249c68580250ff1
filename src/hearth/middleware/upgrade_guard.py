"""Upgrade path guard — only the realtime path may become a WebSocket.

Learn: BaseHTTPMiddleware never sees WebSocket scopes, so this is a plain
ASGI middleware. Outside development, an upgrade request for any other path
is refused with an HTTP 404 before it reaches the router. In development
the router's default close is left alone so tooling websockets (hot reload,
debuggers) keep working behind the same port.
"""

import structlog
from starlette.types import ASGIApp, Receive, Scope, Send
from starlette.websockets import WebSocket

from hearth.realtime.websocket import deny_handshake

logger = structlog.get_logger()


class UpgradePathGuardMiddleware:
    """Reject WebSocket upgrades on paths other than `realtime_path`."""

    def __init__(self, app: ASGIApp, realtime_path: str, enforce: bool = True):
        self.app = app
        self.realtime_path = realtime_path
        self.enforce = enforce

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if (
            self.enforce
            and scope["type"] == "websocket"
            and scope["path"] != self.realtime_path
        ):
            logger.info("realtime.upgrade_rejected", path=scope["path"])
            await deny_handshake(WebSocket(scope, receive, send), 404, "Not Found")
            return
        await self.app(scope, receive, send)
