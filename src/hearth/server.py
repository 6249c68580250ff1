"""Uvicorn server that drains realtime sockets before it stops serving.

Learn: On SIGTERM plain uvicorn stops accepting, closes every open
WebSocket itself (code 1012), waits for in-flight requests and only then
runs the lifespan shutdown. By that point our 4000 "reconnect" close can
no longer reach anybody, and the shutdown watchdog hasn't started yet.

HearthServer intercepts the signal instead:

    SIGTERM ──► begin_shutdown()       watchdog armed, sockets get 4000
                    │
                    ▼
                uvicorn exit           graceful phase, then lifespan
                    │
                    ▼
                Runtime.shutdown()     collaborators → workers → redis

A second signal while draining skips the wait and hands over to uvicorn.
"""

import asyncio
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI

logger = structlog.get_logger()


class HearthServer(uvicorn.Server):
    def __init__(self, config: uvicorn.Config, app: FastAPI):
        super().__init__(config)
        self.app = app
        self._drain_task: Optional[asyncio.Task] = None

    def handle_exit(self, sig, frame) -> None:
        runtime = getattr(self.app.state, "runtime", None)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if runtime is None or loop is None or self._drain_task is not None:
            super().handle_exit(sig, frame)
            return
        logger.info("hearth.signal_received", signal=int(sig))
        runtime.arm_shutdown()
        self._drain_task = loop.create_task(self._drain_then_exit(sig, frame))

    async def _drain_then_exit(self, sig, frame) -> None:
        try:
            await self.app.state.runtime.begin_shutdown()
        except Exception as e:
            logger.error("hearth.drain_failed", error=str(e))
        finally:
            if not self.should_exit:
                super().handle_exit(sig, frame)
