"""Graceful shutdown — ordered, time-boxed teardown of the process.

Learn: Teardown order matters because later stages are used by earlier ones:

    1. realtime     stop accepting sockets, tell clients to reconnect (4000),
                    stop the invalidation listener, close multiplexers
    2. collaborators  long-running streams owned by feature code
    3. workers      finish in-flight jobs, then close the queues
    4. redis        last, nothing above may need it any more

Each stage gets its own timeout; a stage that hangs or raises is logged and
the next stage still runs. A watchdog armed when shutdown begins force-exits
the process if the whole sequence overruns the hard ceiling, so a stuck
socket can't turn a deploy into a zombie process.

The stages can run in two steps. On SIGTERM the server runs everything
through "realtime" while the event loop still serves sockets, so clients
actually receive the 4000 close; the rest runs from the lifespan once the
server has stopped. The watchdog covers both steps and the server's own
graceful phase in between.
"""

import asyncio
import os
from typing import Awaitable, Callable, Optional

import structlog

from hearth.config import settings

logger = structlog.get_logger()

StageFn = Callable[[], Awaitable[None]]


def _exit_now(code: int) -> None:
    os._exit(code)


class GracefulShutdown:
    """Runs registered stages in order, each at most once."""

    def __init__(
        self,
        stage_timeout: Optional[float] = None,
        force_exit_after: Optional[float] = None,
        force_exit: Callable[[int], None] = _exit_now,
    ):
        self.stage_timeout = (
            settings.shutdown_stage_timeout_seconds if stage_timeout is None else stage_timeout
        )
        self.force_exit_after = (
            settings.shutdown_force_exit_seconds if force_exit_after is None else force_exit_after
        )
        self.force_exit = force_exit
        self._stages: list[tuple[str, StageFn]] = []
        self._next_stage = 0
        self._clean = True
        self._finished = False
        self._lock = asyncio.Lock()
        self._watchdog: Optional[asyncio.TimerHandle] = None

    def add_stage(self, name: str, fn: StageFn) -> None:
        self._stages.append((name, fn))

    @property
    def stage_names(self) -> list[str]:
        return [name for name, _ in self._stages]

    @property
    def started(self) -> bool:
        return self._watchdog is not None

    @property
    def finished(self) -> bool:
        return self._finished

    def arm(self) -> None:
        """Start the force-exit countdown. Later calls do nothing."""
        if self._watchdog is not None:
            return
        loop = asyncio.get_running_loop()
        self._watchdog = loop.call_later(self.force_exit_after, self._on_deadline)
        logger.info("shutdown.started", stages=self.stage_names)

    async def run(self, through: Optional[str] = None) -> bool:
        """Run the stages not run yet, stopping after `through` if given.

        Returns True if every stage run so far finished cleanly. Concurrent
        or repeated calls never run a stage twice.
        """
        if through is not None and through not in self.stage_names:
            raise ValueError(f"Unknown shutdown stage: {through}")
        self.arm()
        async with self._lock:
            await self._run_stages(through)
        return self._clean

    async def _run_stages(self, through: Optional[str]) -> None:
        loop = asyncio.get_running_loop()
        while self._next_stage < len(self._stages):
            name, fn = self._stages[self._next_stage]
            self._next_stage += 1
            started = loop.time()
            try:
                await asyncio.wait_for(fn(), timeout=self.stage_timeout)
            except asyncio.TimeoutError:
                self._clean = False
                logger.warning("shutdown.stage_timed_out", stage=name, timeout=self.stage_timeout)
            except Exception as e:
                self._clean = False
                logger.error("shutdown.stage_failed", stage=name, error=str(e))
            else:
                logger.info(
                    "shutdown.stage_completed",
                    stage=name,
                    duration=round(loop.time() - started, 3),
                )
            if name == through:
                return

        if not self._finished:
            self._finished = True
            self._watchdog.cancel()
            logger.info("shutdown.completed", clean=self._clean)

    def _on_deadline(self) -> None:
        logger.error("shutdown.forced_exit", ceiling=self.force_exit_after)
        self.force_exit(1)
