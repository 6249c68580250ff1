"""Runtime — every process-wide registry, built once and torn down in order.

Learn: Instead of module-level singletons scattered across packages, one
Runtime object owns the Redis connection and everything built on it:

    Runtime
    ├── redis          RedisConnections
    ├── multiplexers   MultiplexerRegistry   (one per live socket)
    ├── connections    ConnectionRegistry    (user → sockets, invalidation)
    ├── emitters       domain → TypedEmitter
    ├── queues         QueueRegistry
    ├── workers        LazyWorkerManager
    └── always_on_workers  queue → Worker (queues that must poll)

The FastAPI lifespan creates it, stores it on app.state, calls start() and
finally shutdown(). HearthServer calls begin_shutdown() on SIGTERM so the
realtime stage runs while uvicorn still serves sockets. Tests build one
around a fakeredis client.
"""

from typing import Awaitable, Callable, Mapping, Optional

import structlog

from hearth.config import Settings, settings as default_settings
from hearth.queue.lazy_worker import LazyWorkerManager
from hearth.queue.registry import QueueRegistry
from hearth.queue.startup import HandlerSpec, start_workers, stop_workers
from hearth.queue.worker import Worker
from hearth.realtime.connections import ConnectionRegistry
from hearth.realtime.emitter import TypedEmitter
from hearth.realtime.events import DOMAIN_EVENTS
from hearth.realtime.multiplexer import MultiplexerRegistry
from hearth.realtime.pubsub import RedisConnections
from hearth.shutdown import GracefulShutdown

logger = structlog.get_logger()

SERVER_SHUTDOWN_REASON = "server_shutdown"


class Runtime:
    """Process-wide state for the realtime layer and background workers."""

    def __init__(
        self,
        redis: Optional[RedisConnections] = None,
        config: Optional[Settings] = None,
    ):
        self.settings = config or default_settings
        self.redis = redis or RedisConnections(url=self.settings.redis_url)
        self.multiplexers = MultiplexerRegistry(self.redis, self.settings.channel_namespace)
        self.connections = ConnectionRegistry(
            self.redis, self.multiplexers, self.settings.invalidation_channel
        )
        self.emitters: dict[str, TypedEmitter] = {
            domain: TypedEmitter(self.redis, self.settings.channel_namespace, domain, events)
            for domain, events in DOMAIN_EVENTS.items()
        }
        self.queues = QueueRegistry(self.redis, self.settings.queue_prefix)
        self.workers = LazyWorkerManager(self.queues, self.redis)
        self.always_on_workers: dict[str, Worker] = {}
        self._collaborators: list[tuple[str, Callable[[], Awaitable[None]]]] = []
        self._shutdown: Optional[GracefulShutdown] = None

    def emitter(self, domain: str) -> TypedEmitter:
        return self.emitters[domain]

    def add_collaborator_stop(self, name: str, stop: Callable[[], Awaitable[None]]) -> None:
        """Register a feature-owned stream to stop after sockets, before workers."""
        self._collaborators.append((name, stop))

    # ─── Startup ──────────────────────────────────────────

    async def start(self, handlers: Optional[Mapping[str, HandlerSpec]] = None) -> None:
        await self.redis.connect()
        logger.info("hearth.redis_connected")
        await self.connections.start_invalidation_listener()
        self.always_on_workers = await start_workers(self.queues, self.workers, handlers or {})
        self.connections.accepting = True

    # ─── Shutdown ─────────────────────────────────────────

    async def _stop_realtime(self) -> None:
        self.connections.accepting = False
        await self.connections.terminate_all(SERVER_SHUTDOWN_REASON)
        await self.connections.stop_invalidation_listener()
        await self.multiplexers.close_all()

    async def _stop_collaborators(self) -> None:
        for name, stop in self._collaborators:
            try:
                await stop()
            except Exception as e:
                logger.error("hearth.collaborator_stop_failed", collaborator=name, error=str(e))

    async def _stop_workers(self) -> None:
        await stop_workers(self.queues, self.workers, self.always_on_workers)

    def build_shutdown(self) -> GracefulShutdown:
        shutdown = GracefulShutdown(
            stage_timeout=self.settings.shutdown_stage_timeout_seconds,
            force_exit_after=self.settings.shutdown_force_exit_seconds,
        )
        shutdown.add_stage("realtime", self._stop_realtime)
        shutdown.add_stage("collaborators", self._stop_collaborators)
        shutdown.add_stage("workers", self._stop_workers)
        shutdown.add_stage("redis", self.redis.close)
        return shutdown

    def _get_shutdown(self) -> GracefulShutdown:
        if self._shutdown is None:
            self._shutdown = self.build_shutdown()
        return self._shutdown

    @property
    def shutting_down(self) -> bool:
        return self._shutdown is not None and self._shutdown.started

    def arm_shutdown(self) -> None:
        """Start the force-exit countdown now. Safe to call from a signal handler."""
        self._get_shutdown().arm()

    async def begin_shutdown(self) -> bool:
        """Arm the watchdog and close every socket with 4000, nothing more."""
        return await self._get_shutdown().run(through="realtime")

    async def shutdown(self) -> bool:
        return await self._get_shutdown().run()
