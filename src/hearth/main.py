"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. The lifespan owns the Runtime: everything before `yield` runs at
startup, the ordered GracefulShutdown runs after it. Under `hearth serve`
the realtime stage has usually run already, on SIGTERM (see hearth.server).

Job processors are feature code; a deployment that runs workers passes
them in (`create_app(handlers={...})`). Without handlers the process still
serves sockets and can enqueue jobs for workers running elsewhere.
"""

from contextlib import asynccontextmanager
from typing import Mapping, Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from hearth import __version__
from hearth.api import api_router
from hearth.config import settings
from hearth.log import configure_logging
from hearth.middleware.request_id import RequestIdMiddleware
from hearth.middleware.upgrade_guard import UpgradePathGuardMiddleware
from hearth.queue.startup import HandlerSpec
from hearth.realtime.websocket import router as ws_router
from hearth.runtime import Runtime

logger = structlog.get_logger()


def create_app(
    runtime: Optional[Runtime] = None,
    handlers: Optional[Mapping[str, HandlerSpec]] = None,
) -> FastAPI:
    """Build and return the FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level, settings.log_json)
        rt = runtime or Runtime()
        app.state.runtime = rt
        logger.info(
            "hearth.starting",
            version=__version__,
            environment=settings.environment,
            port=settings.port,
        )
        await rt.start(handlers)
        logger.info("hearth.started")

        yield

        logger.info("hearth.shutdown")
        await rt.shutdown()

    app = FastAPI(
        title="Hearth Realtime",
        description="Realtime event delivery and lazy background workers for the recipe app",
        version=__version__,
        lifespan=lifespan,
    )

    # Starlette runs middleware in reverse order of registration:
    # UpgradeGuard → RequestId → CORS → handler
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        UpgradePathGuardMiddleware,
        realtime_path=settings.realtime_path,
        enforce=not settings.is_development,
    )

    app.include_router(api_router)
    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: hearth.main:app)
app = create_app()
