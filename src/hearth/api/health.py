"""Health check endpoint.

Learn: Simple GET endpoint that verifies the server is running, Redis is
reachable and the process is still accepting sockets. A draining instance
reports "draining" so the load balancer stops routing to it.
"""

from fastapi import APIRouter, Depends

from hearth import __version__
from hearth.api.deps import get_runtime
from hearth.runtime import Runtime

router = APIRouter()


@router.get("/health")
async def health_check(runtime: Runtime = Depends(get_runtime)):
    """Check server health and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}
    checks["redis"] = "ok" if await runtime.redis.ping() else "error: unreachable"

    if not runtime.connections.accepting:
        status = "draining"
    elif all(v == "ok" for k, v in checks.items() if k != "version"):
        status = "healthy"
    else:
        status = "degraded"

    return {"status": status, **checks}
