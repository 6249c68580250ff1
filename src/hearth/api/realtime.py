"""Realtime introspection — live sockets and multiplexers in this process."""

from fastapi import APIRouter, Depends

from hearth.api.deps import get_runtime
from hearth.runtime import Runtime

router = APIRouter()


@router.get("/realtime/stats")
async def realtime_stats(runtime: Runtime = Depends(get_runtime)):
    """Counts are per process, not cluster-wide."""
    return {
        "accepting": runtime.connections.accepting,
        "connections": runtime.connections.connection_count(),
        "multiplexers": runtime.multiplexers.stats(),
    }
