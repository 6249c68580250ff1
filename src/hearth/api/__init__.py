"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Auth is applied at the include_router level using FastAPI's
dependencies parameter. Health stays open for load balancers; everything
that exposes per-process state or acts on a user's sessions needs a JWT.
"""

from fastapi import APIRouter, Depends

from hearth.api.health import router as health_router
from hearth.api.queues import router as queues_router
from hearth.api.realtime import router as realtime_router
from hearth.api.sessions import router as sessions_router
from hearth.auth.dependencies import get_current_user

# All protected routers require authentication
_auth = [Depends(get_current_user)]

api_router = APIRouter(prefix="/api/v1")

# Open routes: no auth required
api_router.include_router(health_router, tags=["health"])

# Protected routes: require a valid JWT (Bearer or session cookie)
api_router.include_router(realtime_router, tags=["realtime"], dependencies=_auth)
api_router.include_router(queues_router, tags=["queues"], dependencies=_auth)
api_router.include_router(sessions_router, tags=["sessions"], dependencies=_auth)
