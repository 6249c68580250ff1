"""Session routes — force a user's sockets to reconnect.

Learn: Logging out (or changing a password, or leaving a household) must
also cut the user's open sockets, which may live on any server process.
The request publishes one invalidation message; every process closes its
own sockets for that user with code 4000 and the client reconnects with
fresh credentials.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from hearth.api.deps import get_runtime
from hearth.auth.dependencies import CurrentIdentity, get_current_user
from hearth.runtime import Runtime

router = APIRouter()


class InvalidateRequest(BaseModel):
    # Defaults to the caller; other users only in development
    user_id: Optional[str] = None
    reason: str = "session_invalidated"


@router.post("/sessions/invalidate", status_code=202)
async def invalidate_sessions(
    body: InvalidateRequest,
    identity: CurrentIdentity = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Broadcast an invalidation for a user's sockets across all processes."""
    user_id = body.user_id or identity.user_id
    if user_id != identity.user_id and not runtime.settings.is_development:
        raise HTTPException(status_code=403, detail="Cannot invalidate another user's sessions")
    receivers = await runtime.connections.invalidate(user_id, body.reason)
    return {"user_id": user_id, "reason": body.reason, "receivers": receivers}
