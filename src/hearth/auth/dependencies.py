"""Authentication for HTTP routes and WebSocket handshakes.

Learn: Browsers send the session as a cookie; the CLI and other services
send `Authorization: Bearer <jwt>`. Both paths end in the same
CurrentIdentity, which is all downstream code looks at. Its ids end up as
channel segments, so a token whose sub or household claim can't be one is
rejected like any other bad token.
"""

from typing import Mapping, Optional

from fastapi import Depends, HTTPException, Request

from hearth.auth.jwt import HOUSEHOLD_CLAIM, TokenError, verify_token
from hearth.config import settings
from hearth.realtime.channels import check_scope_id


class CurrentIdentity:
    """The authenticated user behind a request or socket."""

    def __init__(self, user_id: str, household_key: Optional[str] = None):
        self.user_id = user_id
        self.household_key = household_key

    def __repr__(self) -> str:
        return f"CurrentIdentity(user_id={self.user_id!r}, household_key={self.household_key!r})"


def extract_token(headers: Mapping[str, str], cookies: Mapping[str, str]) -> Optional[str]:
    """Bearer header wins over the session cookie."""
    authorization = headers.get("authorization")
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:]
    return cookies.get(settings.session_cookie_name)


def identity_from_token(token: str) -> CurrentIdentity:
    """Raises TokenError when the token is missing claims or invalid."""
    payload = verify_token(token)
    household_key = payload.get(HOUSEHOLD_CLAIM)
    identity = CurrentIdentity(
        user_id=str(payload["sub"]),
        household_key=str(household_key) if household_key else None,
    )
    try:
        check_scope_id("user id", identity.user_id)
        if identity.household_key:
            check_scope_id("household key", identity.household_key)
    except ValueError as e:
        raise TokenError(f"Unusable token identity: {e}") from e
    return identity


async def get_current_user_optional(request: Request) -> Optional[CurrentIdentity]:
    """Extract current identity (optional — returns None if no auth)."""
    token = extract_token(request.headers, request.cookies)
    if not token:
        return None
    try:
        return identity_from_token(token)
    except TokenError as e:
        raise HTTPException(
            status_code=401,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user(
    identity: Optional[CurrentIdentity] = Depends(get_current_user_optional),
) -> CurrentIdentity:
    """Extract current identity (required — 401 if no auth)."""
    if not identity:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity
