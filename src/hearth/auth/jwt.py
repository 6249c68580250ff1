"""Session token creation and verification.

Learn: The recipe app's session service issues a signed JWT; this process
only verifies it. The token carries:
- sub: the user id
- household: the household key, if the user belongs to one

Realtime channel patterns are derived from these two claims, so a user who
switches household must get a new token (and their sockets are invalidated
to pick it up).
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from hearth.config import settings

HOUSEHOLD_CLAIM = "household"


class TokenError(Exception):
    """Raised when token creation/verification fails."""


def create_access_token(
    user_id: str,
    household_key: Optional[str] = None,
    expires_minutes: Optional[int] = None,
) -> str:
    """Create a session JWT (used by the CLI and tests)."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "type": "access",
        "exp": now + timedelta(
            minutes=expires_minutes or settings.access_token_expire_minutes
        ),
        "iat": now,
    }
    if household_key:
        payload[HOUSEHOLD_CLAIM] = household_key
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict:
    """Verify and decode a JWT token.

    Returns the payload dict on success.
    Raises TokenError on failure.
    """
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError:
        raise TokenError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise TokenError(f"Invalid token: {e}")

    if not payload.get("sub"):
        raise TokenError("Token has no subject")
    return payload
