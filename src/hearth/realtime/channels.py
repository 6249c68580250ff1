"""Channel naming — deterministic Redis channel names and patterns.

Learn: Every event lives on a channel shaped like

    {namespace}:{domain}:{scope}:{scope_id}:{event}
    hearth:recipes:household:h_42:created

scope is one of broadcast / user / household. Broadcast channels use the
fixed scope id "all" so that every channel has the same five segments.
A connection listens with one PSUBSCRIBE pattern per scope it belongs to:

    hearth:*:broadcast:all:*
    hearth:*:user:{user_id}:*
    hearth:*:household:{household_key}:*

Segments are validated: a ':' or a glob character inside an id would let a
pattern match somebody else's channels.
"""

from enum import Enum

BROADCAST_SCOPE_ID = "all"

_FORBIDDEN = set(":*?[]\\")


class Scope(str, Enum):
    BROADCAST = "broadcast"
    USER = "user"
    HOUSEHOLD = "household"


def _check_segment(kind: str, value: str) -> str:
    if not value:
        raise ValueError(f"Channel {kind} must not be empty")
    bad = _FORBIDDEN.intersection(value)
    if bad:
        raise ValueError(
            f"Channel {kind} {value!r} contains reserved characters {sorted(bad)}"
        )
    return value


def check_scope_id(kind: str, value: str) -> str:
    """Validate a user id or household key before it goes into a pattern."""
    return _check_segment(kind, value)


def channel_name(
    namespace: str, domain: str, scope: Scope, scope_id: str, event: str
) -> str:
    """Build the exact channel an event is published on."""
    return ":".join(
        [
            _check_segment("namespace", namespace),
            _check_segment("domain", domain),
            Scope(scope).value,
            _check_segment("scope id", scope_id),
            _check_segment("event", event),
        ]
    )


def scope_pattern(namespace: str, scope: Scope, scope_id: str) -> str:
    """PSUBSCRIBE pattern matching every domain and event for one scope."""
    return ":".join(
        [
            _check_segment("namespace", namespace),
            "*",
            Scope(scope).value,
            _check_segment("scope id", scope_id),
            "*",
        ]
    )


def connection_patterns(
    namespace: str, user_id: str, household_key: str | None
) -> list[str]:
    """The fixed pattern set for one connection: broadcast, user, household."""
    patterns = [
        scope_pattern(namespace, Scope.BROADCAST, BROADCAST_SCOPE_ID),
        scope_pattern(namespace, Scope.USER, user_id),
    ]
    # Only users in a household get the household pattern
    if household_key:
        patterns.append(scope_pattern(namespace, Scope.HOUSEHOLD, household_key))
    return patterns


def parse_channel(channel: str) -> tuple[str, str, Scope, str, str]:
    """Split a channel name into (namespace, domain, scope, scope_id, event)."""
    parts = channel.split(":")
    if len(parts) != 5:
        raise ValueError(f"Not a hearth channel name: {channel!r}")
    namespace, domain, scope, scope_id, event = parts
    return namespace, domain, Scope(scope), scope_id, event
