"""Message codec — JSON that survives datetimes, UUIDs and friends.

Learn: Plain json.dumps either fails on a datetime or flattens it to a
string that comes back as a string. Events carry recipe timestamps, calendar
dates and ids, so values that JSON can't represent are wrapped in a small
tagged object:

    datetime(2024, 5, 1, 12, 0)  →  {"$type": "datetime", "value": "2024-05-01T12:00:00"}

loads() recognises the tag and rebuilds the original value. Pydantic models
are dumped to plain dicts first (their datetimes then get tagged as above),
so they round-trip as dicts.
"""

import json
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel

TYPE_KEY = "$type"
VALUE_KEY = "value"


class SerializationError(ValueError):
    """Raised when a message cannot be encoded or decoded."""


def _encode_default(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="python")
    # datetime is a date subclass; check it first
    if isinstance(obj, datetime):
        return {TYPE_KEY: "datetime", VALUE_KEY: obj.isoformat()}
    if isinstance(obj, date):
        return {TYPE_KEY: "date", VALUE_KEY: obj.isoformat()}
    if isinstance(obj, time):
        return {TYPE_KEY: "time", VALUE_KEY: obj.isoformat()}
    if isinstance(obj, UUID):
        return {TYPE_KEY: "uuid", VALUE_KEY: str(obj)}
    if isinstance(obj, Decimal):
        return {TYPE_KEY: "decimal", VALUE_KEY: str(obj)}
    if isinstance(obj, (set, frozenset)):
        return {TYPE_KEY: "set", VALUE_KEY: list(obj)}
    raise TypeError(f"Type {type(obj).__name__} is not serializable")


_DECODERS = {
    "datetime": datetime.fromisoformat,
    "date": date.fromisoformat,
    "time": time.fromisoformat,
    "uuid": UUID,
    "decimal": Decimal,
    "set": set,
}


def _decode_hook(obj: dict) -> Any:
    if len(obj) == 2 and TYPE_KEY in obj and VALUE_KEY in obj:
        decoder = _DECODERS.get(obj[TYPE_KEY])
        if decoder is not None:
            return decoder(obj[VALUE_KEY])
    return obj


def dumps(payload: Any) -> str:
    """Serialize a payload for the wire."""
    try:
        return json.dumps(payload, default=_encode_default, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Cannot encode payload: {e}") from e


def loads(message: str | bytes) -> Any:
    """Deserialize a wire message produced by dumps()."""
    try:
        return json.loads(message, object_hook=_decode_hook)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Cannot decode message: {e}") from e
