"""Per-subscriber mailbox and cancellation-signal helpers.

Learn: A logical subscription is an async generator that pulls from a
Mailbox. The Redis reader puts decoded messages in; the generator takes
them out in order. Nothing is lost between put() and get(): items wait in
a deque until the consumer is ready.

get() blocks until one of three things happens:
1. an item is available → returned
2. the mailbox is closed (connection going away) → MailboxClosed
3. the caller's cancellation signal (an asyncio.Event) is set → MailboxClosed

Both wake-ups are plain asyncio.Events, so waiting on "whichever comes
first" never consumes an item it doesn't return.
"""

import asyncio
from collections import deque
from typing import Any, Awaitable, Optional


class MailboxClosed(Exception):
    """The mailbox was closed or the subscriber's signal fired."""


def is_aborted(signal: Optional[asyncio.Event]) -> bool:
    return signal is not None and signal.is_set()


async def race_signal(awaitable: Awaitable[Any], signal: Optional[asyncio.Event]) -> bool:
    """Await `awaitable` unless `signal` fires first.

    Returns True if the awaitable finished (its exception, if any, is
    raised), False if the signal won. The awaitable is cancelled when the
    signal wins, so pass asyncio.shield(...) for shared work.
    """
    if signal is None:
        await awaitable
        return True
    if signal.is_set():
        if asyncio.isfuture(awaitable):
            awaitable.cancel()
        elif asyncio.iscoroutine(awaitable):
            awaitable.close()
        return False

    work = asyncio.ensure_future(awaitable)
    stop = asyncio.ensure_future(signal.wait())
    try:
        await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop.cancel()
        if not work.done():
            work.cancel()

    if work.done() and not work.cancelled():
        work.result()
        return True
    return False


class Mailbox:
    """Ordered, unbounded buffer for one logical subscriber."""

    def __init__(self) -> None:
        self._items: deque[Any] = deque()
        self._wake = asyncio.Event()
        self._closed = False

    def put(self, item: Any) -> None:
        if self._closed:
            return
        self._items.append(item)
        self._wake.set()

    def close(self) -> None:
        self._closed = True
        self._wake.set()

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._items)

    async def get(self, signal: Optional[asyncio.Event] = None) -> Any:
        while True:
            if self._closed or is_aborted(signal):
                raise MailboxClosed()
            if self._items:
                return self._items.popleft()
            self._wake.clear()
            await race_signal(self._wake.wait(), signal)
