"""Policy-based emission and merged subscriptions.

Learn: Whether a recipe is visible to everyone, to the household or only to
its owner is a per-installation setting (the "view policy"). Publishers
follow the policy and send each event to exactly ONE channel:

    everyone  → hearth:recipes:broadcast:all:created
    household → hearth:recipes:household:{key}:created
    owner     → hearth:recipes:user:{user_id}:created

Subscribers don't know which policy was active when an event was published
(an admin can change it at any time), so they listen on every variant and
merge the streams. Because the publisher picked one channel, each event is
still delivered once.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Optional, Sequence

import structlog

from hearth.realtime.emitter import TypedEmitter
from hearth.realtime.mailbox import is_aborted
from hearth.realtime.multiplexer import SubscriptionMultiplexer

logger = structlog.get_logger()

_EXHAUSTED = object()


class ViewPolicy(str, Enum):
    EVERYONE = "everyone"
    HOUSEHOLD = "household"
    OWNER = "owner"


@dataclass(frozen=True)
class PolicyEmitContext:
    user_id: str
    household_key: Optional[str] = None


@dataclass(frozen=True)
class PolicySubscribeContext(PolicyEmitContext):
    multiplexer: Optional[SubscriptionMultiplexer] = None


async def wait_for_abort(signal: Optional[asyncio.Event]) -> None:
    """Block until the subscription is cancelled.

    For subscriptions that can't produce anything yet (no household) but
    must stay open so the client doesn't resubscribe in a loop.
    """
    if signal is None or signal.is_set():
        return
    await signal.wait()


async def emit_by_policy(
    emitter: TypedEmitter,
    policy: ViewPolicy,
    ctx: PolicyEmitContext,
    event: str,
    payload: Any,
) -> str:
    """Publish `payload` on the one channel `policy` selects. Returns it."""
    policy = ViewPolicy(policy)
    if policy is ViewPolicy.EVERYONE:
        channel = await emitter.broadcast(event, payload)
    elif policy is ViewPolicy.HOUSEHOLD and ctx.household_key:
        channel = await emitter.emit_to_household(ctx.household_key, event, payload)
    else:
        # Owner policy, or a household policy for a user without a household
        channel = await emitter.emit_to_user(ctx.user_id, event, payload)

    logger.debug(
        "realtime.policy_emitted",
        domain=emitter.domain,
        event_name=event,
        policy=policy.value,
        channel=channel,
    )
    return channel


def subscription_iterable(
    emitter: TypedEmitter,
    multiplexer: Optional[SubscriptionMultiplexer],
    channel: str,
    signal: Optional[asyncio.Event] = None,
) -> AsyncIterator[Any]:
    """Subscribe through the connection's multiplexer, or directly without one."""
    if multiplexer is not None:
        return multiplexer.subscribe(channel, signal)
    return emitter.create_subscription(channel, signal)


def policy_aware_iterables(
    emitter: TypedEmitter,
    ctx: PolicySubscribeContext,
    event: str,
    signal: Optional[asyncio.Event] = None,
) -> list[AsyncIterator[Any]]:
    """One iterator per channel variant the event could be published on."""
    channels = []
    if ctx.household_key:
        channels.append(emitter.household_event(ctx.household_key, event))
    channels.append(emitter.broadcast_event(event))
    channels.append(emitter.user_event(ctx.user_id, event))

    return [
        subscription_iterable(emitter, ctx.multiplexer, channel, signal)
        for channel in channels
    ]


async def _next_item(iterator: AsyncIterator[Any]) -> Any:
    try:
        return await anext(iterator)
    except StopAsyncIteration:
        return _EXHAUSTED


async def merge_async_iterables(
    sources: Sequence[AsyncIterable[Any]],
    signal: Optional[asyncio.Event] = None,
) -> AsyncIterator[Any]:
    """Yield items from every source as they arrive.

    Exactly one read is outstanding per source. When several reads complete
    in the same wakeup they are yielded in source order, so each source's
    own ordering is preserved. Pending reads are cancelled and every source
    is closed on the way out, whatever the reason.
    """
    iterators = [aiter(source) for source in sources]
    reads: dict[asyncio.Future, int] = {
        asyncio.ensure_future(_next_item(it)): index
        for index, it in enumerate(iterators)
    }
    stop = asyncio.ensure_future(signal.wait()) if signal is not None else None

    try:
        while reads and not is_aborted(signal):
            waiting = set(reads)
            if stop is not None:
                waiting.add(stop)
            done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)

            for read in sorted((d for d in done if d in reads), key=reads.get):
                index = reads.pop(read)
                value = read.result()
                if value is _EXHAUSTED:
                    continue
                yield value
                reads[asyncio.ensure_future(_next_item(iterators[index]))] = index
    finally:
        pending = list(reads)
        if stop is not None:
            pending.append(stop)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for it in iterators:
            aclose = getattr(it, "aclose", None)
            if aclose is None:
                continue
            try:
                await aclose()
            except Exception as e:
                logger.warning("realtime.source_close_failed", error=str(e))


async def create_policy_aware_subscription(
    emitter: TypedEmitter,
    ctx: PolicySubscribeContext,
    event: str,
    signal: Optional[asyncio.Event] = None,
) -> AsyncIterator[Any]:
    """Merged stream of `event` across every policy variant for this user."""
    logger.debug(
        "realtime.policy_subscribed",
        domain=emitter.domain,
        event_name=event,
        user_id=ctx.user_id,
        has_multiplexer=ctx.multiplexer is not None,
    )
    try:
        sources = policy_aware_iterables(emitter, ctx, event, signal)
        async for item in merge_async_iterables(sources, signal):
            yield item
    finally:
        logger.debug(
            "realtime.policy_unsubscribed",
            domain=emitter.domain,
            event_name=event,
            user_id=ctx.user_id,
        )
