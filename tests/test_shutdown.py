"""Graceful shutdown tests — ordering, per-stage timeouts and the watchdog."""

import asyncio
import signal

import pytest
import uvicorn
from fastapi import FastAPI

from hearth.realtime.connections import RECONNECT_CLOSE_CODE
from hearth.runtime import SERVER_SHUTDOWN_REASON, Runtime
from hearth.server import HearthServer
from hearth.shutdown import GracefulShutdown
from support import FakeHandle, wait_until


def make_shutdown(stage_timeout=1.0, force_exit_after=5.0):
    exits = []
    shutdown = GracefulShutdown(
        stage_timeout=stage_timeout,
        force_exit_after=force_exit_after,
        force_exit=exits.append,
    )
    return shutdown, exits


@pytest.mark.asyncio
async def test_stages_run_in_order():
    shutdown, exits = make_shutdown()
    order = []
    for name in ("realtime", "collaborators", "workers", "redis"):
        async def stage(name=name):
            order.append(name)

        shutdown.add_stage(name, stage)

    assert await shutdown.run() is True
    assert order == ["realtime", "collaborators", "workers", "redis"]
    assert exits == []


@pytest.mark.asyncio
async def test_hung_stage_times_out_and_the_next_still_runs():
    shutdown, exits = make_shutdown(stage_timeout=0.05)
    ran = []

    async def hangs():
        await asyncio.sleep(10)

    async def after():
        ran.append("after")

    shutdown.add_stage("hangs", hangs)
    shutdown.add_stage("after", after)
    assert await shutdown.run() is False
    assert ran == ["after"]
    assert exits == []


@pytest.mark.asyncio
async def test_failing_stage_does_not_stop_shutdown():
    shutdown, _ = make_shutdown()
    ran = []

    async def fails():
        raise RuntimeError("redis went away")

    async def after():
        ran.append("after")

    shutdown.add_stage("fails", fails)
    shutdown.add_stage("after", after)
    assert await shutdown.run() is False
    assert ran == ["after"]


@pytest.mark.asyncio
async def test_watchdog_forces_exit_past_the_ceiling():
    shutdown, exits = make_shutdown(stage_timeout=1.0, force_exit_after=0.05)

    async def slow():
        await asyncio.sleep(0.2)

    shutdown.add_stage("slow", slow)
    await shutdown.run()
    assert exits == [1]


@pytest.mark.asyncio
async def test_shutdown_runs_once():
    shutdown, _ = make_shutdown()
    calls = []

    async def stage():
        await asyncio.sleep(0.01)
        calls.append(1)

    shutdown.add_stage("stage", stage)
    results = await asyncio.gather(shutdown.run(), shutdown.run())
    await shutdown.run()
    assert results == [True, True]
    assert calls == [1]
    assert shutdown.started


@pytest.mark.asyncio
async def test_run_through_stops_after_the_named_stage():
    shutdown, exits = make_shutdown()
    order = []
    for name in ("realtime", "workers"):
        async def stage(name=name):
            order.append(name)

        shutdown.add_stage(name, stage)

    assert await shutdown.run(through="realtime") is True
    assert order == ["realtime"]
    assert shutdown.started
    assert not shutdown.finished

    assert await shutdown.run() is True
    assert order == ["realtime", "workers"]
    assert shutdown.finished
    assert exits == []


@pytest.mark.asyncio
async def test_run_through_an_unknown_stage_is_rejected():
    shutdown, _ = make_shutdown()
    with pytest.raises(ValueError):
        await shutdown.run(through="nope")
    assert not shutdown.started


@pytest.mark.asyncio
async def test_watchdog_keeps_running_between_the_two_steps():
    shutdown, exits = make_shutdown(force_exit_after=0.05)

    async def noop():
        pass

    shutdown.add_stage("realtime", noop)
    shutdown.add_stage("redis", noop)
    await shutdown.run(through="realtime")
    await asyncio.sleep(0.15)
    assert exits == [1]


# ─── Runtime ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_runtime_stage_order(redis):
    runtime = Runtime(redis=redis)
    assert runtime.build_shutdown().stage_names == ["realtime", "collaborators", "workers", "redis"]


@pytest.mark.asyncio
async def test_runtime_shutdown_tells_clients_to_reconnect(redis):
    runtime = Runtime(redis=redis)
    await runtime.start()
    assert runtime.connections.accepting
    assert runtime.queues.initialized

    handle = FakeHandle()
    runtime.connections.register("alice", handle, "c1")
    mux = runtime.multiplexers.get_or_create("c1", "alice")
    stopped = []

    async def stop_stream():
        stopped.append(True)

    runtime.add_collaborator_stop("grocery-stream", stop_stream)

    assert await runtime.shutdown() is True
    assert handle.closed_with == (RECONNECT_CLOSE_CODE, SERVER_SHUTDOWN_REASON)
    assert not runtime.connections.accepting
    assert mux.is_closed
    assert stopped == [True]
    assert not runtime.queues.initialized


@pytest.mark.asyncio
async def test_runtime_begin_shutdown_only_drains_sockets(redis):
    runtime = Runtime(redis=redis)
    await runtime.start()
    handle = FakeHandle()
    runtime.connections.register("alice", handle, "c1")

    assert await runtime.begin_shutdown() is True
    assert handle.closed_with == (RECONNECT_CLOSE_CODE, SERVER_SHUTDOWN_REASON)
    assert runtime.shutting_down
    # Queues and Redis stay up until the lifespan finishes the job
    assert runtime.queues.initialized
    assert await redis.client.ping()

    assert await runtime.shutdown() is True
    assert not runtime.queues.initialized


# ─── Server signal handling ───────────────────────────────


@pytest.mark.asyncio
async def test_sigterm_drains_sockets_before_uvicorn_exits(redis):
    runtime = Runtime(redis=redis)
    await runtime.start()
    app = FastAPI()
    app.state.runtime = runtime
    server = HearthServer(uvicorn.Config(app), app)
    handle = FakeHandle()
    runtime.connections.register("alice", handle, "c1")

    server.handle_exit(signal.SIGTERM, None)
    # uvicorn keeps serving until the sockets have been told to reconnect
    assert not server.should_exit
    assert runtime.shutting_down

    await wait_until(lambda: server.should_exit)
    assert handle.closed_with == (RECONNECT_CLOSE_CODE, SERVER_SHUTDOWN_REASON)
    assert not runtime.connections.accepting

    assert await runtime.shutdown() is True


@pytest.mark.asyncio
async def test_signal_before_startup_goes_straight_to_uvicorn():
    app = FastAPI()
    server = HearthServer(uvicorn.Config(app), app)
    server.handle_exit(signal.SIGTERM, None)
    assert server.should_exit
