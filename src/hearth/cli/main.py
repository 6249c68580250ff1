"""Hearth CLI — run the realtime server and poke at a running one.

Usage:
    hearth serve                                # Run the API + realtime socket
    hearth health                               # Server and Redis status
    hearth queues                               # Job counts and worker phases
    hearth stats                                # Live sockets in the answering process
    hearth invalidate USER_ID                   # Force a user's sockets to reconnect
    hearth invalidate USER_ID --direct          # Same, straight through Redis
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click
import httpx

from hearth import __version__

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("HEARTH_API_URL", DEFAULT_API_URL).rstrip("/")


def _client() -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the Hearth server."""
    headers = {}
    token = os.environ.get("HEARTH_TOKEN")
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return httpx.AsyncClient(base_url=_api_url(), headers=headers, timeout=30.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Offloads to a thread when a loop is already running (e.g. CliRunner
    invoked from an async test).
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _print_table(rows: list[dict], columns: list[tuple[str, str, int]]):
    """Print a simple ASCII table.

    columns: list of (header, dict_key, width)
    """
    header = "  ".join(h.ljust(w) for h, _, w in columns)
    click.secho(header, bold=True)
    click.echo("-" * len(header))
    for row in rows:
        line = "  ".join(str(row.get(k, "-"))[:w].ljust(w) for _, k, w in columns)
        click.echo(line)


def _phase_color(phase: str) -> str:
    colors = {
        "running": "green",
        "always_on": "green",
        "warm_idle": "yellow",
        "cold_shutdown": "blue",
        "waiting_for_job": "white",
    }
    return colors.get(phase, "white")


def _fail(message: str):
    click.secho(f"Error: {message}", fg="red", err=True)
    sys.exit(1)


async def _get(path: str) -> dict:
    async with _client() as c:
        try:
            r = await c.get(path)
        except httpx.HTTPError as e:
            _fail(f"cannot reach {_api_url()}: {e}")
        if r.status_code == 401:
            _fail("unauthorized, set HEARTH_TOKEN to a valid JWT")
        r.raise_for_status()
        return r.json()


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="hearth")
def main():
    """Hearth — realtime events and lazy background workers."""


# ---------------------------------------------------------------------------
# hearth serve
# ---------------------------------------------------------------------------


@main.command()
@click.option("--host", default=None, help="Bind address (default: HEARTH_HOST)")
@click.option("--port", type=int, default=None, help="Port (default: HEARTH_PORT)")
@click.option("--reload", is_flag=True, help="Reload on code changes (development)")
def serve(host: Optional[str], port: Optional[int], reload: bool):
    """Run the API and realtime socket under uvicorn."""
    import uvicorn

    from hearth.config import settings
    from hearth.log import configure_logging

    configure_logging(settings.log_level, settings.log_json)
    options = dict(
        host=host or settings.host,
        port=port or settings.port,
        log_config=None,
        ws_ping_interval=settings.ws_ping_interval,
        ws_ping_timeout=settings.ws_ping_timeout,
        # The watchdog is already running; keep uvicorn's wait inside it
        timeout_graceful_shutdown=max(1, int(settings.shutdown_stage_timeout_seconds)),
    )
    if reload:
        uvicorn.run("hearth.main:app", reload=True, **options)
        return

    from hearth.main import app
    from hearth.server import HearthServer

    HearthServer(uvicorn.Config(app, **options), app).run()


# ---------------------------------------------------------------------------
# hearth health / stats
# ---------------------------------------------------------------------------


@main.command()
@click.option("--json-output", "as_json", is_flag=True, help="Print raw JSON")
def health(as_json: bool):
    """Show server and Redis status."""
    data = _run(_get("/api/v1/health"))
    if as_json:
        click.echo(_pretty_json(data))
        return
    color = "green" if data.get("status") == "healthy" else "yellow"
    click.secho(f"{data.get('status')} (v{data.get('version')})", fg=color, bold=True)
    click.echo(f"  redis: {data.get('redis')}")


@main.command()
def stats():
    """Show live sockets and multiplexers in the answering process."""
    data = _run(_get("/api/v1/realtime/stats"))
    mux = data.get("multiplexers", {})
    click.echo(f"  accepting:    {data.get('accepting')}")
    click.echo(f"  connections:  {data.get('connections')}")
    click.echo(f"  multiplexers: {mux.get('count')} ({mux.get('subscribed')} subscribed, {mux.get('total_listeners')} listeners)")


# ---------------------------------------------------------------------------
# hearth queues
# ---------------------------------------------------------------------------


@main.command()
@click.option("--json-output", "as_json", is_flag=True, help="Print raw JSON")
def queues(as_json: bool):
    """Show job counts per queue and lazy worker phases."""
    data = _run(_get("/api/v1/queues"))
    if as_json:
        click.echo(_pretty_json(data))
        return

    workers = data.get("workers", {})
    rows = []
    for name, counts in data.get("queues", {}).items():
        worker = workers.get(name)
        rows.append({"queue": name, **counts, "worker": worker["phase"] if worker else "-"})

    if not rows:
        click.echo("No queues.")
        return
    _print_table(rows, [
        ("QUEUE", "queue", 24),
        ("WAIT", "waiting", 6),
        ("ACTIVE", "active", 6),
        ("DELAYED", "delayed", 7),
        ("DONE", "completed", 6),
        ("FAILED", "failed", 6),
        ("WORKER", "worker", 16),
    ])
    for name, worker in workers.items():
        phase = click.style(worker["phase"], fg=_phase_color(worker["phase"]))
        click.echo(f"  {name}: {phase} ({worker['in_flight']} in flight)")


# ---------------------------------------------------------------------------
# hearth invalidate
# ---------------------------------------------------------------------------


@main.command()
@click.argument("user_id")
@click.option("--reason", default="session_invalidated", help="Reason sent to the sockets")
@click.option("--direct", is_flag=True, help="Publish through Redis instead of the HTTP API")
def invalidate(user_id: str, reason: str, direct: bool):
    """Force every socket of USER_ID, on every server, to reconnect."""
    if direct:
        receivers = _run(_invalidate_direct(user_id, reason))
    else:
        receivers = _run(_invalidate_http(user_id, reason))
    click.secho(f"Invalidation for {user_id} reached {receivers} server(s)", fg="green")


async def _invalidate_http(user_id: str, reason: str) -> int:
    async with _client() as c:
        try:
            r = await c.post(
                "/api/v1/sessions/invalidate",
                json={"user_id": user_id, "reason": reason},
            )
        except httpx.HTTPError as e:
            _fail(f"cannot reach {_api_url()}: {e}")
        if r.status_code in (401, 403):
            _fail(r.json().get("detail", "not allowed"))
        r.raise_for_status()
        return r.json()["receivers"]


async def _invalidate_direct(user_id: str, reason: str) -> int:
    from hearth.config import settings
    from hearth.realtime.connections import ConnectionRegistry
    from hearth.realtime.multiplexer import MultiplexerRegistry
    from hearth.realtime.pubsub import RedisConnections

    redis = RedisConnections(url=settings.redis_url)
    await redis.connect()
    try:
        registry = ConnectionRegistry(
            redis,
            MultiplexerRegistry(redis, settings.channel_namespace),
            settings.invalidation_channel,
        )
        return await registry.invalidate(user_id, reason)
    finally:
        await redis.close()


if __name__ == "__main__":
    main()
