"""HTTP API tests — health, introspection and session invalidation."""

import pytest
from starlette.testclient import TestClient

from hearth.auth.jwt import create_access_token
from hearth.config import settings
from hearth.main import create_app
from hearth.queue.config import QueueName
from hearth.runtime import Runtime
from support import make_redis


def bearer(user_id: str = "alice") -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id, 'h1')}"}


@pytest.fixture()
def app_client():
    runtime = Runtime(redis=make_redis())
    with TestClient(create_app(runtime=runtime)) as client:
        yield client, runtime


def test_health(app_client):
    client, _ = app_client
    r = client.get("/api/v1/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "healthy"
    assert data["redis"] == "ok"
    assert "version" in data


def test_health_reports_draining(app_client):
    client, runtime = app_client
    runtime.connections.accepting = False
    assert client.get("/api/v1/health").json()["status"] == "draining"


def test_request_id_propagated(app_client):
    client, _ = app_client
    r = client.get("/api/v1/health", headers={"X-Request-ID": "trace-123"})
    assert r.headers["X-Request-ID"] == "trace-123"
    assert client.get("/api/v1/health").headers["X-Request-ID"] != "trace-123"


def test_oversized_request_id_replaced(app_client):
    client, _ = app_client
    r = client.get("/api/v1/health", headers={"X-Request-ID": "x" * 500})
    assert r.headers["X-Request-ID"] != "x" * 500
    assert len(r.headers["X-Request-ID"]) == 36


@pytest.mark.parametrize(
    "method, path",
    [
        ("get", "/api/v1/realtime/stats"),
        ("get", "/api/v1/queues"),
        ("post", "/api/v1/sessions/invalidate"),
    ],
)
def test_protected_routes_need_a_token(app_client, method, path):
    client, _ = app_client
    r = getattr(client, method)(path)
    assert r.status_code == 401


def test_realtime_stats(app_client):
    client, _ = app_client
    r = client.get("/api/v1/realtime/stats", headers=bearer())
    assert r.status_code == 200
    assert r.json() == {
        "accepting": True,
        "connections": 0,
        "multiplexers": {"count": 0, "subscribed": 0, "total_listeners": 0},
    }


def test_queue_overview(app_client):
    client, runtime = app_client
    queue = runtime.queues.get(QueueName.AUTO_TAGGING)
    client.portal.call(queue.add, "auto-tag", {"recipe_id": "r1"}, "auto-tag-r1")

    r = client.get("/api/v1/queues", headers=bearer())
    assert r.status_code == 200
    data = r.json()
    assert set(data["queues"]) == {name.value for name in QueueName}
    assert data["queues"]["auto-tagging"]["waiting"] == 1
    assert data["workers"] == {}


def test_job_lookup(app_client):
    client, runtime = app_client
    queue = runtime.queues.get(QueueName.AUTO_TAGGING)
    client.portal.call(queue.add, "auto-tag", {"recipe_id": "r1"}, "auto-tag-r1")

    r = client.get("/api/v1/queues/auto-tagging/jobs/auto-tag-r1", headers=bearer())
    assert r.status_code == 200
    assert r.json()["state"] == "waiting"
    assert client.get("/api/v1/queues/auto-tagging/jobs/missing", headers=bearer()).status_code == 404
    assert client.get("/api/v1/queues/nope/jobs/x", headers=bearer()).status_code == 404


def test_invalidate_own_sessions(app_client):
    client, _ = app_client
    r = client.post("/api/v1/sessions/invalidate", json={"reason": "logout"}, headers=bearer())
    assert r.status_code == 202
    # The process's own invalidation listener is subscribed
    assert r.json() == {"user_id": "alice", "reason": "logout", "receivers": 1}


def test_invalidating_someone_else_is_forbidden_outside_development(app_client, monkeypatch):
    client, _ = app_client
    monkeypatch.setattr(settings, "environment", "production")
    r = client.post("/api/v1/sessions/invalidate", json={"user_id": "bob"}, headers=bearer())
    assert r.status_code == 403
