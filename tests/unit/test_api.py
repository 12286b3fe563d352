"""End-to-end tests for the HTTP API and realtime channel.

The app runs with its real lifespan against a temporary data directory.
"""

import json
import threading
import time
from unittest.mock import MagicMock

import pytest

from apprunner.builder import BuildOrchestrator
from apprunner.errors import PersistenceError


MAKE_DIST = "import pathlib; pathlib.Path('dist').mkdir(exist_ok=True); print('vite build done')"


def _receive_until(ws, topic):
    """Read messages until one of *topic* arrives; pings are skipped."""
    while True:
        message = json.loads(ws.receive_text())
        if message["type"] == topic:
            return message


def _wait_online(client, expected, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if client.get("/api/stats").json()["online"] == expected:
            return
        time.sleep(0.02)
    raise AssertionError(f"online never reached {expected}")


# ------------------------------------------------------------------
# System
# ------------------------------------------------------------------


def test_health(client):
    body = client.get("/api/health").json()
    assert body["status"] == "ok"
    assert body["db"] is True
    assert body["online"] == 0
    assert body["building"] == []


def test_unknown_route_uses_error_body(client):
    response = client.get("/api/nope")
    assert response.status_code == 404
    assert "error" in response.json()


# ------------------------------------------------------------------
# Stats
# ------------------------------------------------------------------


def test_launch_and_rate_flow(client):
    for expected in (1, 2, 3):
        response = client.post("/api/launch/app1")
        assert response.status_code == 200
        assert response.json() == {"success": True, "launches": expected}

    assert client.post("/api/rate/app1", json={"rating": 4}).json() == {
        "success": True,
        "ratingCount": 1,
    }
    assert client.post("/api/rate/app1", json={"rating": 2}).json()["ratingCount"] == 2

    stats = client.get("/api/stats").json()
    assert stats["launches"] == {"app1": 3}
    assert stats["ratings"] == {"app1": {"average": 3.0, "count": 2}}
    assert stats["online"] == 0
    assert stats["version"] == 2


@pytest.mark.parametrize("rating", [7, -1, "5", None, True])
def test_rate_out_of_range_rejected(client, rating):
    client.post("/api/rate/app1", json={"rating": 3})

    response = client.post("/api/rate/app1", json={"rating": rating})

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_INPUT"
    assert client.get("/api/stats").json()["ratings"]["app1"]["count"] == 1


def test_rate_missing_body_rejected(client):
    response = client.post("/api/rate/app1")
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid input"

    response = client.post("/api/rate/app1", json={"stars": 4})
    assert response.status_code == 400


def test_invalid_project_id_rejected(client):
    response = client.post("/api/launch/a..b")
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid project ID"
    assert client.get("/api/stats").json()["launches"] == {}


def test_store_failure_returns_500(client, monkeypatch):
    def broken(project_id):
        raise PersistenceError("Stats store write failed", details="disk I/O error")

    monkeypatch.setattr(client.app.state.db, "record_launch", broken)

    response = client.post("/api/launch/app1")

    assert response.status_code == 500
    assert response.json()["error"] == "Stats store write failed"


def test_sessions_limit_validated(client):
    assert client.get("/api/sessions").json() == []
    assert client.get("/api/sessions?limit=0").status_code == 400
    assert client.get("/api/sessions?limit=501").status_code == 400


# ------------------------------------------------------------------
# Projects and builds
# ------------------------------------------------------------------


def test_list_projects(client, runner_env, make_project):
    make_project(runner_env, "space", metadata={"name": "Space", "description": "Shooter"}, built=True)
    make_project(runner_env, "todo", package={"description": "Todo list"})

    projects = {p["id"]: p for p in client.get("/api/projects").json()}

    assert projects["space"] == {
        "id": "space",
        "name": "Space",
        "description": "Shooter",
        "hasDist": True,
        "hasPackageJson": False,
        "path": "/apps/space/",
    }
    assert projects["todo"]["hasDist"] is False
    assert projects["todo"]["description"] == "Todo list"


def test_build_failure_returns_logs(client, runner_env, make_project):
    make_project(runner_env, "todo", package={})

    response = client.post("/api/build/todo")

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "Build failed"
    assert body["code"] == "BUILD_FAILED"
    assert "apprunner-missing-npm" in body["details"]
    project = client.get("/api/projects").json()[0]
    assert project["hasDist"] is False


def test_build_success_sets_has_dist(client, runner_env, make_project, python_step):
    make_project(runner_env, "todo", package={})
    client.app.state.builder = BuildOrchestrator(
        runner_env, notifier=client.app.state.notifier, steps=[python_step(MAKE_DIST)]
    )

    response = client.post("/api/build/todo")

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert "vite build done" in response.json()["logs"]
    assert client.get("/api/projects").json()[0]["hasDist"] is True


def test_build_unknown_project_404(client):
    response = client.post("/api/build/ghost")
    assert response.status_code == 404
    assert response.json()["error"] == "Project not found"


def test_build_invalid_id_400(client):
    assert client.post("/api/build/.git").status_code == 400


def test_build_in_progress_409(client, runner_env, make_project):
    make_project(runner_env, "todo")
    builder = client.app.state.builder
    builder._in_flight.add("todo")
    try:
        response = client.post("/api/build/todo")
    finally:
        builder._in_flight.discard("todo")
    assert response.status_code == 409
    assert response.json()["error"] == "Build already in progress"


# ------------------------------------------------------------------
# Realtime channel
# ------------------------------------------------------------------


def test_ws_greeting(client):
    client.post("/api/launch/app1")
    with client.websocket_connect("/api/ws") as ws:
        first = json.loads(ws.receive_text())
        second = json.loads(ws.receive_text())

    assert first["type"] == "session:update"
    assert first["payload"] == {"online": 1}
    assert second["type"] == "stats:update"
    assert second["payload"]["stats"]["launches"] == {"app1": 1}


def test_ws_receives_launch_push(client):
    with client.websocket_connect("/api/ws") as ws:
        _receive_until(ws, "stats:update")
        client.post("/api/launch/app1")
        message = _receive_until(ws, "stats:update")
    assert message["payload"]["stats"]["launches"] == {"app1": 1}


def test_ws_online_count_tracks_connections(client):
    with client.websocket_connect("/api/ws") as first:
        _receive_until(first, "stats:update")
        with client.websocket_connect("/api/ws") as second:
            greeting = _receive_until(second, "session:update")
            assert greeting["payload"] == {"online": 2}
            update = _receive_until(first, "session:update")
            assert update["payload"] == {"online": 2}
            assert client.get("/api/health").json()["online"] == 2

        update = _receive_until(first, "session:update")
        assert update["payload"] == {"online": 1}

    _wait_online(client, 0)
    sessions = client.get("/api/sessions").json()
    assert len(sessions) == 2
    assert all(s["disconnectedAt"] is not None for s in sessions)
    assert sessions[0]["meta"] == {"userAgent": "testclient"}


def test_ws_session_join_sets_meta(client):
    with client.websocket_connect("/api/ws") as ws:
        _receive_until(ws, "stats:update")
        ws.send_text(json.dumps({"type": "session:join", "payload": {"meta": {"kiosk": "lobby"}}}))
        ws.send_text("not json")
        deadline = time.monotonic() + 5
        while client.get("/api/sessions").json()[0]["meta"] != {"kiosk": "lobby"}:
            assert time.monotonic() < deadline, "session:join meta never stored"
            time.sleep(0.02)


def test_ws_rejects_foreign_origin(client):
    from starlette.websockets import WebSocketDisconnect

    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/api/ws", headers={"origin": "http://evil.test"}) as ws:
            ws.receive_text()
    assert exc_info.value.code == 4003


# ------------------------------------------------------------------
# Startup
# ------------------------------------------------------------------


def test_startup_imports_legacy_stats(runner_env):
    from fastapi.testclient import TestClient

    from apprunner.api.main import app

    legacy = runner_env / "stats.json"
    legacy.write_text(
        json.dumps({"version": 1, "launches": {"app1": 3}, "ratings": {"app1": [4, 2]}}),
        encoding="utf-8",
    )

    with TestClient(app) as client:
        stats = client.get("/api/stats").json()

    assert stats["launches"] == {"app1": 3}
    assert stats["ratings"]["app1"] == {"average": 3.0, "count": 2}
    assert not legacy.exists()


def test_startup_sweeps_stale_sessions(runner_env):
    from fastapi.testclient import TestClient

    from apprunner.api.main import app
    from apprunner.web.database import Database

    crashed = Database(str(runner_env / "runner-stats.db"))
    crashed.open_session("stale")
    crashed.close()

    with TestClient(app) as client:
        assert client.get("/api/stats").json()["online"] == 0
        stale = client.get("/api/sessions").json()[0]
    assert stale["id"] == "stale"
    assert stale["disconnectedAt"] is not None


def test_startup_fails_when_store_unavailable(runner_env):
    from fastapi.testclient import TestClient

    from apprunner.api.main import app

    # A directory where the database file should be
    (runner_env / "runner-stats.db").mkdir()

    with pytest.raises(PersistenceError):
        with TestClient(app):
            pass


def test_session_join_store_failure_keeps_socket(caplog):
    """A failed meta write is logged and does not end the connection loop."""
    from apprunner.api.main import _handle_client_message

    db = MagicMock()
    db.update_session_meta.side_effect = PersistenceError("Stats store write failed", details="disk full")

    _handle_client_message(db, "c1", json.dumps({"type": "session:join", "payload": {"meta": {"a": 1}}}))

    db.update_session_meta.assert_called_once_with("c1", {"a": 1})
    assert "Could not store meta for session c1" in caplog.text


def test_ws_survives_session_join_store_failure(client, monkeypatch):
    attempted = threading.Event()

    def broken(session_id, meta):
        attempted.set()
        raise PersistenceError("Stats store write failed", details="disk full")

    monkeypatch.setattr(client.app.state.db, "update_session_meta", broken)
    with client.websocket_connect("/api/ws") as ws:
        _receive_until(ws, "stats:update")
        ws.send_text(json.dumps({"type": "session:join", "payload": {"meta": {"a": 1}}}))
        assert attempted.wait(timeout=5)
        client.post("/api/launch/app1")
        message = _receive_until(ws, "stats:update")
    assert message["payload"]["stats"]["launches"] == {"app1": 1}
