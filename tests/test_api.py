# tests/test_api.py

from __future__ import annotations

import inspect
from types import SimpleNamespace

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from guardian_sync.server import app as app_module
from guardian_sync.server.app import create_app
from guardian_sync.tasks.task_models import new_id

from .fakes import task_payload


@pytest.fixture()
def client(settings):
    app = create_app(settings, run_scheduler=False)
    with TestClient(app) as c:
        yield c


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _register(client: TestClient, name: str, role: str) -> dict:
    r = client.post("/api/auth/register", json={"name": name, "password": "pw", "role": role})
    assert r.status_code == 201, r.text
    return r.json()


@pytest.fixture()
def linked(client) -> SimpleNamespace:
    g = _register(client, "gina", "guardian")
    d = _register(client, "dan", "dependent")
    r = client.post("/api/guardian/link", json={"code": d["user"]["code"]}, headers=_auth(g["token"]))
    assert r.status_code == 200, r.text
    return SimpleNamespace(g=g, d=d)


def test_health(client) -> None:
    assert client.get("/api/health").json() == {"status": "ok"}


def test_auth_flow(client) -> None:
    d = _register(client, "dan", "dependent")
    assert len(d["user"]["code"]) == 8
    g = _register(client, "gina", "guardian")
    assert "code" not in g["user"]

    assert client.post("/api/auth/register", json={"name": "dan", "password": "x", "role": "dependent"}).status_code == 400
    assert client.post("/api/auth/register", json={"name": "zed", "password": "x", "role": "admin"}).status_code == 400

    bad = client.post("/api/auth/login", json={"name": "dan", "password": "wrong"})
    assert bad.status_code == 401
    assert bad.json() == {"message": "Invalid name or password"}

    ok = client.post("/api/auth/login", json={"name": "dan", "password": "pw"})
    assert ok.status_code == 200
    me = client.get("/api/auth/me", headers=_auth(ok.json()["token"]))
    assert me.json()["role"] == "dependent"

    assert client.get("/api/auth/me").status_code == 401
    assert client.get("/api/auth/me", headers=_auth("garbage")).status_code == 401

    code = client.get("/api/dependent/code", headers=_auth(d["token"]))
    assert code.json() == {"code": d["user"]["code"]}
    assert client.get("/api/dependent/code", headers=_auth(g["token"])).status_code == 403


def test_link_is_exclusive_and_idempotent(client, linked) -> None:
    code = linked.d["user"]["code"]

    again = client.post("/api/guardian/link", json={"code": code}, headers=_auth(linked.g["token"]))
    assert again.status_code == 200

    rival = _register(client, "rita", "guardian")
    taken = client.post("/api/guardian/link", json={"code": code}, headers=_auth(rival["token"]))
    assert taken.status_code == 400
    assert "already linked" in taken.json()["message"]

    unknown = client.post("/api/guardian/link", json={"code": "NOPE0000"}, headers=_auth(rival["token"]))
    assert unknown.status_code == 404

    deps = client.get("/api/guardian/dependents", headers=_auth(linked.g["token"])).json()
    assert deps == [{"id": linked.d["user"]["id"], "name": "dan"}]


def test_task_lifecycle(client, linked) -> None:
    g, d = _auth(linked.g["token"]), _auth(linked.d["token"])
    task_id = new_id()
    body = task_payload(linked.d["user"]["id"], id=task_id)

    created = client.post("/api/tasks", json=body, headers=g)
    assert created.status_code == 201
    v1 = created.json()["lastUpdated"]

    replay = client.post("/api/tasks", json=body, headers=g)
    assert replay.status_code == 200
    assert replay.json()["id"] == task_id

    listed = client.get("/api/tasks/dependent", headers=d).json()
    assert [t["id"] for t in listed] == [task_id]
    assert client.get("/api/tasks/guardian", headers=d).status_code == 403

    done = client.patch(f"/api/tasks/{task_id}/status", json={"status": "completed", "lastUpdated": v1}, headers=d)
    assert done.status_code == 200
    v2 = done.json()["lastUpdated"]
    assert v2 > v1

    stale = client.patch(f"/api/tasks/{task_id}/status", json={"status": "cancelled", "lastUpdated": v1}, headers=g)
    assert stale.status_code == 409
    assert stale.json()["currentStatus"] == "completed"
    assert stale.json()["currentVersion"] == v2
    assert "message" in stale.json()

    forced = client.patch(
        f"/api/tasks/{task_id}/status",
        json={"status": "cancelled", "lastUpdated": v1, "force": True},
        headers=g,
    )
    assert forced.status_code == 200
    assert forced.json()["status"] == "cancelled"

    assert client.delete(f"/api/tasks/{task_id}", headers=d).status_code == 403
    assert client.delete(f"/api/tasks/{task_id}", headers=g).json() == {"message": "Task deleted"}
    assert client.delete(f"/api/tasks/{task_id}", headers=g).status_code == 404


def test_task_request_errors(client, linked) -> None:
    g, d = _auth(linked.g["token"]), _auth(linked.d["token"])
    dep_id = linked.d["user"]["id"]

    assert client.post("/api/tasks", json=task_payload(dep_id), headers=d).status_code == 403
    assert client.post("/api/tasks", json=task_payload(dep_id)).status_code == 401

    missing = client.post("/api/tasks", json={"date": "2025-01-01", "time": "08:00", "dependentId": dep_id}, headers=g)
    assert missing.status_code == 400
    assert "title" in missing.json()["message"]

    task_id = client.post("/api/tasks", json=task_payload(dep_id), headers=g).json()["id"]
    assert client.patch(f"/api/tasks/{task_id}/status", json={"status": "done"}, headers=g).status_code == 400
    assert client.patch("/api/tasks/not-a-uuid/status", json={"status": "completed"}, headers=g).status_code == 400
    assert client.patch(f"/api/tasks/{new_id()}/status", json={"status": "completed"}, headers=g).status_code == 404
    bad_ts = client.patch(f"/api/tasks/{task_id}/status", json={"status": "completed", "lastUpdated": "soon"}, headers=g)
    assert bad_ts.status_code == 400


def test_channel_refuses_bad_token(client) -> None:
    with pytest.raises(WebSocketDisconnect) as ei:
        with client.websocket_connect("/ws?token=garbage"):
            pass
    assert ei.value.code == 1008


def test_channel_handshake_ping_and_push(client, linked) -> None:
    dep_token = linked.d["token"]
    with client.websocket_connect(f"/ws?token={dep_token}") as ws:
        hello = ws.receive_json()
        assert hello["type"] == "connection_established"
        assert hello["userId"] == linked.d["user"]["id"]

        ws.send_json({"type": "ping", "timestamp": "t-1"})
        assert ws.receive_json() == {"type": "pong", "timestamp": "t-1"}

        created = client.post(
            "/api/tasks", json=task_payload(linked.d["user"]["id"]), headers=_auth(linked.g["token"])
        ).json()
        pushed = ws.receive_json()
        assert pushed["type"] == "new_task"
        assert pushed["taskId"] == created["id"]

        client.patch(
            f"/api/tasks/{created['id']}/status",
            json={"status": "in_progress"},
            headers=_auth(linked.g["token"]),
        )
        changed = ws.receive_json()
        assert changed["type"] == "task_status_changed"
        assert changed["newStatus"] == "in_progress"


def test_second_connection_supersedes_first(client, linked) -> None:
    token = linked.g["token"]
    with client.websocket_connect(f"/ws?token={token}") as first:
        first.receive_json()
        with client.websocket_connect(f"/ws?token={token}") as second:
            assert second.receive_json()["type"] == "connection_established"
            with pytest.raises(WebSocketDisconnect) as ei:
                first.receive_json()
            assert ei.value.code == 4000


def test_blocking_routes_are_not_run_on_the_event_loop() -> None:
    blocking = (
        app_module.register,
        app_module.login,
        app_module.me,
        app_module.dependent_code,
        app_module.link_dependent,
        app_module.list_dependents,
        app_module.guardian_tasks,
        app_module.dependent_tasks,
    )
    for route in blocking:
        assert not inspect.iscoroutinefunction(route), route.__name__
