# tests/test_api_client.py

from __future__ import annotations

import json

import httpx
import pytest

from guardian_sync.client.api_client import HttpAuthorityClient
from guardian_sync.core.errors import (
    AuthorizationError,
    ConflictError,
    ConnectivityError,
    StoreUnavailableError,
    ValidationError,
)
from guardian_sync.tasks.task_models import TaskStatus


def _task_json(**kw) -> dict:
    base = {
        "id": "2b1f0a3e-51a4-4a8e-9a57-3f1d5f0c1c11",
        "title": "Walk",
        "description": "",
        "date": "2025-01-01",
        "time": "09:00",
        "status": "pending",
        "guardianId": "g",
        "dependentId": "d",
        "createdAt": "2025-01-01T08:00:00.000000Z",
        "lastUpdated": "2025-01-01T08:00:00.000000Z",
    }
    base.update(kw)
    return base


@pytest.mark.asyncio
async def test_sends_bearer_and_claim_fields() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_task_json(status="completed"))

    client = HttpAuthorityClient("http://srv/", token="tok", transport=httpx.MockTransport(handler))
    task = await client.update_status(
        "2b1f0a3e-51a4-4a8e-9a57-3f1d5f0c1c11",
        TaskStatus.COMPLETED,
        last_updated="2025-01-01T08:00:00.000000Z",
    )
    await client.aclose()

    assert task.status == TaskStatus.COMPLETED
    req = seen[0]
    assert req.method == "PATCH"
    assert req.url.path == "/api/tasks/2b1f0a3e-51a4-4a8e-9a57-3f1d5f0c1c11/status"
    assert req.headers["Authorization"] == "Bearer tok"
    assert json.loads(req.content) == {"status": "completed", "lastUpdated": "2025-01-01T08:00:00.000000Z"}


@pytest.mark.asyncio
async def test_error_responses_become_typed_errors() -> None:
    responses = {
        "/api/tasks/a/status": httpx.Response(
            409,
            json={"message": "changed", "currentStatus": "completed", "currentVersion": "v2"},
        ),
        "/api/tasks/b/status": httpx.Response(400, json={"message": "Invalid task status"}),
        "/api/tasks/c/status": httpx.Response(403, json={"message": "No access"}),
        "/api/tasks/d/status": httpx.Response(500, text="oops"),
    }

    def handler(request: httpx.Request) -> httpx.Response:
        return responses[request.url.path]

    client = HttpAuthorityClient("http://srv", transport=httpx.MockTransport(handler))

    with pytest.raises(ConflictError) as ei:
        await client.update_status("a", TaskStatus.CANCELLED, last_updated="v1")
    assert (ei.value.current_status, ei.value.current_version) == ("completed", "v2")

    with pytest.raises(ValidationError):
        await client.update_status("b", TaskStatus.CANCELLED)
    with pytest.raises(AuthorizationError):
        await client.update_status("c", TaskStatus.CANCELLED)
    with pytest.raises(StoreUnavailableError):
        await client.update_status("d", TaskStatus.CANCELLED)
    await client.aclose()


@pytest.mark.asyncio
async def test_transport_failure_is_connectivity_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = HttpAuthorityClient("http://srv", transport=httpx.MockTransport(handler))
    with pytest.raises(ConnectivityError):
        await client.list_tasks("guardian")
    assert await client.health() is False
    await client.aclose()


@pytest.mark.asyncio
async def test_login_keeps_token_for_channel_url() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"token": "abc", "user": {"id": "u1", "name": "n", "role": "guardian"}})

    client = HttpAuthorityClient("https://srv.example", transport=httpx.MockTransport(handler))
    user = await client.login("n", "pw")
    await client.aclose()

    assert user["id"] == "u1"
    assert client.channel_url() == "wss://srv.example/ws?token=abc"
