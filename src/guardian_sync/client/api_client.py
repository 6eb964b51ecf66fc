# src/guardian_sync/client/api_client.py

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..core.errors import ConnectivityError, error_for_status
from ..tasks.task_models import Task, TaskStatus

logger = logging.getLogger(__name__)


class HttpAuthorityClient:
    """
    REST client for the Task Authority (implements the AuthorityClient port).

    Error responses are mapped back to the typed errors from core.errors;
    transport failures (DNS, refused, timeouts) become ConnectivityError.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=min(5.0, timeout_seconds)),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ---- low-level ----

    def _headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(self, method: str, path: str, *, json: Any = None) -> Any:
        try:
            resp = await self._client.request(method, path, json=json, headers=self._headers())
        except httpx.TransportError as e:
            logger.debug("%s %s transport error: %r", method, path, e)
            raise ConnectivityError(f"{method} {path} failed: {e.__class__.__name__}") from e

        if resp.is_success:
            return resp.json() if resp.content else None

        try:
            body = resp.json()
        except ValueError:
            body = {"message": resp.text}
        if not isinstance(body, dict):
            body = {"message": str(body)}
        raise error_for_status(resp.status_code, body)

    # ---- auth ----

    async def login(self, name: str, password: str) -> dict[str, Any]:
        data = await self._request("POST", "/api/auth/login", json={"name": name, "password": password})
        self.token = data["token"]
        return data["user"]

    async def register(self, name: str, password: str, role: str) -> dict[str, Any]:
        data = await self._request(
            "POST", "/api/auth/register", json={"name": name, "password": password, "role": role}
        )
        self.token = data["token"]
        return data["user"]

    async def health(self) -> bool:
        try:
            await self._request("GET", "/api/health")
        except ConnectivityError:
            return False
        return True

    async def me(self) -> dict[str, Any]:
        return await self._request("GET", "/api/auth/me")

    # ---- linking ----

    async def dependent_code(self) -> str:
        data = await self._request("GET", "/api/dependent/code")
        return str(data["code"])

    async def link_dependent(self, code: str) -> dict[str, Any]:
        data = await self._request("POST", "/api/guardian/link", json={"code": code})
        return data["dependent"]

    async def list_dependents(self) -> list[dict[str, Any]]:
        return list(await self._request("GET", "/api/guardian/dependents") or [])

    # ---- tasks ----

    async def create_task(self, payload: dict[str, Any]) -> Task:
        data = await self._request("POST", "/api/tasks", json=payload)
        return Task.from_dict(data)

    async def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        last_updated: str | None = None,
        force: bool = False,
    ) -> Task:
        body: dict[str, Any] = {"status": TaskStatus(status).value}
        if last_updated:
            body["lastUpdated"] = last_updated
        if force:
            body["force"] = True
        data = await self._request("PATCH", f"/api/tasks/{task_id}/status", json=body)
        return Task.from_dict(data)

    async def delete_task(self, task_id: str) -> None:
        await self._request("DELETE", f"/api/tasks/{task_id}")

    async def list_tasks(self, role: str) -> list[Task]:
        data = await self._request("GET", f"/api/tasks/{role}")
        return [Task.from_dict(d) for d in (data or [])]

    def channel_url(self) -> str:
        """WebSocket URL of the notification channel for the current token."""
        if self.base_url.startswith("https://"):
            ws_base = "wss://" + self.base_url[len("https://"):]
        elif self.base_url.startswith("http://"):
            ws_base = "ws://" + self.base_url[len("http://"):]
        else:
            ws_base = self.base_url
        return f"{ws_base}/ws?token={self.token or ''}"
