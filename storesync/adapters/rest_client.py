"""aiohttp implementation of the session REST collaborator."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Optional

import aiohttp

from storesync.engine.api import SessionApi
from storesync.engine.errors import (
    AuthRequiredError,
    ResourceNotFoundError,
    RestartCommandError,
    TransientConnectionError,
)
from storesync.engine.events import parse_timestamp, preview_from_payload
from storesync.engine.models import GenerationJob, RestartAck, SessionStatus

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Optional[str]]

_AUTH_STATUSES = (401, 403)


def _unwrap(body: Any) -> Any:
    # Some endpoints wrap their payload as {"data": ...}.
    if isinstance(body, dict) and "data" in body:
        inner = body["data"]
        if isinstance(inner, dict) or inner is None:
            return inner
    return body


class StorefrontApiClient(SessionApi):
    """Calls the platform API with a bearer token.

    The token is read from *token_provider* on every request; without
    one the call fails with AuthRequiredError and nothing is sent.
    """

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        *,
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> StorefrontApiClient:
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        if self._owns_session:
            self._session = None

    # ── SessionApi ────────────────────────────────────────────

    async def get_session_status(self, resource_id: int) -> SessionStatus:
        path = f"/v1/platform/apps/{resource_id}/expo-status"
        status, body = await self._request("GET", path)
        if status == 404:
            raise ResourceNotFoundError(resource_id)
        self._raise_for_status(path, status, body)
        data = _unwrap(body) or {}
        if not isinstance(data, dict):
            raise TransientConnectionError(path, "unexpected response body")
        return SessionStatus(
            started_at=parse_timestamp(data.get("startedAt")),
            status=str(data.get("status") or ""),
            preview=preview_from_payload(data),
        )

    async def restart(self, resource_id: int) -> RestartAck:
        return await self._command(resource_id, "restart")

    async def reload(self, resource_id: int) -> RestartAck:
        return await self._command(resource_id, "reload")

    async def get_generation_job(self, resource_id: int) -> GenerationJob | None:
        path = f"/v1/admin/content-generation/jobs/by-app/{resource_id}"
        status, body = await self._request("GET", path)
        if status == 404:
            return None
        self._raise_for_status(path, status, body)
        data = _unwrap(body)
        if not isinstance(data, dict) or not data.get("status"):
            return None
        progress = data.get("progress")
        return GenerationJob(
            job_id=data.get("id"),
            status=str(data["status"]),
            progress=int(progress) if isinstance(progress, (int, float)) else 0,
            current_step=data.get("currentStep"),
        )

    # ── Internals ─────────────────────────────────────────────

    async def _command(self, resource_id: int, action: str) -> RestartAck:
        path = f"/v1/platform/apps/{resource_id}/{action}"
        status, body = await self._request("POST", path, json={})
        if status in _AUTH_STATUSES:
            raise AuthRequiredError(path, status)
        data = _unwrap(body) if isinstance(body, dict) else {}
        data = data or {}
        message = str(data.get("message") or data.get("error") or "")
        if status >= 400:
            raise RestartCommandError(resource_id, message or f"HTTP {status}")
        job_id = data.get("jobId")
        return RestartAck(
            accepted=bool(data.get("accepted", True)),
            job_id=str(job_id) if job_id is not None else None,
            message=message,
        )

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _request(
        self, method: str, path: str, *, json: Any = None,
    ) -> tuple[int, Any]:
        token = self._token_provider()
        if not token:
            raise AuthRequiredError(path)
        session = await self._ensure_session()
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        logger.debug("%s %s", method, url)
        try:
            async with session.request(
                method, url, json=json, headers=headers, timeout=self._timeout,
            ) as response:
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = None
                logger.debug("%s %s -> %s", method, url, response.status)
                return response.status, body
        except asyncio.TimeoutError as exc:
            raise TransientConnectionError(path, "request timed out") from exc
        except aiohttp.ClientError as exc:
            raise TransientConnectionError(path, str(exc) or type(exc).__name__) from exc

    @staticmethod
    def _raise_for_status(path: str, status: int, body: Any) -> None:
        if status in _AUTH_STATUSES:
            raise AuthRequiredError(path, status)
        if status >= 400:
            detail = ""
            if isinstance(body, dict):
                detail = str(body.get("message") or body.get("error") or "")
            raise TransientConnectionError(path, detail or f"HTTP {status}")
