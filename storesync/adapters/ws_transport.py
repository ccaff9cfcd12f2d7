"""aiohttp websocket transport for push channels.

Frames are JSON text messages of the form ``{"event": name, "data": ...}``
in both directions. The owner is identified on the handshake with a
``userId`` query parameter and joins its room with a ``join`` frame.
"""
from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any, Optional

import aiohttp

from storesync.engine.channel import ChannelTransport
from storesync.engine.config import ChannelConfig
from storesync.engine.errors import AuthRequiredError, TransientConnectionError

logger = logging.getLogger(__name__)

_AUTH_STATUSES = (401, 403)


class WebSocketTransport(ChannelTransport):
    """One websocket connection. Not reusable after close()."""

    def __init__(
        self,
        config: ChannelConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        token_provider: Callable[[], Optional[str]] | None = None,
        heartbeat: float | None = 25.0,
    ) -> None:
        self._config = config
        self._session = session
        self._owns_session = session is None
        self._token_provider = token_provider
        self._heartbeat = heartbeat
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._url = ""

    async def open(self, url: str, owner_id: str) -> None:
        self._url = url
        if self._session is None:
            self._session = aiohttp.ClientSession()
        headers = {}
        token = self._token_provider() if self._token_provider else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            self._ws = await self._session.ws_connect(
                url,
                params={"userId": owner_id},
                headers=headers,
                heartbeat=self._heartbeat,
            )
        except aiohttp.WSServerHandshakeError as exc:
            if exc.status in _AUTH_STATUSES:
                raise AuthRequiredError(url, exc.status) from exc
            raise TransientConnectionError(url, f"handshake failed: HTTP {exc.status}") from exc
        except aiohttp.ClientError as exc:
            raise TransientConnectionError(url, str(exc) or type(exc).__name__) from exc

    async def emit(self, name: str, data: Any) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise TransientConnectionError(self._url, "not connected")
        try:
            await ws.send_str(json.dumps({"event": name, "data": data}))
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise TransientConnectionError(self._url, str(exc) or type(exc).__name__) from exc

    async def frames(self) -> AsyncIterator[tuple[str, Any]]:
        ws = self._ws
        if ws is None:
            return
        async for message in ws:
            if message.type == aiohttp.WSMsgType.TEXT:
                frame = _decode(message.data)
                if frame is not None:
                    yield frame
            elif message.type == aiohttp.WSMsgType.ERROR:
                raise TransientConnectionError(self._url, str(ws.exception() or "websocket error"))
            elif message.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                break

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()
        if self._owns_session and self._session is not None:
            session, self._session = self._session, None
            await session.close()


def _decode(text: str) -> tuple[str, Any] | None:
    try:
        payload = json.loads(text)
    except ValueError:
        logger.debug("Ignoring non-JSON websocket frame")
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get("event"), str):
        logger.debug("Ignoring websocket frame without an event name")
        return None
    return payload["event"], payload.get("data")


def websocket_transport_factory(
    session: aiohttp.ClientSession | None = None,
    token_provider: Callable[[], Optional[str]] | None = None,
) -> Callable[[ChannelConfig], WebSocketTransport]:
    """Build a TransportFactory for EventChannelManager."""

    def factory(config: ChannelConfig) -> WebSocketTransport:
        return WebSocketTransport(config, session=session, token_provider=token_provider)

    return factory
