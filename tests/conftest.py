"""Shared fakes for the session sync tests.

FakeTransportHub stands in for the websocket transport and FakeApi for
the platform REST client, so the engine can be driven deterministically
on the test's event loop.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from storesync.engine.api import SessionApi
from storesync.engine.channel import ChannelTransport, EventChannelManager
from storesync.engine.config import ChannelConfig, SyncConfig
from storesync.engine.errors import ResourceNotFoundError
from storesync.engine.models import GenerationJob, RestartAck, SessionStatus

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeTransport(ChannelTransport):
    def __init__(self, hub: "FakeTransportHub", config: ChannelConfig) -> None:
        self.hub = hub
        self.config = config
        self.url: str | None = None
        self.owner_id: str | None = None
        self.emitted: list[tuple[str, Any]] = []
        self.closed = False
        self._frames: asyncio.Queue = asyncio.Queue()

    async def open(self, url: str, owner_id: str) -> None:
        self.hub.open_calls += 1
        self.url = url
        self.owner_id = owner_id
        if self.hub.open_errors:
            raise self.hub.open_errors.pop(0)
        if self.hub.fail_forever is not None:
            raise self.hub.fail_forever

    async def emit(self, name: str, data: Any) -> None:
        self.emitted.append((name, data))

    async def frames(self):
        while True:
            frame = await self._frames.get()
            if frame is None:
                return
            yield frame

    async def close(self) -> None:
        self.closed = True
        self._frames.put_nowait(None)

    def push(self, name: str, data: Any) -> None:
        self._frames.put_nowait((name, data))

    def drop(self) -> None:
        self._frames.put_nowait(None)


class FakeTransportHub:
    """Transport factory that records every transport it creates."""

    def __init__(self) -> None:
        self.transports: list[FakeTransport] = []
        self.open_errors: list[Exception] = []
        self.fail_forever: Exception | None = None
        self.open_calls = 0

    def __call__(self, config: ChannelConfig) -> FakeTransport:
        transport = FakeTransport(self, config)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]

    def push(self, name: str, data: Any) -> None:
        self.current.push(name, data)


class FakeApi(SessionApi):
    """Scriptable REST collaborator.

    ``status`` may be a SessionStatus, an exception instance, or None for
    not-found. ``gate`` lets a test hold a fetch open until it is set.
    """

    def __init__(self) -> None:
        self.status: Any = None
        self.job: GenerationJob | None = None
        self.restart_result: Any = RestartAck(accepted=True, job_id="job-1")
        self.status_calls = 0
        self.restart_calls = 0
        self.status_gate: asyncio.Event | None = None
        self.restart_gate: asyncio.Event | None = None

    async def get_session_status(self, resource_id: int) -> SessionStatus:
        self.status_calls += 1
        if self.status_gate is not None:
            await self.status_gate.wait()
        if isinstance(self.status, Exception):
            raise self.status
        if self.status is None:
            raise ResourceNotFoundError(resource_id)
        return self.status

    async def restart(self, resource_id: int) -> RestartAck:
        self.restart_calls += 1
        if self.restart_gate is not None:
            await self.restart_gate.wait()
        if isinstance(self.restart_result, Exception):
            raise self.restart_result
        return self.restart_result

    async def get_generation_job(self, resource_id: int) -> GenerationJob | None:
        return self.job


def started(seconds_ago: float, now: datetime = NOW) -> SessionStatus:
    return SessionStatus(started_at=now - timedelta(seconds=seconds_ago), status="running")


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def config() -> SyncConfig:
    cfg = SyncConfig(
        tick_interval_seconds=3600.0,
        restart_reconcile_seconds=0,
        hostname="localhost",
    )
    for channel in cfg.channels.values():
        channel.max_attempts = 3
        channel.retry_delay_seconds = 0.01
        channel.connect_timeout_seconds = 1.0
    return cfg


@pytest.fixture
def hub() -> FakeTransportHub:
    return FakeTransportHub()


@pytest.fixture
def channels(config, hub) -> EventChannelManager:
    return EventChannelManager(config, hub)


@pytest.fixture
def api() -> FakeApi:
    return FakeApi()


@pytest.fixture
def now():
    return lambda: NOW
