"""UI-facing session handles and their owning context.

A SessionContext belongs to one signed-in owner and keeps exactly one
SessionHandle per resource. Handles are long-lived: open once, read
snapshots, call restart(), and dispose() when the view goes away.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from .api import SessionApi
from .channel import EventChannelManager, Unsubscribe
from .config import JOBS_CHANNEL, ExpiryCallback, SnapshotCallback, SyncConfig
from .models import FetchResult, RestartResult, SessionSnapshot
from .restart import RestartCoordinator
from .store import SessionStateStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionHandle:
    """Snapshot, restart and dispose for one resource."""

    def __init__(
        self,
        store: SessionStateStore,
        coordinator: RestartCoordinator,
        channels: EventChannelManager,
        channel: str = JOBS_CHANNEL,
        on_dispose: Callable[[SessionHandle], None] | None = None,
    ) -> None:
        self._store = store
        self._coordinator = coordinator
        self._channels = channels
        self._channel = channel
        self._on_dispose = on_dispose
        self._disposed = False

    @property
    def resource_id(self) -> int:
        return self._store.resource_id

    @property
    def store(self) -> SessionStateStore:
        return self._store

    @property
    def disposed(self) -> bool:
        return self._disposed

    def snapshot(self) -> SessionSnapshot:
        return self._store.snapshot()

    def on_change(self, listener: SnapshotCallback) -> Unsubscribe:
        return self._store.on_change(listener)

    def on_expire(self, listener: ExpiryCallback) -> Unsubscribe:
        return self._store.on_expire(listener)

    async def refresh(self) -> FetchResult:
        return await self._store.load()

    async def restart(self) -> RestartResult:
        return await self._coordinator.restart(self.resource_id)

    def reconnect(self) -> bool:
        """Re-arm the push channel after it gave up."""
        return self._channels.reconnect(self._channel, self._store.owner_id)

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._coordinator.dispose()
        self._store.dispose()
        if self._on_dispose is not None:
            self._on_dispose(self)

    async def __aenter__(self) -> SessionHandle:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.dispose()


class SessionContext:
    """All session handles of one owner."""

    def __init__(
        self,
        owner_id: str | None,
        *,
        config: SyncConfig,
        api: SessionApi,
        channels: EventChannelManager,
        channel: str = JOBS_CHANNEL,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._owner_id = owner_id
        self._config = config
        self._api = api
        self._channels = channels
        self._channel = channel
        self._now = now
        self._handles: dict[int, SessionHandle] = {}

    @property
    def owner_id(self) -> str | None:
        return self._owner_id

    @property
    def authenticated(self) -> bool:
        return bool(self._owner_id)

    def get(self, resource_id: int) -> SessionHandle | None:
        return self._handles.get(resource_id)

    def __len__(self) -> int:
        return len(self._handles)

    async def open(
        self,
        resource_id: int,
        *,
        on_expire: ExpiryCallback | None = None,
        load: bool = True,
    ) -> SessionHandle:
        """Return the resource's handle, creating and loading it on first use."""
        handle = self._handles.get(resource_id)
        if handle is not None:
            if on_expire is not None:
                handle.on_expire(on_expire)
            return handle

        store = SessionStateStore(
            resource_id,
            self._owner_id,
            config=self._config,
            api=self._api,
            channels=self._channels,
            channel=self._channel,
            on_expire=on_expire,
            now=self._now,
        )
        coordinator = RestartCoordinator(store, self._api, config=self._config)
        handle = SessionHandle(
            store, coordinator, self._channels, self._channel, on_dispose=self._forget,
        )
        self._handles[resource_id] = handle
        logger.debug("Opened session for resource %s (owner %s)", resource_id, self._owner_id)
        if load:
            await store.load()
        return handle

    async def restart(self, resource_id: int) -> RestartResult:
        handle = self._handles.get(resource_id)
        if handle is None:
            handle = await self.open(resource_id)
        return await handle.restart()

    def sign_out(self) -> None:
        """Tear down every session and close the owner's connections."""
        owner_id = self._owner_id
        self.dispose()
        if owner_id:
            self._channels.sign_out(owner_id)
        self._owner_id = None
        logger.info("Owner %s signed out", owner_id)

    def dispose(self) -> None:
        for handle in list(self._handles.values()):
            handle.dispose()
        self._handles.clear()

    def _forget(self, handle: SessionHandle) -> None:
        if self._handles.get(handle.resource_id) is handle:
            del self._handles[handle.resource_id]
