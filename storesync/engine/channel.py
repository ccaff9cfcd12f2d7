"""Multiplexed, auto-reconnecting push-event channels.

One ChannelConnection exists per (endpoint, owner) pair. It is created
lazily by the first subscriber, shared by reference count, and closed
when the last subscriber leaves or the owner signs out. Nothing here
raises across the public API: failures become ConnectionInfo fields.

Dispatch is strictly sequential per connection. Frames are queued and
drained in arrival order, so a handler that causes another delivery
never runs nested inside itself.
"""
from __future__ import annotations

import abc
import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, replace
from typing import Any

from .config import ChannelConfig, SyncConfig
from .endpoints import resolve_endpoint, websocket_url
from .errors import AuthRequiredError, MalformedEventError, TransientConnectionError
from .events import EVENT_KINDS, parse_push_event
from .models import ChannelStatus, ConnectionInfo, EventKind, PushEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[PushEvent], None]
StatusListener = Callable[[ConnectionInfo], None]
Unsubscribe = Callable[[], None]


class ChannelTransport(abc.ABC):
    """Wire-level connection consumed by ChannelConnection.

    open() raises TransientConnectionError for retryable failures and
    AuthRequiredError when the server refuses the owner.
    """

    @abc.abstractmethod
    async def open(self, url: str, owner_id: str) -> None:
        """Establish the connection."""

    @abc.abstractmethod
    async def emit(self, name: str, data: Any) -> None:
        """Send a named frame to the server."""

    @abc.abstractmethod
    def frames(self) -> AsyncIterator[tuple[str, Any]]:
        """Yield (event_name, data) until the connection drops."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Close the connection. Must be idempotent."""


TransportFactory = Callable[[ChannelConfig], ChannelTransport]


def _noop() -> None:
    return None


@dataclass
class _Subscription:
    kind: EventKind
    resource_filter: int | None
    handler: EventHandler
    active: bool = True

    def matches(self, event: PushEvent) -> bool:
        if not self.active or self.kind is not event.kind:
            return False
        return self.resource_filter is None or self.resource_filter == event.resource_id


class ChannelConnection:
    """A single logical push connection for one (endpoint, owner)."""

    def __init__(
        self,
        url: str,
        owner_id: str,
        config: ChannelConfig,
        transport_factory: TransportFactory,
    ) -> None:
        self._url = url
        self._config = config
        self._transport_factory = transport_factory
        self._info = ConnectionInfo(endpoint_id=url, owner_id=owner_id)
        self._subscriptions: list[_Subscription] = []
        self._status_listeners: list[StatusListener] = []
        self._pending: deque[tuple[str, Any]] = deque()
        self._dispatching = False
        self._transport: ChannelTransport | None = None
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def info(self) -> ConnectionInfo:
        return replace(self._info)

    @property
    def is_connected(self) -> bool:
        return self._info.status is ChannelStatus.CONNECTED

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    @property
    def closed(self) -> bool:
        return self._closed

    def add_subscription(self, subscription: _Subscription) -> None:
        self._subscriptions.append(subscription)

    def remove_subscription(self, subscription: _Subscription) -> int:
        subscription.active = False
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        return len(self._subscriptions)

    def add_status_listener(self, listener: StatusListener) -> Unsubscribe:
        self._status_listeners.append(listener)

        def remove() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return remove

    # ── Lifecycle ─────────────────────────────────────────────

    def start(self) -> bool:
        """Start the connect loop unless it is already running."""
        if self._closed:
            return False
        if self._task is not None and not self._task.done():
            return False
        self._info.gave_up = False
        self._info.attempt_count = 0
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"channel:{self._url}:{self._info.owner_id}",
        )
        return True

    def close_nowait(self) -> None:
        """Mark closed and cancel the connect loop without awaiting it."""
        if self._closed:
            return
        self._closed = True
        self._pending.clear()
        for subscription in self._subscriptions:
            subscription.active = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._set_status(ChannelStatus.DISCONNECTED)

    async def close(self) -> None:
        """Close and wait until the transport is released."""
        self.close_nowait()
        task = self._task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_transport()

    async def _run(self) -> None:
        config = self._config
        owner_id = self._info.owner_id
        failures = 0
        self._set_status(ChannelStatus.CONNECTING)
        try:
            while not self._closed:
                transport = self._transport_factory(config)
                self._transport = transport
                try:
                    await asyncio.wait_for(
                        transport.open(self._url, owner_id),
                        timeout=config.connect_timeout_seconds,
                    )
                except AuthRequiredError as exc:
                    logger.warning(
                        "Channel %s refused owner %s: %s", self._url, owner_id, exc,
                    )
                    await self._close_transport()
                    self._info.last_error = str(exc)
                    self._info.gave_up = True
                    self._set_status(ChannelStatus.FAILED)
                    return
                except (TransientConnectionError, asyncio.TimeoutError, OSError) as exc:
                    await self._close_transport()
                    failures += 1
                    self._info.attempt_count = failures
                    self._info.last_error = str(exc) or type(exc).__name__
                    if failures >= config.max_attempts:
                        logger.warning(
                            "Channel %s gave up after %d attempts: %s",
                            self._url, failures, self._info.last_error,
                        )
                        self._info.gave_up = True
                        self._set_status(ChannelStatus.DISCONNECTED)
                        return
                    logger.info(
                        "Channel %s connect attempt %d/%d failed: %s",
                        self._url, failures, config.max_attempts,
                        self._info.last_error,
                    )
                    self._set_status(ChannelStatus.RECONNECTING)
                    await asyncio.sleep(config.retry_delay_seconds)
                    continue

                failures = 0
                self._info.attempt_count = 0
                self._info.last_error = None
                self._set_status(ChannelStatus.CONNECTED)
                logger.info("Channel %s connected for owner %s", self._url, owner_id)

                reason = "server closed the connection"
                try:
                    # Rooms do not survive a reconnect; join on every connect.
                    await transport.emit("join", f"user-{owner_id}")
                    async for name, data in transport.frames():
                        self.deliver(name, data)
                except TransientConnectionError as exc:
                    reason = str(exc)
                await self._close_transport()
                if self._closed:
                    return
                logger.info("Channel %s disconnected: %s", self._url, reason)
                self._info.last_error = reason
                self._set_status(ChannelStatus.RECONNECTING)
                await asyncio.sleep(config.retry_delay_seconds)
        except asyncio.CancelledError:
            await self._close_transport()
            raise
        except Exception as exc:
            logger.exception("Channel %s loop crashed", self._url)
            await self._close_transport()
            self._info.last_error = str(exc)
            self._info.gave_up = True
            self._set_status(ChannelStatus.DISCONNECTED)

    async def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            await transport.close()
        except Exception:
            logger.debug("Transport close failed for %s", self._url, exc_info=True)

    # ── Dispatch ──────────────────────────────────────────────

    def deliver(self, name: str, data: Any) -> None:
        """Queue a raw frame and drain the queue in arrival order."""
        if self._closed:
            return
        self._pending.append((name, data))
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._pending and not self._closed:
                frame_name, frame_data = self._pending.popleft()
                self._dispatch(frame_name, frame_data)
        finally:
            self._dispatching = False

    def _dispatch(self, name: str, data: Any) -> None:
        try:
            event = parse_push_event(name, data)
        except MalformedEventError as exc:
            if name in EVENT_KINDS:
                logger.warning("Dropping event on %s: %s", self._url, exc)
            else:
                logger.debug("Ignoring unrecognized frame '%s' on %s", name, self._url)
            return
        for subscription in list(self._subscriptions):
            if not subscription.matches(event):
                continue
            try:
                subscription.handler(event)
            except Exception:
                logger.exception(
                    "Handler for %s on resource %s failed",
                    event.kind.value, event.resource_id,
                )

    def _set_status(self, status: ChannelStatus) -> None:
        if self._info.status is status:
            return
        self._info.status = status
        snapshot = self.info
        for listener in list(self._status_listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Status listener failed for %s", self._url)


class EventChannelManager:
    """Owns reference-counted ChannelConnections keyed by (endpoint, owner).

    Constructed explicitly and passed to consumers; there is no
    module-level connection.
    """

    def __init__(
        self,
        config: SyncConfig,
        transport_factory: TransportFactory,
    ) -> None:
        self._config = config
        self._transport_factory = transport_factory
        self._connections: dict[tuple[str, str], ChannelConnection] = {}

    def endpoint_url(self, channel: str) -> str:
        """Resolve the websocket URL of a named channel."""
        channel_config = self._config.channel(channel)
        base = resolve_endpoint(
            channel_config.url_override,
            self._config.hostname,
            self._config.protocol,
            channel_config.local_port,
        )
        return websocket_url(base, channel_config.path)

    def subscribe(
        self,
        channel: str,
        owner_id: str | None,
        kind: EventKind,
        resource_filter: int | None,
        handler: EventHandler,
    ) -> Unsubscribe:
        """Register a handler and return its unsubscribe function.

        Without an owner nothing is opened and a no-op is returned.
        """
        if not owner_id:
            logger.debug("subscribe(%s, %s): no owner, staying inert", channel, kind.value)
            return _noop
        connection, created = self._acquire(channel, owner_id)
        subscription = _Subscription(kind, resource_filter, handler)
        connection.add_subscription(subscription)
        if created:
            connection.start()

        released = False

        def unsubscribe() -> None:
            nonlocal released
            if released:
                return
            released = True
            self._release(connection, subscription)

        return unsubscribe

    def watch_status(
        self,
        channel: str,
        owner_id: str | None,
        listener: StatusListener,
    ) -> Unsubscribe:
        """Observe status changes of an existing connection."""
        connection = self.get_connection(channel, owner_id)
        if connection is None:
            return _noop
        return connection.add_status_listener(listener)

    def get_connection(
        self, channel: str, owner_id: str | None,
    ) -> ChannelConnection | None:
        if not owner_id:
            return None
        return self._connections.get((self.endpoint_url(channel), owner_id))

    def connection_info(
        self, channel: str, owner_id: str | None,
    ) -> ConnectionInfo | None:
        connection = self.get_connection(channel, owner_id)
        return connection.info if connection is not None else None

    def reconnect(self, channel: str, owner_id: str | None) -> bool:
        """Re-arm a connection that gave up. Returns True if restarted."""
        connection = self.get_connection(channel, owner_id)
        if connection is None:
            return False
        restarted = connection.start()
        if restarted:
            logger.info("Manual reconnect of %s for owner %s", channel, owner_id)
        return restarted

    def sign_out(self, owner_id: str) -> None:
        """Close every connection of an owner that is no longer authenticated."""
        for key in [k for k in self._connections if k[1] == owner_id]:
            connection = self._connections.pop(key)
            logger.info("Closing channel %s: owner %s signed out", key[0], owner_id)
            connection.close_nowait()

    async def aclose(self) -> None:
        """Close all connections and wait for their transports."""
        connections = list(self._connections.values())
        self._connections.clear()
        for connection in connections:
            await connection.close()

    @property
    def open_connections(self) -> int:
        return len(self._connections)

    def _acquire(self, channel: str, owner_id: str) -> tuple[ChannelConnection, bool]:
        url = self.endpoint_url(channel)
        key = (url, owner_id)
        connection = self._connections.get(key)
        if connection is not None:
            return connection, False
        connection = ChannelConnection(
            url, owner_id, self._config.channel(channel), self._transport_factory,
        )
        self._connections[key] = connection
        logger.debug("Created channel connection %s for owner %s", url, owner_id)
        return connection, True

    def _release(self, connection: ChannelConnection, subscription: _Subscription) -> None:
        remaining = connection.remove_subscription(subscription)
        if remaining > 0:
            return
        key = (connection.info.endpoint_id, connection.info.owner_id)
        if self._connections.get(key) is connection:
            del self._connections[key]
        logger.debug("Last subscriber left %s; closing", key[0])
        connection.close_nowait()
