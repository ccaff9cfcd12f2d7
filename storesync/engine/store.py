"""Authoritative per-resource session state.

SessionStateStore merges three sources that race on one event loop:

1. the status fetch performed by load(), giving started_at;
2. SessionClock ticks, counting remaining_seconds down;
3. push events, which can short-circuit the countdown.

Precedence: an app-timeout expires the session immediately, an
app-restarted resets it to a full window from any state, and the
local clock reaching zero expires it when the channel stays silent.
A fetch that resolves after an event-driven transition is discarded.

Every mutation goes through _mutate(), which drops work after
dispose() and queues re-entrant mutations instead of nesting them.
"""
from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from datetime import datetime, timezone

from .api import SessionApi
from .channel import EventChannelManager, Unsubscribe
from .clock import SessionClock
from .config import JOBS_CHANNEL, ExpiryCallback, SnapshotCallback, SyncConfig
from .errors import AuthRequiredError, ResourceNotFoundError, SessionSyncError
from .events import preview_from_payload
from .lifecycle import COUNTING_STATES, RESTARTABLE_STATES, can_transition, validate_transition
from .models import (
    ChannelStatus,
    ConnectionInfo,
    EventKind,
    FetchResult,
    PushEvent,
    ResourceSession,
    RestartRequest,
    SessionSnapshot,
    SessionState,
    SessionStatus,
)

logger = logging.getLogger(__name__)

LOAD_ERROR_MESSAGE = "Failed to load timer"
SIGN_IN_MESSAGE = "Sign in required"

_SUBSCRIBED_KINDS = (
    EventKind.APP_TIMEOUT,
    EventKind.APP_RESTARTED,
    EventKind.APP_RELOADED,
    EventKind.JOB_COMPLETED,
)

_TIMEOUT_SOURCES = frozenset({
    SessionState.LOADING,
    SessionState.ACTIVE,
    SessionState.WARNING,
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStateStore:
    """Single source of truth for one resource's runtime session.

    Must be constructed inside a running event loop: construction
    subscribes to the owner's push channel. Call dispose() to release.
    """

    def __init__(
        self,
        resource_id: int,
        owner_id: str | None,
        *,
        config: SyncConfig,
        api: SessionApi,
        channels: EventChannelManager,
        channel: str = JOBS_CHANNEL,
        on_expire: ExpiryCallback | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config
        self._api = api
        self._channels = channels
        self._channel = channel
        self._now = now
        self._session = ResourceSession(resource_id=resource_id, owner_id=owner_id)
        self._clock = SessionClock(
            self._on_clock_tick,
            self._on_clock_expire,
            interval=config.tick_interval_seconds,
        )
        self._connected = False
        self._disposed = False
        self._epoch = 0
        self._last_applied: tuple[int, str, SessionState] | None = None
        self._last_restart_ts: datetime | None = None
        self._pending_restart: RestartRequest | None = None
        self._queue: deque[Callable[[], None]] = deque()
        self._mutating = False
        self._expiry_due = False
        self._last_snapshot: SessionSnapshot | None = None
        self._listeners: list[SnapshotCallback] = []
        self._expiry_listeners: list[ExpiryCallback] = []
        self._unsubscribers: list[Unsubscribe] = []
        if on_expire is not None:
            self._expiry_listeners.append(on_expire)

        self._handlers: dict[EventKind, Callable[[PushEvent], None]] = {
            EventKind.APP_TIMEOUT: self._apply_timeout,
            EventKind.APP_RESTARTED: self._apply_restarted,
            EventKind.APP_RELOADED: self._apply_reloaded,
            EventKind.JOB_COMPLETED: self._apply_job_completed,
        }

        if owner_id:
            self._attach()
        else:
            self._session.requires_sign_in = True
            logger.debug("Store for resource %s is inert: no owner", resource_id)
        self._last_snapshot = self.snapshot()

    # ── Public surface ────────────────────────────────────────

    @property
    def resource_id(self) -> int:
        return self._session.resource_id

    @property
    def owner_id(self) -> str | None:
        return self._session.owner_id

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def inert(self) -> bool:
        return self._disposed or self._session.requires_sign_in

    @property
    def started_at(self) -> datetime | None:
        return self._session.started_at

    @property
    def last_reloaded_at(self) -> datetime | None:
        return self._session.last_reloaded_at

    @property
    def pending_restart(self) -> RestartRequest | None:
        return self._pending_restart

    def snapshot(self) -> SessionSnapshot:
        session = self._session
        return SessionSnapshot(
            resource_id=session.resource_id,
            is_connected=self._connected,
            state=session.state,
            remaining_seconds=session.remaining_seconds,
            last_error=session.last_error,
            requires_sign_in=session.requires_sign_in,
            generation_in_progress=session.generation_in_progress,
            preview=session.preview,
        )

    def on_change(self, listener: SnapshotCallback) -> Unsubscribe:
        """Call *listener* with every new snapshot."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def on_expire(self, listener: ExpiryCallback) -> Unsubscribe:
        """Call *listener* once per expiry observed while mounted."""
        self._expiry_listeners.append(listener)

        def remove() -> None:
            if listener in self._expiry_listeners:
                self._expiry_listeners.remove(listener)

        return remove

    async def load(self) -> FetchResult:
        """Fetch the session status and derive state from it.

        While a restart is unconfirmed this acts as the reconciling
        fetch instead.
        """
        if self.inert:
            error = SIGN_IN_MESSAGE if self._session.requires_sign_in else "disposed"
            return FetchResult(ok=False, state=self.state, error=error, applied=False)
        if self.state is SessionState.RESTARTING:
            return await self.reconcile()

        epoch = self._begin_load()
        resource_id = self.resource_id

        try:
            job = await self._api.get_generation_job(resource_id)
        except SessionSyncError as exc:
            logger.debug("Generation probe for %s failed: %s", resource_id, exc)
            job = None
        if self._superseded(epoch):
            return FetchResult(ok=True, state=self.state, applied=False)
        if job is not None and job.in_progress:
            logger.info("Resource %s is still generating; countdown hidden", resource_id)
            self._mutate(self._mark_generating)
            return FetchResult(ok=True, state=self.state)

        try:
            status = await self._api.get_session_status(resource_id)
        except ResourceNotFoundError:
            if self._superseded(epoch):
                return FetchResult(ok=True, state=self.state, applied=False)
            logger.info("Resource %s has no session yet", resource_id)
            self._mutate(self._mark_not_started)
            return FetchResult(ok=True, state=self.state)
        except AuthRequiredError as exc:
            logger.info("Status fetch for %s needs sign-in: %s", resource_id, exc)
            self.sign_out()
            return FetchResult(ok=False, state=self.state, error=SIGN_IN_MESSAGE)
        except SessionSyncError as exc:
            if self._superseded(epoch):
                return FetchResult(ok=False, state=self.state, error=str(exc), applied=False)
            logger.warning("Status fetch for %s failed: %s", resource_id, exc)
            self._mutate(lambda: self._fail(LOAD_ERROR_MESSAGE))
            return FetchResult(ok=False, state=self.state, error=LOAD_ERROR_MESSAGE)

        if self._superseded(epoch):
            logger.debug("Discarding stale status fetch for %s", resource_id)
            return FetchResult(ok=True, state=self.state, applied=False)
        self._mutate(lambda: self._apply_status(status, source="fetch"))
        return FetchResult(ok=True, state=self.state)

    refresh = load

    async def reconcile(self) -> FetchResult:
        """Resolve an unconfirmed restart from the status endpoint.

        Moves to ACTIVE only if the server reports a start at or after
        the restart was issued.
        """
        request = self._pending_restart
        if self.inert or self.state is not SessionState.RESTARTING or request is None:
            return FetchResult(ok=True, state=self.state, applied=False)
        try:
            status = await self._api.get_session_status(self.resource_id)
        except ResourceNotFoundError:
            return FetchResult(ok=True, state=self.state, applied=False)
        except AuthRequiredError:
            self.sign_out()
            return FetchResult(ok=False, state=self.state, error=SIGN_IN_MESSAGE)
        except SessionSyncError as exc:
            logger.info("Reconciling fetch for %s failed: %s", self.resource_id, exc)
            return FetchResult(ok=False, state=self.state, error=str(exc), applied=False)

        if self._disposed or self._pending_restart is not request:
            return FetchResult(ok=True, state=self.state, applied=False)
        if status.started_at is None or status.started_at < request.issued_at:
            logger.debug("Restart of %s not visible yet", self.resource_id)
            return FetchResult(ok=True, state=self.state, applied=False)
        logger.info("Restart of %s confirmed by status fetch", self.resource_id)
        self._mutate(lambda: self._apply_status(status, source="reconcile"))
        return FetchResult(ok=True, state=self.state)

    def begin_restart(self, request: RestartRequest) -> bool:
        """Enter RESTARTING for *request*. False if not restartable now."""
        if self.inert or self.state not in RESTARTABLE_STATES:
            return False

        def apply() -> None:
            if self.state not in RESTARTABLE_STATES:
                return
            self._clock.stop()
            self._transition(SessionState.RESTARTING)
            self._pending_restart = request
            self._session.last_error = None
            self._last_applied = (self.resource_id, "restart", SessionState.RESTARTING)
            self._epoch += 1

        self._mutate(apply)
        return self._pending_restart is request

    def fail_restart(self, request: RestartRequest, message: str) -> bool:
        """Mark *request* as failed unless an event already resolved it."""
        if self._disposed or self._pending_restart is not request:
            return False

        def apply() -> None:
            if self._pending_restart is not request:
                return
            self._pending_restart = None
            self._fail(message)

        self._mutate(apply)
        return self.state is SessionState.ERROR

    def sign_out(self) -> None:
        """Drop to the quiescent sign-in-required state and detach."""
        if self._disposed:
            return

        def apply() -> None:
            self._clock.stop()
            self._detach()
            self._pending_restart = None
            self._session.requires_sign_in = True
            self._session.remaining_seconds = None
            self._session.last_error = None
            self._session.preview = None
            self._connected = False
            self._epoch += 1
            if self.state is not SessionState.IDLE:
                self._transition(SessionState.IDLE)

        self._mutate(apply)

    def dispose(self) -> None:
        """Release the clock and subscriptions. Later events are ignored."""
        if self._disposed:
            return
        self._disposed = True
        self._clock.stop()
        self._detach()
        self._queue.clear()
        self._listeners.clear()
        self._expiry_listeners.clear()
        self._pending_restart = None
        logger.debug("Disposed store for resource %s", self.resource_id)

    # ── Channel wiring ────────────────────────────────────────

    def _attach(self) -> None:
        owner_id = self.owner_id
        for kind in _SUBSCRIBED_KINDS:
            self._unsubscribers.append(self._channels.subscribe(
                self._channel, owner_id, kind, self.resource_id, self._on_event,
            ))
        self._unsubscribers.append(self._channels.watch_status(
            self._channel, owner_id, self._on_status,
        ))
        info = self._channels.connection_info(self._channel, owner_id)
        self._connected = info is not None and info.status is ChannelStatus.CONNECTED

    def _detach(self) -> None:
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            unsubscribe()

    def _on_status(self, info: ConnectionInfo) -> None:
        connected = info.status is ChannelStatus.CONNECTED

        def apply() -> None:
            self._connected = connected

        self._mutate(apply)

    def _on_event(self, event: PushEvent) -> None:
        if self._disposed:
            return
        if event.resource_id != self.resource_id:
            logger.debug(
                "Store %s ignoring %s for resource %s",
                self.resource_id, event.kind.value, event.resource_id,
            )
            return
        handler = self._handlers.get(event.kind)
        if handler is None:
            return
        self._mutate(lambda: handler(event))

    # ── Event application ─────────────────────────────────────

    def _apply_timeout(self, event: PushEvent) -> None:
        # Already expired (by the clock or an earlier copy of this
        # event): nothing to apply and nothing to notify.
        if self.state not in _TIMEOUT_SOURCES:
            logger.debug(
                "app-timeout for %s ignored in state %s", self.resource_id, self.state.value,
            )
            return
        # A timeout stamped before the current cycle's restart belongs to
        # an earlier cycle, typically replayed after a reconnect.
        if self._last_restart_ts is not None and event.server_timestamp < self._last_restart_ts:
            logger.debug("Stale app-timeout for %s ignored", self.resource_id)
            return
        key = (self.resource_id, event.kind.value, SessionState.EXPIRED)
        logger.info("Resource %s timed out on the server", self.resource_id)
        self._clock.stop()
        self._session.remaining_seconds = 0
        self._session.preview = None
        self._session.last_synced_at = self._now()
        self._transition(SessionState.EXPIRED)
        self._last_applied = key
        self._epoch += 1
        self._expiry_due = True

    def _apply_restarted(self, event: PushEvent) -> None:
        key = (self.resource_id, event.kind.value, SessionState.ACTIVE)
        if self._last_restart_ts is not None and event.server_timestamp <= self._last_restart_ts:
            logger.debug("Replayed app-restarted for %s ignored", self.resource_id)
            return
        window = self._config.session_window_seconds
        logger.info("Resource %s restarted; countdown reset to %ss", self.resource_id, window)
        now = self._now()
        self._pending_restart = None
        self._session.started_at = now
        self._session.last_synced_at = now
        self._session.remaining_seconds = window
        self._session.last_error = None
        self._session.generation_in_progress = False
        preview = preview_from_payload(event.payload)
        if preview is not None:
            self._session.preview = preview
        self._transition(SessionState.ACTIVE)
        self._last_applied = key
        self._last_restart_ts = event.server_timestamp
        self._epoch += 1
        self._clock.start(window)

    def _apply_reloaded(self, event: PushEvent) -> None:
        logger.debug("Resource %s reloaded", self.resource_id)
        self._session.last_reloaded_at = event.server_timestamp

    def _apply_job_completed(self, event: PushEvent) -> None:
        preview = preview_from_payload(event.payload)
        if preview is not None:
            self._session.preview = preview

    def _apply_status(self, status: SessionStatus, *, source: str) -> None:
        session = self._session
        now = self._now()
        remaining: int | None = None
        if status.started_at is not None:
            elapsed = int((now - status.started_at).total_seconds())
            remaining = max(0, self._config.session_window_seconds - max(0, elapsed))
        if self.state is SessionState.RESTARTING and not remaining:
            # Only a live session can confirm a restart.
            return

        session.last_synced_at = now
        session.generation_in_progress = False
        self._pending_restart = None
        if status.preview is not None:
            session.preview = status.preview
        if remaining is None:
            self._clock.stop()
            session.started_at = None
            session.remaining_seconds = None
            self._transition(SessionState.NOT_STARTED)
            self._last_applied = (self.resource_id, source, SessionState.NOT_STARTED)
            return

        session.started_at = status.started_at
        session.remaining_seconds = remaining
        session.last_error = None
        if remaining == 0:
            # Discovered on load: no expiry notification.
            self._clock.stop()
            self._transition(SessionState.EXPIRED)
            self._last_applied = (self.resource_id, source, SessionState.EXPIRED)
            return
        target = self._counting_state(remaining)
        self._transition(target)
        self._last_applied = (self.resource_id, source, target)
        self._clock.start(remaining)

    # ── Clock callbacks ───────────────────────────────────────

    def _on_clock_tick(self, remaining: int) -> None:
        def apply() -> None:
            if self.state not in COUNTING_STATES:
                return
            current = self._session.remaining_seconds
            if current is not None and remaining > current:
                return
            self._session.remaining_seconds = remaining
            if remaining > 0:
                target = self._counting_state(remaining)
                if target is not self.state:
                    self._transition(target)

        self._mutate(apply)

    def _on_clock_expire(self) -> None:
        def apply() -> None:
            if self.state not in COUNTING_STATES:
                return
            logger.info("Resource %s session expired locally", self.resource_id)
            self._session.remaining_seconds = 0
            self._transition(SessionState.EXPIRED)
            self._last_applied = (self.resource_id, "clock", SessionState.EXPIRED)
            self._epoch += 1
            self._expiry_due = True

        self._mutate(apply)

    # ── Internals ─────────────────────────────────────────────

    def _counting_state(self, remaining: int) -> SessionState:
        if remaining < self._config.warning_threshold_seconds:
            return SessionState.WARNING
        return SessionState.ACTIVE

    def _begin_load(self) -> int:
        def apply() -> None:
            self._clock.stop()
            self._session.last_error = None
            self._transition(SessionState.LOADING)
            self._epoch += 1

        self._mutate(apply)
        return self._epoch

    def _superseded(self, epoch: int) -> bool:
        return self._disposed or self._epoch != epoch or self.state is not SessionState.LOADING

    def _mark_generating(self) -> None:
        self._session.generation_in_progress = True
        self._session.remaining_seconds = None
        self._transition(SessionState.NOT_STARTED)

    def _mark_not_started(self) -> None:
        self._session.remaining_seconds = None
        self._session.started_at = None
        self._transition(SessionState.NOT_STARTED)
        self._last_applied = (self.resource_id, "fetch", SessionState.NOT_STARTED)

    def _fail(self, message: str) -> None:
        self._clock.stop()
        self._session.last_error = message
        self._transition(SessionState.ERROR)
        self._last_applied = (self.resource_id, "error", SessionState.ERROR)

    def _transition(self, target: SessionState) -> None:
        current = self._session.state
        if current is target and not can_transition(current, target):
            return
        validate_transition(current, target)
        self._session.state = target
        if current is not target:
            logger.debug(
                "Resource %s: %s -> %s", self.resource_id, current.value, target.value,
            )

    def _mutate(self, fn: Callable[[], None]) -> None:
        if self._disposed:
            return
        self._queue.append(fn)
        if self._mutating:
            return
        self._mutating = True
        try:
            while self._queue and not self._disposed:
                self._queue.popleft()()
                self._publish()
        finally:
            self._mutating = False

    def _publish(self) -> None:
        snapshot = self.snapshot()
        if snapshot != self._last_snapshot:
            self._last_snapshot = snapshot
            for listener in list(self._listeners):
                try:
                    listener(snapshot)
                except Exception:
                    logger.exception("Snapshot listener failed for %s", self.resource_id)
        if self._expiry_due:
            self._expiry_due = False
            for listener in list(self._expiry_listeners):
                try:
                    listener(self.resource_id)
                except Exception:
                    logger.exception("Expiry listener failed for %s", self.resource_id)

