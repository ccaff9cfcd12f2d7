"""SessionStateStore: fetch, countdown and push events racing on one loop."""

from __future__ import annotations

import asyncio

import pytest

from conftest import started, wait_until
from storesync.engine.config import JOBS_CHANNEL
from storesync.engine.errors import AuthRequiredError, TransientConnectionError
from storesync.engine.events import parse_push_event
from storesync.engine.models import GenerationJob, SessionState, SessionStatus
from storesync.engine.store import LOAD_ERROR_MESSAGE, SIGN_IN_MESSAGE, SessionStateStore


def _store(config, api, channels, now, *, resource_id=42, owner_id="7", on_expire=None):
    return SessionStateStore(
        resource_id, owner_id,
        config=config, api=api, channels=channels, now=now, on_expire=on_expire,
    )


def _deliver(channels, name, data, owner_id="7"):
    channels.get_connection(JOBS_CHANNEL, owner_id).deliver(name, data)


# ── Load ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_fetch_computes_remaining_from_started_at(config, api, channels, now):
    api.status = started(60)
    store = _store(config, api, channels, now)
    result = await store.load()

    snapshot = store.snapshot()
    assert result.ok and result.applied
    assert snapshot.state is SessionState.ACTIVE
    assert snapshot.remaining_seconds == 840
    assert snapshot.last_error is None
    store.dispose()
    await channels.aclose()


@pytest.mark.asyncio
async def test_fetch_below_threshold_is_warning(config, api, channels, now):
    api.status = started(700)
    store = _store(config, api, channels, now)
    await store.load()
    assert store.state is SessionState.WARNING
    assert store.snapshot().remaining_seconds == 200
    store.dispose()
    await channels.aclose()


@pytest.mark.asyncio
async def test_expired_on_load_does_not_notify(config, api, channels, now):
    expiries = []
    api.status = started(1000)
    store = _store(config, api, channels, now, on_expire=expiries.append)
    await store.load()
    assert store.state is SessionState.EXPIRED
    assert store.snapshot().remaining_seconds == 0
    assert expiries == []
    store.dispose()
    await channels.aclose()


@pytest.mark.asyncio
async def test_not_found_is_not_started_without_error(config, api, channels, now):
    api.status = None
    store = _store(config, api, channels, now, resource_id=7)
    result = await store.load()

    snapshot = store.snapshot()
    assert result.ok
    assert snapshot.state is SessionState.NOT_STARTED
    assert snapshot.remaining_seconds is None
    assert snapshot.last_error is None
    store.dispose()
    await channels.aclose()


@pytest.mark.asyncio
async def test_missing_started_at_is_not_started(config, api, channels, now):
    api.status = SessionStatus(started_at=None, status="stopped")
    store = _store(config, api, channels, now)
    await store.load()
    assert store.state is SessionState.NOT_STARTED
    store.dispose()
    await channels.aclose()


@pytest.mark.asyncio
async def test_fetch_failure_is_error_and_retryable(config, api, channels, now):
    api.status = TransientConnectionError("expo-status", "boom")
    store = _store(config, api, channels, now)
    result = await store.load()
    assert not result.ok
    assert result.error == LOAD_ERROR_MESSAGE
    assert store.state is SessionState.ERROR
    assert store.snapshot().last_error == LOAD_ERROR_MESSAGE

    api.status = started(60)
    await store.refresh()
    assert store.state is SessionState.ACTIVE
    assert store.snapshot().last_error is None
    store.dispose()
    await channels.aclose()


@pytest.mark.asyncio
async def test_auth_failure_signs_out(config, api, channels, now):
    api.status = AuthRequiredError("expo-status", 401)
    store = _store(config, api, channels, now)
    result = await store.load()
    snapshot = store.snapshot()
    assert result.error == SIGN_IN_MESSAGE
    assert snapshot.requires_sign_in
    assert snapshot.state is SessionState.IDLE
    assert store.inert
    assert channels.open_connections == 0
    await channels.aclose()


@pytest.mark.asyncio
async def test_generation_in_progress_hides_countdown(config, api, channels, now):
    api.job = GenerationJob(job_id=3, status="in_progress", progress=40)
    api.status = started(60)
    store = _store(config, api, channels, now)
    await store.load()

    snapshot = store.snapshot()
    assert snapshot.state is SessionState.NOT_STARTED
    assert snapshot.generation_in_progress
    assert snapshot.remaining_seconds is None
    assert api.status_calls == 0

    api.job = GenerationJob(job_id=3, status="completed", progress=100)
    await store.load()
    assert store.state is SessionState.ACTIVE
    assert not store.snapshot().generation_in_progress
    store.dispose()
    await channels.aclose()


# ── Countdown ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_local_countdown_expires_exactly_once(config, api, channels, now):
    expiries = []
    api.status = started(898)
    store = _store(config, api, channels, now, on_expire=expiries.append)
    await store.load()
    assert store.snapshot().remaining_seconds == 2

    seen = []
    for _ in range(4):
        store._clock.tick()
        seen.append(store.snapshot().remaining_seconds)
    assert seen == [1, 0, 0, 0]
    assert store.state is SessionState.EXPIRED
    assert expiries == [42]

    # A late server timeout for the same expiry is not a second one.
    _deliver(channels, "app-timeout", {"resourceId": 42})
    assert expiries == [42]
    store.dispose()
    await channels.aclose()


@pytest.mark.asyncio
async def test_ticks_flip_active_to_warning(config, api, channels, now):
    api.status = started(900 - 301)
    store = _store(config, api, channels, now)
    await store.load()
    assert store.state is SessionState.ACTIVE
    store._clock.tick()
    assert store.snapshot().remaining_seconds == 300
    assert store.state is SessionState.ACTIVE
    store._clock.tick()
    assert store.state is SessionState.WARNING
    store.dispose()
    await channels.aclose()


# ── Push events ───────────────────────────────────────────────


@pytest.mark.asyncio
async def test_timeout_event_overrides_positive_countdown(config, api, channels, now):
    expiries = []
    api.status = started(60)
    store = _store(config, api, channels, now, on_expire=expiries.append)
    await store.load()

    _deliver(channels, "app-timeout", {"resourceId": 42})
    _deliver(channels, "app-timeout", {"resourceId": 42})
    snapshot = store.snapshot()
    assert snapshot.state is SessionState.EXPIRED
    assert snapshot.remaining_seconds == 0
    assert expiries == [42]
    assert not store._clock.running
    store.dispose()
    await channels.aclose()


@pytest.mark.asyncio
async def test_restarted_event_resets_expired_session(config, api, channels, now):
    api.status = started(1000)
    store = _store(config, api, channels, now)
    await store.load()
    assert store.state is SessionState.EXPIRED

    _deliver(channels, "app-restarted", {"resourceId": 42, "timestamp": "2026-03-01T12:00:00Z"})
    snapshot = store.snapshot()
    assert snapshot.state is SessionState.ACTIVE
    assert snapshot.remaining_seconds == 900
    assert store.started_at is not None
    store.dispose()
    await channels.aclose()


@pytest.mark.asyncio
async def test_replayed_restart_does_not_reset_countdown(config, api, channels, now):
    store = _store(config, api, channels, now)
    frame = {"resourceId": 42, "timestamp": "2026-03-01T12:00:00Z"}
    _deliver(channels, "app-restarted", frame)
    store._clock.tick()
    assert store.snapshot().remaining_seconds == 899

    _deliver(channels, "app-restarted", frame)
    assert store.snapshot().remaining_seconds == 899

    _deliver(channels, "app-restarted", {"resourceId": 42, "timestamp": "2026-03-01T12:05:00Z"})
    assert store.snapshot().remaining_seconds == 900
    store.dispose()
    await channels.aclose()


@pytest.mark.asyncio
async def test_replayed_batch_after_reconnect_is_ignored(config, api, channels, now):
    expiries = []
    api.status = started(60)
    store = _store(config, api, channels, now, on_expire=expiries.append)
    await store.load()
    timeout = {"resourceId": 42, "timestamp": "2026-03-01T12:00:00Z"}
    restarted = {"resourceId": 42, "timestamp": "2026-03-01T12:01:00Z"}

    _deliver(channels, "app-timeout", timeout)
    _deliver(channels, "app-restarted", restarted)
    store._clock.tick()
    assert expiries == [42]
    assert store.snapshot().remaining_seconds == 899

    # The same frames delivered again, as after a reconnect.
    _deliver(channels, "app-timeout", timeout)
    assert store.state is SessionState.ACTIVE
    _deliver(channels, "app-restarted", restarted)
    snapshot = store.snapshot()
    assert snapshot.state is SessionState.ACTIVE
    assert snapshot.remaining_seconds == 899
    assert expiries == [42]

    # A timeout from the current cycle still applies.
    _deliver(channels, "app-timeout", {"resourceId": 42, "timestamp": "2026-03-01T12:16:00Z"})
    assert store.state is SessionState.EXPIRED
    assert expiries == [42, 42]
    store.dispose()
    await channels.aclose()


@pytest.mark.asyncio
async def test_events_for_other_resources_are_ignored(config, api, channels, now):
    api.status = started(60)
    store = _store(config, api, channels, now)
    await store.load()
    _deliver(channels, "app-timeout", {"resourceId": 9})
    assert store.state is SessionState.ACTIVE
    store.dispose()
    await channels.aclose()


@pytest.mark.asyncio
async def test_fetch_resolving_after_event_is_discarded(config, api, channels, now):
    api.status = started(600)
    api.status_gate = asyncio.Event()
    store = _store(config, api, channels, now)
    load = asyncio.ensure_future(store.load())
    await wait_until(lambda: api.status_calls == 1)
    assert store.state is SessionState.LOADING

    _deliver(channels, "app-restarted", {"resourceId": 42})
    api.status_gate.set()
    result = await load

    assert not result.applied
    assert store.state is SessionState.ACTIVE
    assert store.snapshot().remaining_seconds == 900
    store.dispose()
    await channels.aclose()


@pytest.mark.asyncio
async def test_preview_and_reload_events(config, api, channels, now):
    api.status = started(60)
    store = _store(config, api, channels, now)
    await store.load()

    _deliver(channels, "job-completed", {
        "appId": 42, "expoQrCode": "exp://qr", "expoWebUrl": "http://localhost:8081", "expoPort": 8081,
    })
    assert store.snapshot().preview.port == 8081

    _deliver(channels, "app-reloaded", {"appId": 42, "timestamp": "2026-03-01T12:01:00Z"})
    assert store.last_reloaded_at.minute == 1
    assert store.state is SessionState.ACTIVE

    _deliver(channels, "app-timeout", {"appId": 42})
    assert store.snapshot().preview is None
    store.dispose()
    await channels.aclose()


@pytest.mark.asyncio
async def test_connection_status_is_reflected(config, api, channels, hub, now):
    store = _store(config, api, channels, now)
    await wait_until(lambda: store.snapshot().is_connected)
    hub.current.drop()
    await wait_until(lambda: len(hub.transports) == 2 and store.snapshot().is_connected)
    store.dispose()
    await channels.aclose()


@pytest.mark.asyncio
async def test_countdown_continues_after_channel_gives_up(config, api, channels, hub, now):
    hub.fail_forever = TransientConnectionError("ws://localhost:3004/", "refused")
    expiries = []
    api.status = started(898)
    store = _store(config, api, channels, now, on_expire=expiries.append)
    connection = channels.get_connection(JOBS_CHANNEL, "7")
    await wait_until(lambda: connection.info.gave_up)
    assert not store.snapshot().is_connected

    await store.load()
    assert store.snapshot().remaining_seconds == 2
    store._clock.tick()
    store._clock.tick()
    store._clock.tick()
    snapshot = store.snapshot()
    assert snapshot.state is SessionState.EXPIRED
    assert snapshot.remaining_seconds == 0
    assert expiries == [42]
    store.dispose()
    await channels.aclose()


# ── Lifecycle ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_listeners_see_each_change(config, api, channels, now):
    api.status = started(60)
    store = _store(config, api, channels, now)
    states = []
    store.on_change(lambda snap: states.append(snap.state))
    await store.load()
    _deliver(channels, "app-timeout", {"resourceId": 42})
    assert states[0] is SessionState.LOADING
    assert states[-2:] == [SessionState.ACTIVE, SessionState.EXPIRED]
    store.dispose()
    await channels.aclose()


@pytest.mark.asyncio
async def test_dispose_ignores_late_events(config, api, channels, now):
    api.status = started(60)
    store = _store(config, api, channels, now)
    await store.load()
    connection = channels.get_connection(JOBS_CHANNEL, "7")
    changes = []
    store.on_change(changes.append)

    store.dispose()
    connection.deliver("app-timeout", {"resourceId": 42})
    store._on_event(parse_push_event("app-timeout", {"resourceId": 42}))
    assert changes == []
    assert store.state is SessionState.ACTIVE
    assert not store._clock.running
    assert connection.closed
    assert (await store.load()).error == "disposed"
    await channels.aclose()


@pytest.mark.asyncio
async def test_store_without_owner_is_inert(config, api, channels, hub, now):
    store = _store(config, api, channels, now, owner_id=None)
    snapshot = store.snapshot()
    assert snapshot.requires_sign_in
    assert not snapshot.is_connected
    assert channels.open_connections == 0

    result = await store.load()
    assert not result.ok
    assert result.error == SIGN_IN_MESSAGE
    assert api.status_calls == 0
    assert hub.transports == []
    store.dispose()
