"""Trackers for the informational event kinds.

PublishTracker follows store publishing on the publish channel and
JobTracker follows build-job activity on the jobs channel. Neither
drives the session state machine; they only keep the latest view for
display.
"""
from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .channel import EventChannelManager, Unsubscribe
from .config import JOBS_CHANNEL, PUBLISH_CHANNEL, SyncConfig
from .models import EventKind, PushEvent

logger = logging.getLogger(__name__)

ChangeListener = Callable[[int], None]


@dataclass(frozen=True)
class PublishProgress:
    job_id: int | None
    status: str
    step: str
    progress: int


@dataclass(frozen=True)
class PublishOutcome:
    job_id: int | None
    succeeded: bool
    platform: str | None = None
    error: str | None = None
    info: dict[str, Any] = field(default_factory=dict)
    finished_at: datetime | None = None


@dataclass(frozen=True)
class ActivityLine:
    kind: EventKind
    # stdout/stderr/completion for output, info/success/error for notes.
    channel: str
    text: str
    timestamp: datetime


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _progress_value(value: Any) -> int:
    number = _int_or_none(value)
    if number is None:
        return 0
    return max(0, min(100, number))


class _Tracker:
    """Shared subscription bookkeeping."""

    def __init__(
        self,
        owner_id: str | None,
        channels: EventChannelManager,
        channel: str,
        kinds: tuple[EventKind, ...],
        resource_filter: int | None,
    ) -> None:
        self._owner_id = owner_id
        self._channels = channels
        self._channel = channel
        self._listeners: list[ChangeListener] = []
        self._unsubscribers: list[Unsubscribe] = [
            channels.subscribe(channel, owner_id, kind, resource_filter, self._on_event)
            for kind in kinds
        ]
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def is_connected(self) -> bool:
        connection = self._channels.get_connection(self._channel, self._owner_id)
        return connection is not None and connection.is_connected

    def on_change(self, listener: ChangeListener) -> Unsubscribe:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            unsubscribe()
        self._listeners.clear()

    def _on_event(self, event: PushEvent) -> None:
        if self._disposed:
            return
        self._apply(event)
        for listener in list(self._listeners):
            try:
                listener(event.resource_id)
            except Exception:
                logger.exception("%s listener failed", type(self).__name__)

    def _apply(self, event: PushEvent) -> None:
        raise NotImplementedError


class PublishTracker(_Tracker):
    """Latest publish progress and outcome per resource."""

    def __init__(
        self,
        owner_id: str | None,
        channels: EventChannelManager,
        *,
        channel: str = PUBLISH_CHANNEL,
        resource_filter: int | None = None,
    ) -> None:
        self._progress: dict[int, PublishProgress] = {}
        self._outcomes: dict[int, PublishOutcome] = {}
        super().__init__(
            owner_id, channels, channel,
            (EventKind.PUBLISH_PROGRESS, EventKind.PUBLISH_COMPLETE, EventKind.PUBLISH_FAILED),
            resource_filter,
        )

    def progress(self, resource_id: int) -> PublishProgress | None:
        return self._progress.get(resource_id)

    def outcome(self, resource_id: int) -> PublishOutcome | None:
        return self._outcomes.get(resource_id)

    def is_publishing(self, resource_id: int) -> bool:
        return resource_id in self._progress

    def _apply(self, event: PushEvent) -> None:
        payload = event.payload
        resource_id = event.resource_id
        job_id = _int_or_none(payload.get("jobId"))
        if event.kind is EventKind.PUBLISH_PROGRESS:
            self._progress[resource_id] = PublishProgress(
                job_id=job_id,
                status=str(payload.get("status") or ""),
                step=str(payload.get("step") or ""),
                progress=_progress_value(payload.get("progress")),
            )
            return

        self._progress.pop(resource_id, None)
        if event.kind is EventKind.PUBLISH_COMPLETE:
            info = payload.get("publishInfo")
            self._outcomes[resource_id] = PublishOutcome(
                job_id=job_id,
                succeeded=True,
                platform=payload.get("platform"),
                info=dict(info) if isinstance(info, dict) else {},
                finished_at=event.server_timestamp,
            )
            logger.info("Resource %s published (job %s)", resource_id, job_id)
        else:
            error = str(payload.get("error") or "Publish failed")
            self._outcomes[resource_id] = PublishOutcome(
                job_id=job_id,
                succeeded=False,
                error=error,
                finished_at=event.server_timestamp,
            )
            logger.warning("Publish of resource %s failed: %s", resource_id, error)


class JobTracker(_Tracker):
    """Last job event and a bounded tail of build output for one resource."""

    def __init__(
        self,
        resource_id: int,
        owner_id: str | None,
        channels: EventChannelManager,
        *,
        config: SyncConfig,
        channel: str = JOBS_CHANNEL,
    ) -> None:
        self._resource_id = resource_id
        self._last_event: PushEvent | None = None
        self._lines: deque[ActivityLine] = deque(maxlen=max(1, config.activity_buffer_size))
        super().__init__(
            owner_id, channels, channel,
            (
                EventKind.JOB_PROGRESS,
                EventKind.JOB_COMPLETED,
                EventKind.JOB_FAILED,
                EventKind.OUTPUT_STREAM,
                EventKind.PROGRESS_NOTE,
            ),
            resource_id,
        )

    @property
    def resource_id(self) -> int:
        return self._resource_id

    @property
    def last_event(self) -> PushEvent | None:
        return self._last_event

    @property
    def lines(self) -> list[ActivityLine]:
        return list(self._lines)

    @property
    def progress(self) -> int | None:
        if self._last_event is None or self._last_event.kind is not EventKind.JOB_PROGRESS:
            return None
        return _progress_value(self._last_event.payload.get("progress"))

    def clear(self) -> None:
        self._lines.clear()

    def _apply(self, event: PushEvent) -> None:
        payload = event.payload
        if event.kind is EventKind.OUTPUT_STREAM:
            self._lines.append(ActivityLine(
                kind=event.kind,
                channel=str(payload.get("type") or "stdout"),
                text=str(payload.get("content") or ""),
                timestamp=event.server_timestamp,
            ))
            return
        if event.kind is EventKind.PROGRESS_NOTE:
            self._lines.append(ActivityLine(
                kind=event.kind,
                channel=str(payload.get("type") or "info"),
                text=str(payload.get("message") or ""),
                timestamp=event.server_timestamp,
            ))
            return
        self._last_event = event
        if event.kind is EventKind.JOB_FAILED:
            logger.warning(
                "Job for resource %s failed: %s",
                event.resource_id, payload.get("errorMessage") or payload.get("message"),
            )
