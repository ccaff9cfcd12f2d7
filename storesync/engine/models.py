"""Core data models for the session sync engine.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    """Resource session states. See lifecycle.py for transition rules."""
    IDLE = "idle"
    LOADING = "loading"
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    WARNING = "warning"
    EXPIRED = "expired"
    RESTARTING = "restarting"
    ERROR = "error"


class ChannelStatus(str, Enum):
    """Push-channel connection states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class EventKind(str, Enum):
    """Closed set of application events carried by the push channel."""
    JOB_PROGRESS = "job-progress"
    JOB_COMPLETED = "job-completed"
    JOB_FAILED = "job-failed"
    APP_TIMEOUT = "app-timeout"
    APP_RESTARTED = "app-restarted"
    APP_RELOADED = "app-reloaded"
    OUTPUT_STREAM = "output-stream"
    PROGRESS_NOTE = "progress-note"
    PUBLISH_PROGRESS = "publish-progress"
    PUBLISH_COMPLETE = "publish-complete"
    PUBLISH_FAILED = "publish-failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PreviewInfo:
    """Where the running app can be previewed."""
    qr_code: str
    web_url: str
    port: int


@dataclass
class ResourceSession:
    """Mutable per-resource session record owned by a SessionStateStore."""
    resource_id: int
    owner_id: str | None
    state: SessionState = SessionState.IDLE
    remaining_seconds: int | None = None
    started_at: datetime | None = None
    last_synced_at: datetime | None = None
    last_error: str | None = None
    requires_sign_in: bool = False
    generation_in_progress: bool = False
    preview: PreviewInfo | None = None
    last_reloaded_at: datetime | None = None


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view handed to UI collaborators."""
    resource_id: int
    is_connected: bool
    state: SessionState
    remaining_seconds: int | None
    last_error: str | None = None
    requires_sign_in: bool = False
    generation_in_progress: bool = False
    preview: PreviewInfo | None = None


@dataclass
class ConnectionInfo:
    """Public status of a ChannelConnection."""
    endpoint_id: str
    owner_id: str
    status: ChannelStatus = ChannelStatus.DISCONNECTED
    attempt_count: int = 0
    last_error: str | None = None
    gave_up: bool = False


@dataclass(frozen=True)
class PushEvent:
    """A validated application event from the push channel."""
    kind: EventKind
    resource_id: int
    payload: dict[str, Any] = field(default_factory=dict)
    server_timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class RestartRequest:
    """A restart command issued for a resource."""
    resource_id: int
    issued_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class SessionStatus:
    """Parsed response of the session-status fetch."""
    started_at: datetime | None = None
    status: str = ""
    preview: PreviewInfo | None = None


@dataclass(frozen=True)
class RestartAck:
    """Parsed response of the restart command."""
    accepted: bool
    job_id: str | None = None
    message: str = ""


@dataclass(frozen=True)
class GenerationJob:
    """Content-generation job attached to a resource."""
    job_id: int | None
    status: str
    progress: int = 0
    current_step: str | None = None

    @property
    def in_progress(self) -> bool:
        return self.status in ("pending", "in_progress")


@dataclass(frozen=True)
class FetchResult:
    """Outcome of a status fetch, returned instead of raised."""
    ok: bool
    state: SessionState
    error: str | None = None
    applied: bool = True


@dataclass(frozen=True)
class RestartResult:
    """Outcome of a restart request, returned instead of raised."""
    accepted: bool
    state: SessionState
    error: str | None = None
    request: RestartRequest | None = None
