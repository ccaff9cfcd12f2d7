"""Session sync engine: live runtime-session state for storefront resources."""
from .models import (
    ChannelStatus,
    ConnectionInfo,
    EventKind,
    FetchResult,
    GenerationJob,
    PreviewInfo,
    PushEvent,
    ResourceSession,
    RestartAck,
    RestartRequest,
    RestartResult,
    SessionSnapshot,
    SessionState,
    SessionStatus,
)
from .config import ChannelConfig, SyncConfig
from .errors import (
    AuthRequiredError,
    MalformedEventError,
    ResourceNotFoundError,
    RestartCommandError,
    SessionSyncError,
    TransientConnectionError,
)

__all__ = [
    # Session API (lazy import)
    "SessionContext",
    "SessionHandle",
    "SessionStateStore",
    "RestartCoordinator",
    "SessionClock",
    "SessionApi",
    # Channels (lazy import)
    "EventChannelManager",
    "ChannelConnection",
    "ChannelTransport",
    "resolve_endpoint",
    # Trackers (lazy import)
    "PublishTracker",
    "JobTracker",
    # YAML config (lazy import)
    "load_yaml_config",
    # Models
    "ChannelStatus",
    "ConnectionInfo",
    "EventKind",
    "FetchResult",
    "GenerationJob",
    "PreviewInfo",
    "PushEvent",
    "ResourceSession",
    "RestartAck",
    "RestartRequest",
    "RestartResult",
    "SessionSnapshot",
    "SessionState",
    "SessionStatus",
    # Config
    "ChannelConfig",
    "SyncConfig",
    # Errors
    "AuthRequiredError",
    "MalformedEventError",
    "ResourceNotFoundError",
    "RestartCommandError",
    "SessionSyncError",
    "TransientConnectionError",
]


def __getattr__(name: str):
    if name in ("SessionContext", "SessionHandle"):
        from . import session
        return getattr(session, name)
    if name == "SessionStateStore":
        from .store import SessionStateStore
        return SessionStateStore
    if name == "RestartCoordinator":
        from .restart import RestartCoordinator
        return RestartCoordinator
    if name == "SessionClock":
        from .clock import SessionClock
        return SessionClock
    if name == "SessionApi":
        from .api import SessionApi
        return SessionApi
    if name in ("EventChannelManager", "ChannelConnection", "ChannelTransport"):
        from . import channel
        return getattr(channel, name)
    if name == "resolve_endpoint":
        from .endpoints import resolve_endpoint
        return resolve_endpoint
    if name in ("PublishTracker", "JobTracker"):
        from . import publish
        return getattr(publish, name)
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
