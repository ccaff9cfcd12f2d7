"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via STORESYNC_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field

from .models import SessionSnapshot

logger = logging.getLogger(__name__)


# Callback fired whenever a session snapshot changes.
# Signature: def callback(snapshot: SessionSnapshot) -> None
SnapshotCallback = Callable[[SessionSnapshot], None]

# Callback fired once per natural expiry.
# Signature: def callback(resource_id: int) -> None
ExpiryCallback = Callable[[int], None]

JOBS_CHANNEL = "jobs"
PUBLISH_CHANNEL = "publish"


@dataclass
class ChannelConfig:
    """Connection settings for one push channel."""

    name: str
    # Explicit base URL; wins over hostname-based resolution.
    url_override: str | None = None
    # Port used when the UI runs on a loopback hostname.
    local_port: int = 3004
    # Path (namespace) appended to the resolved base URL.
    path: str = "/"
    max_attempts: int = 5
    retry_delay_seconds: float = 1.0
    connect_timeout_seconds: float = 10.0


def _default_channels() -> dict[str, ChannelConfig]:
    return {
        JOBS_CHANNEL: ChannelConfig(name=JOBS_CHANNEL, local_port=3004),
        PUBLISH_CHANNEL: ChannelConfig(
            name=PUBLISH_CHANNEL, local_port=3003, path="/publish",
        ),
    }


@dataclass
class SyncConfig:
    """Session sync engine configuration."""

    # Full countdown window of a freshly started session.
    session_window_seconds: int = 900
    # Below this many seconds an active session is shown as a warning.
    warning_threshold_seconds: int = 300
    tick_interval_seconds: float = 1.0
    # Interval of the reconciling status poll while a restart is
    # unconfirmed. Set to 0 to wait for the push event only.
    restart_reconcile_seconds: float = 30.0

    # REST collaborator
    api_base_url: str = "http://localhost:3001/api"
    api_timeout_seconds: float = 30.0

    # Browser-like location used for endpoint resolution.
    hostname: str | None = "localhost"
    protocol: str = "http:"

    # Number of output/progress lines kept per resource.
    activity_buffer_size: int = 200

    # Logging
    log_level: str = "INFO"

    channels: dict[str, ChannelConfig] = field(default_factory=_default_channels)

    def channel(self, name: str) -> ChannelConfig:
        """Return the settings for a channel, creating defaults for unknown names."""
        config = self.channels.get(name)
        if config is None:
            config = ChannelConfig(name=name)
            self.channels[name] = config
        return config

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from STORESYNC_* environment variables."""
        sync_vars = {
            k: v for k, v in os.environ.items() if k.startswith("STORESYNC_")
        }
        if sync_vars:
            logger.info(
                "SyncConfig.from_env: STORESYNC_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(sync_vars.items())),
            )
        else:
            logger.debug("SyncConfig.from_env: no STORESYNC_* env vars set, using defaults")

        config = cls(
            session_window_seconds=int(os.getenv(
                "STORESYNC_SESSION_WINDOW", str(cls.session_window_seconds)
            )),
            warning_threshold_seconds=int(os.getenv(
                "STORESYNC_WARNING_THRESHOLD",
                str(cls.warning_threshold_seconds),
            )),
            tick_interval_seconds=float(os.getenv(
                "STORESYNC_TICK_INTERVAL", str(cls.tick_interval_seconds)
            )),
            restart_reconcile_seconds=float(os.getenv(
                "STORESYNC_RESTART_RECONCILE",
                str(cls.restart_reconcile_seconds),
            )),
            api_base_url=os.getenv("STORESYNC_API_URL", cls.api_base_url),
            api_timeout_seconds=float(os.getenv(
                "STORESYNC_API_TIMEOUT", str(cls.api_timeout_seconds)
            )),
            hostname=os.getenv("STORESYNC_HOSTNAME", cls.hostname or "") or None,
            protocol=os.getenv("STORESYNC_PROTOCOL", cls.protocol),
            log_level=os.getenv("STORESYNC_LOG_LEVEL", cls.log_level),
        )

        # Channel overrides; the API URL doubles as the push endpoint
        # when no channel-specific URL is set.
        api_root = os.getenv("STORESYNC_API_URL")
        for name, env_name in (
            (JOBS_CHANNEL, "STORESYNC_WORKER_URL"),
            (PUBLISH_CHANNEL, "STORESYNC_PUBLISH_URL"),
        ):
            channel = config.channel(name)
            channel.url_override = os.getenv(env_name) or api_root or None
        attempts = os.getenv("STORESYNC_RECONNECT_ATTEMPTS")
        delay = os.getenv("STORESYNC_RECONNECT_DELAY")
        for channel in config.channels.values():
            if attempts:
                channel.max_attempts = int(attempts)
            if delay:
                channel.retry_delay_seconds = float(delay)

        logger.info(
            "SyncConfig.from_env: window=%ss warning=%ss api=%s log_level=%s",
            config.session_window_seconds, config.warning_threshold_seconds,
            config.api_base_url, config.log_level,
        )
        return config
