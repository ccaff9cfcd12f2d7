"""YAML configuration loader.

Loads a single YAML file that overrides the env-var defaults of
SyncConfig. Sections that are absent keep their defaults.

Example YAML:
    session:
      window_seconds: 900
      warning_threshold_seconds: 300
      restart_reconcile_seconds: 30

    api:
      base_url: https://api.example.com/api
      timeout_seconds: 30

    location:
      hostname: shop.example.com
      protocol: "https:"

    channels:
      jobs:
        local_port: 3004
        max_attempts: 5
        retry_delay_seconds: 1.0
      publish:
        url: https://publish.example.com
        path: /publish
        max_attempts: 3
        retry_delay_seconds: 10
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .config import ChannelConfig, SyncConfig

logger = logging.getLogger(__name__)


def _parse_channel(name: str, raw: dict[str, Any], base: ChannelConfig) -> ChannelConfig:
    return ChannelConfig(
        name=name,
        url_override=raw.get("url", base.url_override) or None,
        local_port=int(raw.get("local_port", base.local_port)),
        path=str(raw.get("path", base.path)),
        max_attempts=int(raw.get("max_attempts", base.max_attempts)),
        retry_delay_seconds=float(raw.get(
            "retry_delay_seconds", base.retry_delay_seconds
        )),
        connect_timeout_seconds=float(raw.get(
            "connect_timeout_seconds", base.connect_timeout_seconds
        )),
    )


def load_yaml_config(
    path: str | Path,
    base: SyncConfig | None = None,
) -> SyncConfig:
    """Load and parse a YAML config file on top of *base* (or defaults)."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"Top level of {path} must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    config = base or SyncConfig()

    session_raw = raw.get("session") or {}
    config.session_window_seconds = int(session_raw.get(
        "window_seconds", config.session_window_seconds
    ))
    config.warning_threshold_seconds = int(session_raw.get(
        "warning_threshold_seconds", config.warning_threshold_seconds
    ))
    config.tick_interval_seconds = float(session_raw.get(
        "tick_interval_seconds", config.tick_interval_seconds
    ))
    config.restart_reconcile_seconds = float(session_raw.get(
        "restart_reconcile_seconds", config.restart_reconcile_seconds
    ))
    config.activity_buffer_size = int(session_raw.get(
        "activity_buffer_size", config.activity_buffer_size
    ))

    api_raw = raw.get("api") or {}
    config.api_base_url = api_raw.get("base_url", config.api_base_url)
    config.api_timeout_seconds = float(api_raw.get(
        "timeout_seconds", config.api_timeout_seconds
    ))

    location_raw = raw.get("location") or {}
    if "hostname" in location_raw:
        config.hostname = location_raw["hostname"] or None
    config.protocol = location_raw.get("protocol", config.protocol)

    if "log_level" in raw:
        config.log_level = str(raw["log_level"]).upper()

    for name, channel_raw in (raw.get("channels") or {}).items():
        if not isinstance(channel_raw, dict):
            logger.warning("Ignoring channel '%s': expected a mapping", name)
            continue
        config.channels[name] = _parse_channel(
            name, channel_raw, config.channel(name),
        )

    logger.info(
        "load_yaml_config: window=%ss channels=%s",
        config.session_window_seconds, ", ".join(sorted(config.channels)),
    )
    return config
