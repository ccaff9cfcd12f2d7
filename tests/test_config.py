"""SyncConfig env loading and YAML overrides."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest
import yaml

from storesync.engine.config import JOBS_CHANNEL, PUBLISH_CHANNEL, SyncConfig
from storesync.engine.yaml_config import load_yaml_config


def test_defaults():
    config = SyncConfig()
    assert config.session_window_seconds == 900
    assert config.warning_threshold_seconds == 300
    assert config.channel(JOBS_CHANNEL).local_port == 3004
    assert config.channel(PUBLISH_CHANNEL).local_port == 3003
    assert config.channel(PUBLISH_CHANNEL).path == "/publish"
    assert config.channel(JOBS_CHANNEL).max_attempts == 5


def test_unknown_channel_gets_defaults():
    config = SyncConfig()
    assert config.channel("extra").name == "extra"
    assert "extra" in config.channels


def test_from_env_overrides():
    env = {
        "STORESYNC_SESSION_WINDOW": "600",
        "STORESYNC_API_URL": "https://api.shop.example.com/api",
        "STORESYNC_PUBLISH_URL": "https://publish.example.com",
        "STORESYNC_RECONNECT_ATTEMPTS": "3",
        "STORESYNC_RECONNECT_DELAY": "10",
        "STORESYNC_HOSTNAME": "",
    }
    with patch.dict(os.environ, env, clear=False):
        config = SyncConfig.from_env()
    assert config.session_window_seconds == 600
    assert config.hostname is None
    assert config.channel(JOBS_CHANNEL).url_override == "https://api.shop.example.com/api"
    assert config.channel(PUBLISH_CHANNEL).url_override == "https://publish.example.com"
    for channel in config.channels.values():
        assert channel.max_attempts == 3
        assert channel.retry_delay_seconds == 10.0


def test_yaml_overrides_sections(tmp_path):
    path = tmp_path / "storesync.yaml"
    path.write_text(
        "session:\n"
        "  window_seconds: 120\n"
        "  restart_reconcile_seconds: 0\n"
        "api:\n"
        "  base_url: https://api.example.com/api\n"
        "location:\n"
        "  hostname: shop.example.com\n"
        "  protocol: 'https:'\n"
        "log_level: debug\n"
        "channels:\n"
        "  publish:\n"
        "    max_attempts: 3\n"
        "    retry_delay_seconds: 10\n"
        "  broken: nope\n",
        encoding="utf-8",
    )
    config = load_yaml_config(path)
    assert config.session_window_seconds == 120
    assert config.restart_reconcile_seconds == 0
    assert config.api_base_url == "https://api.example.com/api"
    assert config.hostname == "shop.example.com"
    assert config.log_level == "DEBUG"
    publish = config.channel(PUBLISH_CHANNEL)
    assert publish.max_attempts == 3
    assert publish.retry_delay_seconds == 10.0
    assert publish.path == "/publish"
    assert config.channel(JOBS_CHANNEL).max_attempts == 5
    assert "broken" not in config.channels


def test_yaml_applies_on_top_of_base(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    base = SyncConfig(session_window_seconds=60)
    assert load_yaml_config(path, base=base).session_window_seconds == 60


def test_yaml_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "nope.yaml")


def test_yaml_invalid_raises(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("session: [unclosed\n", encoding="utf-8")
    with pytest.raises(yaml.YAMLError):
        load_yaml_config(path)


def test_yaml_top_level_must_be_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- one\n- two\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_yaml_config(path)
