#!/usr/bin/env python3
"""
Tests for lrmsync.yaml loading and validation.
"""

import pytest
import yaml

from lrmsync.config import CONFIG_FILE, RemoteConfig, SyncConfig, load_config
from lrmsync.errors import ConfigError


def _write(tmp_path, data):
    (tmp_path / CONFIG_FILE).write_text(yaml.safe_dump(data), encoding="utf-8")


def test_load_directory_remote(tmp_path, monkeypatch):
    monkeypatch.delenv("LRM_ACTOR", raising=False)
    _write(tmp_path, {
        "actor": "alice",
        "remote": {"type": "directory", "path": "../shared"},
        "retention": {"max_snapshots": 5},
    })

    config = load_config(str(tmp_path))

    assert config.actor == "alice"
    assert config.remote.path == "../shared"
    assert config.retention.max_snapshots == 5
    assert config.state_dir == ".lrm"
    assert config.default_strategy == "none"


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("LRM_ACTOR", "ci-bot")
    monkeypatch.setenv("LRM_API_KEY", "token-123")
    _write(tmp_path, {
        "actor": "alice",
        "remote": {"type": "http", "url": "https://lrm.example.com/api", "project": "app"},
    })

    config = load_config(str(tmp_path))

    assert config.actor == "ci-bot"
    assert config.api_key == "token-123"


def test_api_key_never_saved(tmp_path):
    config = SyncConfig(
        actor="alice",
        remote=RemoteConfig(type="http", url="https://x", project="p"),
        api_key="secret",
    )
    path = config.save(str(tmp_path))
    assert "secret" not in path.read_text(encoding="utf-8")


@pytest.mark.parametrize("content", [
    None,
    "remote: [unclosed",
    "- just\n- a list\n",
    "remote:\n  type: ftp\n",
    "remote:\n  type: http\n  url: https://x\n",
    "remote:\n  type: directory\n  path: x\ndefault_strategy: newest\n",
    "remote:\n  type: directory\n  path: x\n  timeout: [1]\n  unknown_kw: 1\nretention: 3\n",
])
def test_invalid_configs(tmp_path, content):
    if content is not None:
        (tmp_path / CONFIG_FILE).write_text(content, encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(tmp_path))
