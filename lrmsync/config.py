#!/usr/bin/env python3
"""
Project configuration (lrmsync.yaml).

Example:
    actor: alice
    source: cli
    resources_file: resources.json
    state_dir: .lrm
    default_strategy: none        # none | local | remote
    remote:
      type: http                  # directory | http
      url: https://lrm.example.com/api
      project: my-app
      timeout: 30
      max_retries: 3
    retention:
      max_snapshots: 20
      evict_oldest: false

Credentials never live in this file; the API key comes from LRM_API_KEY.
"""

import getpass
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from .errors import ConfigError

CONFIG_FILE = "lrmsync.yaml"
REMOTE_TYPES = ("directory", "http")
STRATEGIES = ("none", "local", "remote")


@dataclass
class RemoteConfig:
    type: str = "directory"
    path: Optional[str] = None
    url: Optional[str] = None
    project: Optional[str] = None
    timeout: int = 30
    max_retries: int = 3

    @classmethod
    def from_dict(cls, data: dict) -> "RemoteConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class RetentionConfig:
    max_snapshots: int = 0
    evict_oldest: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "RetentionConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class SyncConfig:
    """Settings for one project directory."""
    actor: str = ""
    source: str = "cli"
    resources_file: str = "resources.json"
    state_dir: str = ".lrm"
    default_strategy: str = "none"
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    api_key: Optional[str] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        """Serializable form; the API key is deliberately left out."""
        data = asdict(self)
        data.pop("api_key", None)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "SyncConfig":
        data = dict(data)
        remote = data.pop("remote", None) or {}
        retention = data.pop("retention", None) or {}
        if not isinstance(remote, dict) or not isinstance(retention, dict):
            raise ConfigError("'remote' and 'retention' must be mappings")
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__ and k != "api_key"}
        config = cls(
            remote=RemoteConfig.from_dict(remote),
            retention=RetentionConfig.from_dict(retention),
            **known,
        )
        config.validate()
        return config

    def validate(self) -> None:
        if self.remote.type not in REMOTE_TYPES:
            raise ConfigError(f"Unknown remote type: {self.remote.type}. Available: {', '.join(REMOTE_TYPES)}")
        if self.remote.type == "directory" and not self.remote.path:
            raise ConfigError("remote.path is required for a directory remote")
        if self.remote.type == "http" and not (self.remote.url and self.remote.project):
            raise ConfigError("remote.url and remote.project are required for an http remote")
        if self.default_strategy not in STRATEGIES:
            raise ConfigError(
                f"Unknown default_strategy: {self.default_strategy}. Available: {', '.join(STRATEGIES)}"
            )

    def apply_environment(self) -> "SyncConfig":
        """Fill actor and API key from LRM_ACTOR / LRM_API_KEY, falling back to the OS user."""
        self.actor = os.environ.get("LRM_ACTOR") or self.actor or getpass.getuser()
        self.api_key = os.environ.get("LRM_API_KEY") or self.api_key
        return self

    def save(self, project_dir: str) -> Path:
        path = Path(project_dir) / CONFIG_FILE
        path.write_text(
            yaml.safe_dump(self.to_dict(), sort_keys=False, allow_unicode=True),
            encoding="utf-8",
        )
        return path


def load_config(project_dir: str) -> SyncConfig:
    """
    Load lrmsync.yaml from a project directory.

    Args:
        project_dir: Directory containing lrmsync.yaml

    Returns:
        SyncConfig with environment overrides applied

    Raises:
        ConfigError: file missing, not valid YAML, or incomplete
    """
    path = Path(project_dir) / CONFIG_FILE
    if not path.exists():
        raise ConfigError(f"No {CONFIG_FILE} in {project_dir}. Run 'lrm-sync init' first.")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    try:
        return SyncConfig.from_dict(data).apply_environment()
    except TypeError as e:
        raise ConfigError(f"Invalid value in {path}: {e}")
