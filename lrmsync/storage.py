#!/usr/bin/env python3
"""
Local storage for a working copy.

The working copy is a JSON document listing every entry. Sync bookkeeping
(baseline revision plus the baseline content) lives under the project's state
directory. Every write goes to a temporary sibling file first and is then
renamed over the target, so a crash never leaves a half-written file behind.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .errors import CorruptSnapshotError
from .snapshot import ResourceSnapshot, compute_revision

logger = logging.getLogger(__name__)

SYNC_STATE_FILE = "sync-state.json"


def atomic_write_text(path: Path, content: str) -> None:
    """Write content to path via write-new-then-rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.parent / f".{path.name}.tmp"
    with open(temp_path, "w", encoding="utf-8") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    temp_path.replace(path)


def atomic_write_json(path: Path, data: Any) -> None:
    atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")


def read_json(path: Path) -> Any:
    """Load a JSON document, mapping decode failures onto CorruptSnapshotError."""
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise CorruptSnapshotError(f"Invalid JSON in {path}: {e}")


def read_snapshot(path: Path) -> ResourceSnapshot:
    return ResourceSnapshot.from_dict(read_json(path))


class LocalStore(ABC):
    """Storage collaborator owning one working copy and its baseline."""

    @abstractmethod
    def load_snapshot(self) -> ResourceSnapshot:
        """Current working-copy state."""
        pass

    @abstractmethod
    def save_snapshot(self, snapshot: ResourceSnapshot) -> None:
        """Replace the working copy in a single atomic write."""
        pass

    @abstractmethod
    def load_baseline(self) -> Optional[str]:
        """Revision of the last state known identical on both ends, or None."""
        pass

    @abstractmethod
    def load_baseline_snapshot(self) -> ResourceSnapshot:
        """Content of the baseline (empty before the first sync)."""
        pass

    @abstractmethod
    def save_baseline(self, revision: str, snapshot: ResourceSnapshot) -> None:
        """Advance the baseline atomically."""
        pass

    @property
    @abstractmethod
    def identity(self) -> str:
        """Stable name of the working copy, used for locking and history."""
        pass


class FileWorkingCopy(LocalStore):
    """
    Working copy stored on disk.

    Layout:
        <project>/resources.json        working copy (entries list)
        <project>/.lrm/sync-state.json  baseline revision + content
    """

    def __init__(
        self,
        project_dir: str,
        resources_file: str = "resources.json",
        state_dir: str = ".lrm",
    ):
        self.project_dir = Path(project_dir).resolve()
        self.resources_path = self.project_dir / resources_file
        self.state_dir = self.project_dir / state_dir
        self.sync_state_path = self.state_dir / SYNC_STATE_FILE

    @property
    def identity(self) -> str:
        return str(self.project_dir)

    def load_snapshot(self) -> ResourceSnapshot:
        if not self.resources_path.exists():
            return ResourceSnapshot()
        return read_snapshot(self.resources_path)

    def save_snapshot(self, snapshot: ResourceSnapshot) -> None:
        logger.debug("Writing working copy %s (revision %s)", self.resources_path, snapshot.revision)
        atomic_write_json(self.resources_path, snapshot.to_dict())

    def _load_sync_state(self) -> dict:
        if not self.sync_state_path.exists():
            return {}
        data = read_json(self.sync_state_path)
        if not isinstance(data, dict):
            raise CorruptSnapshotError(f"Invalid sync state in {self.sync_state_path}")
        return data

    def load_baseline(self) -> Optional[str]:
        return self._load_sync_state().get("revision")

    def load_baseline_snapshot(self) -> ResourceSnapshot:
        state = self._load_sync_state()
        if "snapshot" not in state:
            return ResourceSnapshot()
        snapshot = ResourceSnapshot.from_dict(state["snapshot"])
        if state.get("revision") and snapshot.revision != state["revision"]:
            raise CorruptSnapshotError(
                f"Baseline revision {state['revision']} does not match stored snapshot {snapshot.revision}"
            )
        expected = state.get("content_revision")
        actual = compute_revision(snapshot.entries)
        if expected and actual != expected:
            raise CorruptSnapshotError(
                f"Baseline {state.get('revision')} content hash {actual} does not match recorded {expected}"
            )
        return snapshot

    def save_baseline(self, revision: str, snapshot: ResourceSnapshot) -> None:
        logger.debug("Advancing baseline of %s to %s", self.identity, revision)
        atomic_write_json(self.sync_state_path, {
            "version": 1,
            "revision": revision,
            "content_revision": compute_revision(snapshot.entries),
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "snapshot": snapshot.with_revision(revision).to_dict(),
        })
