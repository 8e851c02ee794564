#!/usr/bin/env python3
"""
Named snapshot manager.

Named snapshots are user-requested, retained copies of the working copy used
for manual rollback. Restoring one does not overwrite anything: the stored
snapshot is handed back so the orchestrator can propose it as 'theirs' through
the normal merge path.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .diff import ChangeSet, diff
from .errors import CorruptSnapshotError, QuotaExceededError, SnapshotNotFoundError
from .snapshot import ResourceSnapshot
from .storage import LocalStore, atomic_write_json, read_json

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NamedSnapshot:
    """A retained snapshot plus its label."""
    id: str
    label: str
    created_at: str
    snapshot: ResourceSnapshot

    def to_dict(self, include_entries: bool = True) -> dict:
        data = {
            "id": self.id,
            "label": self.label,
            "created_at": self.created_at,
            "revision": self.snapshot.revision,
            "entry_count": len(self.snapshot),
        }
        if include_entries:
            data["snapshot"] = self.snapshot.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "NamedSnapshot":
        if "snapshot" not in data:
            raise CorruptSnapshotError(f"Named snapshot {data.get('id')} has no content")
        return cls(
            id=data["id"],
            label=data.get("label", ""),
            created_at=data.get("created_at", ""),
            snapshot=ResourceSnapshot.from_dict(data["snapshot"]),
        )


@dataclass
class QuotaDecision:
    allowed: bool
    evict: list = field(default_factory=list)  # snapshot ids to delete first
    reason: str = ""


class QuotaPolicy(ABC):
    """External collaborator deciding whether another snapshot may be kept."""

    @abstractmethod
    def admit(self, existing: list[NamedSnapshot]) -> QuotaDecision:
        pass


class RetentionQuota(QuotaPolicy):
    """
    Count-based retention.

    Args:
        max_snapshots: Maximum number of retained snapshots (0 = unlimited)
        evict_oldest: Make room by evicting the oldest snapshots instead of refusing
    """

    def __init__(self, max_snapshots: int = 0, evict_oldest: bool = False):
        self.max_snapshots = max_snapshots
        self.evict_oldest = evict_oldest

    def admit(self, existing: list[NamedSnapshot]) -> QuotaDecision:
        if not self.max_snapshots or len(existing) < self.max_snapshots:
            return QuotaDecision(allowed=True)
        if not self.evict_oldest:
            return QuotaDecision(
                allowed=False,
                reason=f"Snapshot limit reached ({len(existing)}/{self.max_snapshots})",
            )
        overflow = len(existing) - self.max_snapshots + 1
        oldest = sorted(existing, key=lambda s: s.created_at)[:overflow]
        return QuotaDecision(allowed=True, evict=[s.id for s in oldest])


class SnapshotManager:
    """Creates, lists, restores and deletes named snapshots under `directory`."""

    def __init__(self, store: LocalStore, directory: str, quota: Optional[QuotaPolicy] = None):
        self.store = store
        self.directory = Path(directory)
        self.quota = quota or RetentionQuota()

    def _path(self, snapshot_id: str) -> Path:
        return self.directory / f"{snapshot_id}.json"

    def create(self, label: str) -> NamedSnapshot:
        """
        Capture the current working copy under a label.

        Raises:
            QuotaExceededError: the quota collaborator refused the snapshot
        """
        existing = self.list()
        decision = self.quota.admit(existing)
        if not decision.allowed:
            raise QuotaExceededError(decision.reason or "Snapshot quota exceeded")
        for snapshot_id in decision.evict:
            logger.info("Evicting snapshot %s to stay within quota", snapshot_id)
            self.delete(snapshot_id)

        named = NamedSnapshot(
            id=uuid.uuid4().hex[:8],
            label=label,
            created_at=datetime.now(timezone.utc).isoformat(),
            snapshot=self.store.load_snapshot(),
        )
        atomic_write_json(self._path(named.id), named.to_dict())
        logger.info("Created snapshot %s '%s' (%d entries)", named.id, label, len(named.snapshot))
        return named

    def get(self, snapshot_id: str) -> NamedSnapshot:
        path = self._path(snapshot_id)
        if not path.exists():
            raise SnapshotNotFoundError(f"Snapshot '{snapshot_id}' not found")
        return NamedSnapshot.from_dict(read_json(path))

    def list(self) -> list[NamedSnapshot]:
        """All snapshots, oldest first."""
        if not self.directory.is_dir():
            return []
        snapshots = [NamedSnapshot.from_dict(read_json(p)) for p in self.directory.glob("*.json")]
        return sorted(snapshots, key=lambda s: s.created_at)

    def restore(self, snapshot_id: str) -> ResourceSnapshot:
        """Stored content, to be proposed as 'theirs' against the current copy."""
        return self.get(snapshot_id).snapshot

    def delete(self, snapshot_id: str) -> None:
        path = self._path(snapshot_id)
        if not path.exists():
            raise SnapshotNotFoundError(f"Snapshot '{snapshot_id}' not found")
        path.unlink()
        logger.info("Deleted snapshot %s", snapshot_id)

    def diff(self, from_id: str, to_id: Optional[str] = None) -> ChangeSet:
        """Changes from one snapshot to another, or to the current working copy."""
        source = self.get(from_id).snapshot
        target = self.get(to_id).snapshot if to_id else self.store.load_snapshot()
        return diff(source, target)
