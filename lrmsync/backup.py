#!/usr/bin/env python3
"""
Automatic pre-operation backups.

Before a pull or restore touches the working copy, the full local state is
archived to a zip file addressed by its UTC timestamp. Backups are kept until an
external cleanup removes them; restoring one writes it straight back, which is
the escape hatch when the merge/revert path itself cannot be used.
"""

import json
import logging
import zipfile
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Union

from .diff import ChangeSet, diff
from .errors import BackupNotFoundError, CorruptSnapshotError
from .snapshot import ResourceSnapshot
from .storage import LocalStore, atomic_write_json, read_json

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"
SNAPSHOT_MEMBER = "snapshot.json"
METADATA_MEMBER = "backup-metadata.json"


@dataclass(frozen=True)
class BackupHandle:
    """Address of one archived working-copy state."""
    id: str
    operation: str
    created_at: str
    path: str
    revision: str
    entry_count: int

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "BackupHandle":
        return cls(**data)


class BackupManager:
    """Writes and reads backup archives under `directory`."""

    def __init__(self, store: LocalStore, directory: str):
        self.store = store
        self.directory = Path(directory)
        self.index_path = self.directory / INDEX_FILE

    def _load_index(self) -> list[BackupHandle]:
        if not self.index_path.exists():
            return []
        data = read_json(self.index_path)
        return [BackupHandle.from_dict(item) for item in data.get("backups", [])]

    def _save_index(self, handles: list[BackupHandle]) -> None:
        atomic_write_json(self.index_path, {
            "version": 1,
            "backups": [h.to_dict() for h in handles],
        })

    def capture_before(self, operation: str) -> BackupHandle:
        """
        Archive the current working copy before `operation` mutates it.

        Args:
            operation: Name of the operation about to run (pull, restore, ...)

        Returns:
            BackupHandle for the new archive
        """
        snapshot = self.store.load_snapshot()
        now = datetime.now(timezone.utc)
        backup_id = f"{operation}-backup-{now.strftime('%Y%m%d-%H%M%S-%f')}"
        archive_path = self.directory / f"{backup_id}.zip"
        self.directory.mkdir(parents=True, exist_ok=True)

        handle = BackupHandle(
            id=backup_id,
            operation=operation,
            created_at=now.isoformat(),
            path=str(archive_path),
            revision=snapshot.revision,
            entry_count=len(snapshot),
        )

        temp_path = archive_path.with_suffix(".zip.tmp")
        with zipfile.ZipFile(temp_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            archive.writestr(SNAPSHOT_MEMBER, json.dumps(snapshot.to_dict(), ensure_ascii=False))
            archive.writestr(METADATA_MEMBER, json.dumps({
                **handle.to_dict(),
                "working_copy": self.store.identity,
            }, indent=2))
        temp_path.replace(archive_path)

        handles = self._load_index()
        handles.append(handle)
        self._save_index(handles)
        logger.info("Backed up working copy before %s: %s", operation, archive_path.name)
        return handle

    def list(self) -> list[BackupHandle]:
        """All backups, newest first."""
        return sorted(self._load_index(), key=lambda h: h.created_at, reverse=True)

    def get(self, backup_id: str) -> BackupHandle:
        for handle in self._load_index():
            if handle.id == backup_id:
                return handle
        raise BackupNotFoundError(f"Backup '{backup_id}' not found")

    def load(self, backup: Union[str, BackupHandle]) -> ResourceSnapshot:
        handle = backup if isinstance(backup, BackupHandle) else self.get(backup)
        path = Path(handle.path)
        if not path.exists():
            raise BackupNotFoundError(f"Backup archive missing: {path}")
        try:
            with zipfile.ZipFile(path) as archive:
                data = json.loads(archive.read(SNAPSHOT_MEMBER).decode("utf-8"))
        except (zipfile.BadZipFile, KeyError, ValueError) as e:
            raise CorruptSnapshotError(f"Unreadable backup archive {path}: {e}")
        return ResourceSnapshot.from_dict(data)

    def restore(self, backup: Union[str, BackupHandle]) -> ResourceSnapshot:
        """Write an archived state straight back to the working copy."""
        snapshot = self.load(backup)
        self.store.save_snapshot(snapshot)
        logger.info("Restored working copy from backup (revision %s)", snapshot.revision)
        return snapshot

    def discard(self, backup: BackupHandle) -> None:
        """Drop an archive taken for an operation that was cancelled before applying."""
        handles = [h for h in self._load_index() if h.id != backup.id]
        self._save_index(handles)
        Path(backup.path).unlink(missing_ok=True)
        logger.info("Discarded backup %s", backup.id)

    def info(self, backup: Union[str, BackupHandle]) -> dict:
        """Handle fields plus the archive's own metadata and size."""
        handle = backup if isinstance(backup, BackupHandle) else self.get(backup)
        path = Path(handle.path)
        if not path.exists():
            raise BackupNotFoundError(f"Backup archive missing: {path}")
        try:
            with zipfile.ZipFile(path) as archive:
                metadata = json.loads(archive.read(METADATA_MEMBER).decode("utf-8"))
        except (zipfile.BadZipFile, KeyError, ValueError) as e:
            raise CorruptSnapshotError(f"Unreadable backup archive {path}: {e}")
        snapshot = self.load(handle)
        return {
            **handle.to_dict(),
            "working_copy": metadata.get("working_copy"),
            "languages": snapshot.languages(),
            "size_bytes": path.stat().st_size,
        }

    def diff(self, backup: Union[str, BackupHandle]) -> ChangeSet:
        """Changes from the archived state to the current working copy."""
        return diff(self.load(backup), self.store.load_snapshot())
