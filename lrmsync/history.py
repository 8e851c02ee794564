#!/usr/bin/env python3
"""
History ledger.

Append-only log of every sync, revert and restore, one JSON document per line.
Entries are never edited or removed: undoing an operation appends a new
'revert' entry whose change set is the inverse, and that inverse is applied
through the merge engine against the current state so that later edits to the
same entries come back as conflicts instead of being overwritten.
"""

import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from .diff import ChangeSet, apply_changes
from .errors import (
    AlreadyRevertedError,
    HistoryEntryNotFoundError,
    LedgerUnavailableError,
)
from .merge import MergeResult, merge
from .snapshot import Entry, EntryId, ResourceSnapshot

logger = logging.getLogger(__name__)


class OperationKind(Enum):
    PUSH = "push"
    PULL = "pull"
    REVERT = "revert"
    WEB_EDIT = "web-edit"
    RESTORE = "restore"


def new_history_id() -> str:
    return uuid.uuid4().hex[:8]


@dataclass(frozen=True)
class HistoryEntry:
    """
    Immutable record of one applied operation.

    Attributes:
        id: Short unique id (8 hex chars)
        kind: Operation kind
        timestamp: ISO-8601 UTC time of the append
        actor: Who performed it
        changes: ChangeSet that was applied
        revision: Revision of the snapshot the operation produced
        message: Optional free-text note
        source: Where the operation came from (cli, web, ci, repository)
        reverts: Id of the entry this one undoes (revert entries only)
    """
    id: str
    kind: OperationKind
    timestamp: str
    actor: str
    changes: ChangeSet = field(default_factory=ChangeSet)
    revision: str = ""
    message: Optional[str] = None
    source: str = "cli"
    reverts: Optional[str] = None

    @classmethod
    def create(
        cls,
        kind: OperationKind,
        actor: str,
        changes: ChangeSet,
        revision: str,
        message: Optional[str] = None,
        source: str = "cli",
        reverts: Optional[str] = None,
    ) -> "HistoryEntry":
        return cls(
            id=new_history_id(),
            kind=kind,
            timestamp=datetime.now(timezone.utc).isoformat(),
            actor=actor,
            changes=changes,
            revision=revision,
            message=message,
            source=source,
            reverts=reverts,
        )

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "kind": self.kind.value,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "revision": self.revision,
            "source": self.source,
            "summary": self.changes.summary(),
            "changes": self.changes.to_dict(),
        }
        if self.message:
            data["message"] = self.message
        if self.reverts:
            data["reverts"] = self.reverts
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "HistoryEntry":
        return cls(
            id=data["id"],
            kind=OperationKind(data["kind"]),
            timestamp=data["timestamp"],
            actor=data.get("actor", ""),
            changes=ChangeSet.from_dict(data.get("changes", {})),
            revision=data.get("revision", ""),
            message=data.get("message"),
            source=data.get("source", "cli"),
            reverts=data.get("reverts"),
        )


def _impose(snapshot: ResourceSnapshot, states: dict) -> ResourceSnapshot:
    """Copy of snapshot with the given ids forced to the given states (None = absent)."""
    entries = []
    for entry in snapshot:
        if entry.id in states:
            forced = states[entry.id]
            if forced is not None:
                entries.append(forced)
        else:
            entries.append(entry)
    existing = set(snapshot.ids())
    for entry_id, forced in states.items():
        if entry_id not in existing and forced is not None:
            entries.append(forced)
    return snapshot.replace_entries(entries)


class HistoryLedger:
    """
    JSON-lines ledger stored at `path`.

    Appends are a single write of one line followed by fsync, so ledgers of
    different working copies never need a lock of their own.
    """

    def __init__(self, path: str):
        self.path = Path(path)

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        """
        Append an entry.

        Raises:
            LedgerUnavailableError: the ledger file cannot be written
        """
        line = json.dumps(entry.to_dict(), ensure_ascii=False) + "\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise LedgerUnavailableError(f"Cannot append to history ledger {self.path}: {e}")
        logger.info("Recorded %s %s (revision %s)", entry.kind.value, entry.id, entry.revision)
        return entry

    def entries(self) -> list[HistoryEntry]:
        """All entries, oldest first."""
        if not self.path.exists():
            return []
        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise LedgerUnavailableError(f"Cannot read history ledger {self.path}: {e}")

        result = []
        for line_num, line in enumerate(lines, 1):
            if not line.strip():
                continue
            try:
                result.append(HistoryEntry.from_dict(json.loads(line)))
            except (ValueError, KeyError) as e:
                raise LedgerUnavailableError(f"{self.path}:{line_num}: unreadable history entry: {e}")
        return result

    def tail(self, limit: int = 20) -> list[HistoryEntry]:
        """Most recent entries, newest first."""
        return list(reversed(self.entries()))[:limit]

    def get(self, entry_id: str) -> HistoryEntry:
        for entry in self.entries():
            if entry.id == entry_id:
                return entry
        raise HistoryEntryNotFoundError(f"History entry '{entry_id}' not found")

    def is_reverted(self, entry_id: str) -> bool:
        return any(
            e.kind is OperationKind.REVERT and e.reverts == entry_id
            for e in self.entries()
        )

    def compute_inverse(self, entry_id: str) -> ChangeSet:
        """Change set undoing the referenced entry: added/removed swapped, modified flipped."""
        return self.get(entry_id).changes.inverted()

    def revert(self, entry_id: str, current: ResourceSnapshot) -> MergeResult:
        """
        Propose the inverse of an entry against the current snapshot.

        The base of the merge is the current snapshot with every affected entry
        put back to the state the reverted operation left it in; 'theirs' is that
        base with the inverse applied. Entries edited since then differ from the
        base on our side too and turn into conflicts.

        Args:
            entry_id: History entry to undo
            current: Current snapshot of the copy the revert applies to

        Returns:
            MergeResult with ours = current

        Raises:
            HistoryEntryNotFoundError: unknown id
            AlreadyRevertedError: a revert entry for this id already exists
        """
        entry = self.get(entry_id)
        if self.is_reverted(entry_id):
            raise AlreadyRevertedError(f"History entry '{entry_id}' has already been reverted")

        changes = entry.changes
        after_states: dict[EntryId, Optional[Entry]] = {
            entry_id_: changes.after(entry_id_) for entry_id_ in changes.ids()
        }
        base = _impose(current, after_states)
        proposed = apply_changes(base, changes.inverted())
        return merge(base, current, proposed)
