#!/usr/bin/env python3
"""
Diff engine.

Computes structured change sets between two snapshots and applies them back.
Both directions are hash-indexed by EntryId, so cost is linear in the number of
entries on both sides.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional

from .errors import CorruptSnapshotError
from .snapshot import Entry, EntryId, ResourceSnapshot


@dataclass(frozen=True)
class EntryChange:
    """Before/after pair for a modified entry."""
    old: Entry
    new: Entry

    def inverted(self) -> "EntryChange":
        return EntryChange(old=self.new, new=self.old)


@dataclass
class ChangeSet:
    """
    Added/removed/modified mappings between a base and another snapshot.

    Every EntryId appears in at most one of the three mappings.
    """
    added: dict = field(default_factory=dict)      # EntryId -> Entry
    removed: dict = field(default_factory=dict)    # EntryId -> Entry
    modified: dict = field(default_factory=dict)   # EntryId -> EntryChange

    def __post_init__(self):
        overlap = (
            (self.added.keys() & self.removed.keys())
            | (self.added.keys() & self.modified.keys())
            | (self.removed.keys() & self.modified.keys())
        )
        if overlap:
            ids = ", ".join(str(i) for i in sorted(overlap))
            raise CorruptSnapshotError(f"Change set lists entries more than once: {ids}")

    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.modified)

    def __len__(self) -> int:
        return len(self.added) + len(self.removed) + len(self.modified)

    def ids(self) -> set:
        return set(self.added) | set(self.removed) | set(self.modified)

    def inverted(self) -> "ChangeSet":
        """Change set that undoes this one."""
        return ChangeSet(
            added=dict(self.removed),
            removed=dict(self.added),
            modified={k: v.inverted() for k, v in self.modified.items()},
        )

    def restricted(self, predicate: Callable[[EntryId], bool]) -> "ChangeSet":
        return ChangeSet(
            added={k: v for k, v in self.added.items() if predicate(k)},
            removed={k: v for k, v in self.removed.items() if predicate(k)},
            modified={k: v for k, v in self.modified.items() if predicate(k)},
        )

    def expected_before(self, entry_id: EntryId) -> Optional[Entry]:
        """The state an entry had before this change set was applied."""
        if entry_id in self.removed:
            return self.removed[entry_id]
        if entry_id in self.modified:
            return self.modified[entry_id].old
        return None

    def after(self, entry_id: EntryId) -> Optional[Entry]:
        """The state an entry has after this change set was applied."""
        if entry_id in self.added:
            return self.added[entry_id]
        if entry_id in self.modified:
            return self.modified[entry_id].new
        return None

    def summary(self) -> dict:
        return {
            "added": len(self.added),
            "removed": len(self.removed),
            "modified": len(self.modified),
        }

    def to_dict(self) -> dict:
        return {
            "added": [e.to_dict() for e in self.added.values()],
            "removed": [e.to_dict() for e in self.removed.values()],
            "modified": [
                {"old": c.old.to_dict(), "new": c.new.to_dict()}
                for c in self.modified.values()
            ],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChangeSet":
        added = [Entry.from_dict(d) for d in data.get("added", [])]
        removed = [Entry.from_dict(d) for d in data.get("removed", [])]
        modified = [
            EntryChange(Entry.from_dict(d["old"]), Entry.from_dict(d["new"]))
            for d in data.get("modified", [])
        ]
        return cls(
            added={e.id: e for e in added},
            removed={e.id: e for e in removed},
            modified={c.new.id: c for c in modified},
        )


def diff(base: ResourceSnapshot, other: ResourceSnapshot) -> ChangeSet:
    """
    Compute the change set that turns base into other.

    Args:
        base: Starting snapshot
        other: Target snapshot

    Returns:
        ChangeSet with entries in the order they appear in each snapshot
    """
    base_index = base.index()
    other_index = other.index()

    added = {}
    modified = {}
    for entry in other:
        previous = base_index.get(entry.id)
        if previous is None:
            added[entry.id] = entry
        elif not previous.same_content(entry):
            modified[entry.id] = EntryChange(old=previous, new=entry)

    removed = {e.id: e for e in base if e.id not in other_index}

    return ChangeSet(added=added, removed=removed, modified=modified)


def apply_changes(snapshot: ResourceSnapshot, changes: ChangeSet) -> ResourceSnapshot:
    """
    Apply a change set without checking preconditions.

    Modified entries keep their position, removed entries are dropped and added
    entries are appended in change set order. An added id that already exists is
    overwritten in place.
    """
    result = []
    for entry in snapshot:
        if entry.id in changes.removed:
            continue
        if entry.id in changes.modified:
            result.append(changes.modified[entry.id].new)
        elif entry.id in changes.added:
            result.append(changes.added[entry.id])
        else:
            result.append(entry)

    existing = set(snapshot.ids())
    for entry_id, entry in changes.added.items():
        if entry_id not in existing:
            result.append(entry)
    for entry_id, change in changes.modified.items():
        if entry_id not in existing:
            result.append(change.new)

    return snapshot.replace_entries(result)
