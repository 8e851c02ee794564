#!/usr/bin/env python3
"""
Three-way merge engine.

Given a common ancestor (base) and two independently edited copies (ours and
theirs), every entry identity is classified on its own:

    neither side changed      -> keep base
    one side changed          -> adopt that side (auto-merge)
    both changed, same result -> adopt it
    both changed, different   -> Conflict, merged copy keeps base provisionally

"Absent" is a state of its own, so an entry deleted on one side and edited on
the other is a conflict, and two different additions of the same id are too.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from .diff import ChangeSet, diff
from .snapshot import Entry, EntryId, ResourceSnapshot, same_content


class ConflictKind(Enum):
    BOTH_MODIFIED = "both-modified"
    BOTH_ADDED = "both-added"
    DELETED_LOCALLY = "deleted-locally-modified-remotely"
    DELETED_REMOTELY = "modified-locally-deleted-remotely"


class ConflictState(Enum):
    UNRESOLVED = "unresolved"
    RESOLVED_LOCAL = "resolved-local"
    RESOLVED_REMOTE = "resolved-remote"
    RESOLVED_CUSTOM = "resolved-custom"


@dataclass(frozen=True)
class Conflict:
    """
    One entry changed differently on both sides.

    Attributes:
        id: Entry identity
        base: Common ancestor value (None if absent)
        ours: Local value (None if deleted/absent)
        theirs: Remote value (None if deleted/absent)
        kind: Shape of the disagreement
        state: Resolution state
        resolution: Entry chosen by the resolution (None means delete)
    """
    id: EntryId
    base: Optional[Entry]
    ours: Optional[Entry]
    theirs: Optional[Entry]
    kind: ConflictKind
    state: ConflictState = ConflictState.UNRESOLVED
    resolution: Optional[Entry] = None

    @property
    def is_resolved(self) -> bool:
        return self.state is not ConflictState.UNRESOLVED

    def resolved(self, state: ConflictState, entry: Optional[Entry]) -> "Conflict":
        return replace(self, state=state, resolution=entry)

    def to_dict(self) -> dict:
        def value(entry: Optional[Entry]) -> Optional[dict]:
            if entry is None:
                return None
            return {"value": entry.value, "comment": entry.comment}

        data = {
            "id": self.id.to_dict(),
            "kind": self.kind.value,
            "state": self.state.value,
            "base": value(self.base),
            "local": value(self.ours),
            "remote": value(self.theirs),
        }
        if self.is_resolved:
            data["resolution"] = value(self.resolution)
        return data


@dataclass
class MergeResult:
    """Outcome of a three-way merge. Final only once every conflict is closed."""
    base: ResourceSnapshot
    ours: ResourceSnapshot
    theirs: ResourceSnapshot
    merged: ResourceSnapshot
    auto_merged: list = field(default_factory=list)   # EntryIds taken from one side
    conflicts: list = field(default_factory=list)     # Conflict
    order: list = field(default_factory=list)         # EntryIds of the union, in merged order

    @property
    def unresolved(self) -> list[Conflict]:
        return [c for c in self.conflicts if not c.is_resolved]

    @property
    def has_conflicts(self) -> bool:
        return bool(self.unresolved)

    @property
    def is_final(self) -> bool:
        return not self.unresolved

    def conflict_for(self, entry_id: EntryId) -> Optional[Conflict]:
        for conflict in self.conflicts:
            if conflict.id == entry_id:
                return conflict
        return None

    def changes_for_ours(self) -> ChangeSet:
        """What applying the merged snapshot does to the local copy."""
        return diff(self.ours, self.merged)

    def changes_for_theirs(self) -> ChangeSet:
        """What applying the merged snapshot does to the remote copy."""
        return diff(self.theirs, self.merged)

    def summary(self) -> dict:
        return {
            "auto_merged": len(self.auto_merged),
            "conflicts": len(self.conflicts),
            "unresolved": len(self.unresolved),
        }


def _classify(base, ours, theirs) -> ConflictKind:
    if ours is None:
        return ConflictKind.DELETED_LOCALLY
    if theirs is None:
        return ConflictKind.DELETED_REMOTELY
    if base is None:
        return ConflictKind.BOTH_ADDED
    return ConflictKind.BOTH_MODIFIED


def _union_ids(*snapshots: ResourceSnapshot) -> list[EntryId]:
    """Ids in first-snapshot order, then ids only the later ones hold."""
    ordered: dict[EntryId, None] = {}
    for snapshot in snapshots:
        for entry_id in snapshot.ids():
            ordered.setdefault(entry_id, None)
    return list(ordered)


def merge(
    base: ResourceSnapshot,
    ours: ResourceSnapshot,
    theirs: ResourceSnapshot,
    replace_ours: bool = False,
) -> MergeResult:
    """
    Three-way merge of two snapshots against their common ancestor.

    Merged order is ours order followed by theirs-only entries, unless ours is
    identical to base (content and order), in which case theirs order is used.

    Args:
        base: Common ancestor (the baseline)
        ours: Local copy
        theirs: Remote copy
        replace_ours: theirs is a proposal meant to replace ours (snapshot
            restore). Changes only ours made since base are then reported as
            conflicts instead of being kept. Merged order follows theirs.

    Returns:
        MergeResult; conflicting entries are reported, never decided here
    """
    base_index = base.index()
    ours_index = ours.index()
    theirs_index = theirs.index()

    merged: list[Entry] = []
    auto_merged: list[EntryId] = []
    conflicts: list[Conflict] = []

    # A side that is still an exact copy of base takes the other side's order.
    if replace_ours or (ours.same_content(base) and ours.ids() == base.ids()):
        order = (theirs, ours, base)
    else:
        order = (ours, theirs, base)

    union = _union_ids(*order)
    for entry_id in union:
        b = base_index.get(entry_id)
        o = ours_index.get(entry_id)
        t = theirs_index.get(entry_id)

        ours_changed = not same_content(o, b)
        theirs_changed = not same_content(t, b)

        if not ours_changed and not theirs_changed:
            chosen = b
        elif ours_changed and not theirs_changed and not replace_ours:
            chosen = o
            auto_merged.append(entry_id)
        elif theirs_changed and not ours_changed:
            chosen = t
            auto_merged.append(entry_id)
        elif same_content(o, t):
            chosen = o
        else:
            conflicts.append(Conflict(
                id=entry_id,
                base=b,
                ours=o,
                theirs=t,
                kind=_classify(b, o, t),
            ))
            chosen = b

        if chosen is not None:
            merged.append(chosen)

    return MergeResult(
        base=base,
        ours=ours,
        theirs=theirs,
        merged=ours.replace_entries(merged),
        auto_merged=auto_merged,
        conflicts=conflicts,
        order=union,
    )
