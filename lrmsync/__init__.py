"""
lrmsync - three-way merge synchronization for localization resources

Keeps a local working copy of localization entries in step with a remote
(cloud API, shared folder or repository checkout). Changes on both sides are
merged against the last synchronized state; divergent edits to the same entry
become explicit conflicts instead of being overwritten.

Quick start:
    lrm-sync init --remote-dir ../shared/strings
    lrm-sync pull
    lrm-sync push --message "Add checkout strings"
    lrm-sync log
    lrm-sync revert <history-id>
"""

__version__ = "1.0.0"

from .diff import ChangeSet, EntryChange, apply_changes, diff
from .errors import LrmSyncError, UnresolvedConflictsError
from .merge import Conflict, ConflictKind, ConflictState, MergeResult, merge
from .resolver import AcceptLocal, AcceptRemote, Prompt, TakeCustom, TakeLocal, TakeRemote, resolve
from .snapshot import Entry, EntryId, ResourceSnapshot
from .sync import CancelToken, SyncOrchestrator, SyncOutcome, SyncScope

__all__ = [
    "Entry",
    "EntryId",
    "ResourceSnapshot",
    "ChangeSet",
    "EntryChange",
    "diff",
    "apply_changes",
    "merge",
    "MergeResult",
    "Conflict",
    "ConflictKind",
    "ConflictState",
    "resolve",
    "AcceptLocal",
    "AcceptRemote",
    "Prompt",
    "TakeLocal",
    "TakeRemote",
    "TakeCustom",
    "SyncOrchestrator",
    "SyncOutcome",
    "SyncScope",
    "CancelToken",
    "LrmSyncError",
    "UnresolvedConflictsError",
]
