#!/usr/bin/env python3
"""
Sync orchestrator.

Drives push, pull, revert and restore for one working copy:

    IDLE -> FETCHING -> MERGING -> (CONFLICTED | APPLYING) -> IDLE

Every mutating operation holds the working-copy lock from the baseline read to
the baseline write, so no other operation can observe or move the baseline in
between. Conflicts without a resolution strategy stop the run in CONFLICTED
before anything is written; the caller re-invokes with a strategy.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from .backup import BackupHandle, BackupManager
from .diff import ChangeSet, diff
from .errors import OperationCancelledError
from .history import HistoryEntry, HistoryLedger, OperationKind
from .locking import WorkingCopyLock
from .merge import MergeResult, merge
from .resolver import Strategy, close
from .snapshot import EntryId, ResourceSnapshot
from .snapshots import SnapshotManager
from .storage import LocalStore
from .transport import RemoteEndpoint

logger = logging.getLogger(__name__)


class SyncPhase(Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    MERGING = "merging"
    CONFLICTED = "conflicted"
    APPLYING = "applying"


class SyncScope(Enum):
    """Entry namespace a run covers. CONFIG and ENTRIES are disjoint."""
    ALL = "all"
    ENTRIES = "entries"
    CONFIG = "config"

    def includes(self, entry_id: EntryId) -> bool:
        if self is SyncScope.ALL:
            return True
        if self is SyncScope.CONFIG:
            return entry_id.is_config()
        return not entry_id.is_config()


@dataclass(frozen=True)
class EntrySelection:
    """Explicit set of entry ids a run is limited to; used like a SyncScope."""
    ids: frozenset

    def includes(self, entry_id: EntryId) -> bool:
        return entry_id in self.ids


class CancelToken:
    """Set from any thread; honoured up to the moment writes begin."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class SyncOutcome:
    """
    Result of one orchestrated operation.

    status is one of: ok, up-to-date, conflicted, dry-run. stage names the
    merge that conflicted when an operation has more than one (revert).
    """
    operation: str
    status: str
    merge: Optional[MergeResult] = None
    local_changes: ChangeSet = field(default_factory=ChangeSet)
    remote_changes: ChangeSet = field(default_factory=ChangeSet)
    history_entry: Optional[HistoryEntry] = None
    backup: Optional[BackupHandle] = None
    revision: Optional[str] = None
    stage: Optional[str] = None

    @property
    def conflicts(self) -> list:
        return self.merge.unresolved if self.merge else []

    def to_dict(self) -> dict:
        data = {
            "status": self.status,
            "operation": self.operation,
            "local_changes": self.local_changes.summary(),
            "remote_changes": self.remote_changes.summary(),
        }
        if self.merge is not None:
            data["merge"] = self.merge.summary()
            data["conflicts"] = [c.to_dict() for c in self.merge.conflicts]
        if self.history_entry is not None:
            data["history_id"] = self.history_entry.id
        if self.backup is not None:
            data["backup"] = self.backup.id
        if self.revision:
            data["revision"] = self.revision
        if self.stage:
            data["stage"] = self.stage
        return data


def _restrict(snapshot: ResourceSnapshot, scope) -> ResourceSnapshot:
    if scope is SyncScope.ALL:
        return snapshot
    return snapshot.filter(scope.includes)


def _combine(outside: ResourceSnapshot, inside: ResourceSnapshot, scope) -> ResourceSnapshot:
    """
    `outside` with its in-scope entries swapped for `inside`.

    Out-of-scope entries keep their positions; the in-scope slots are filled in
    `inside` order and any extra in-scope entries are appended.
    """
    if scope is SyncScope.ALL:
        return inside
    incoming = iter(inside)
    entries = []
    for entry in outside:
        if not scope.includes(entry.id):
            entries.append(entry)
            continue
        replacement = next(incoming, None)
        if replacement is not None:
            entries.append(replacement)
    entries.extend(incoming)
    return outside.replace_entries(entries)


class SyncOrchestrator:
    """
    Push/pull/revert/restore driver for one working copy.

    Args:
        store: Local storage collaborator (owns working copy and baseline)
        remote: Remote endpoint (cloud, repository checkout, shared folder)
        ledger: History ledger
        backups: Backup manager; pulls and restores refuse to run without one
        snapshots: Named snapshot manager (needed for restore_snapshot)
        actor: Identity recorded in history
        source: Origin recorded in history (cli, web, ci, repository)
        lock_path: Lock file; None keeps the lock in-process only
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteEndpoint,
        ledger: HistoryLedger,
        backups: Optional[BackupManager] = None,
        snapshots: Optional[SnapshotManager] = None,
        actor: str = "unknown",
        source: str = "cli",
        lock_path: Optional[Path] = None,
    ):
        self.store = store
        self.remote = remote
        self.ledger = ledger
        self.backups = backups
        self.snapshots = snapshots
        self.actor = actor
        self.source = source
        self.lock_path = lock_path
        self.phase = SyncPhase.IDLE
        self.last_result: Optional[MergeResult] = None

    def _enter(self, phase: SyncPhase) -> None:
        logger.debug("%s: %s -> %s", self.store.identity, self.phase.value, phase.value)
        self.phase = phase

    def _lock(self, operation: str) -> WorkingCopyLock:
        return WorkingCopyLock(self.store.identity, self.lock_path, operation=operation)

    def _fetch(self, scope: SyncScope):
        self._enter(SyncPhase.FETCHING)
        base = self.store.load_baseline_snapshot()
        local = self.store.load_snapshot()
        remote, remote_revision = self.remote.fetch_snapshot()
        return base, local, remote, remote_revision

    def _merge(self, base, ours, theirs, strategy: Optional[Strategy], replace_ours: bool = False) -> MergeResult:
        """Merge and close conflicts; leaves phase CONFLICTED if some stay open."""
        self._enter(SyncPhase.MERGING)
        result = merge(base, ours, theirs, replace_ours=replace_ours)
        if result.conflicts and strategy is not None:
            result = close(result, strategy)
        self.last_result = result
        if result.has_conflicts:
            self._enter(SyncPhase.CONFLICTED)
            logger.info("%d unresolved conflict(s); nothing written", len(result.unresolved))
        return result

    def _check_cancel(self, cancel: Optional[CancelToken], backup: Optional[BackupHandle] = None) -> None:
        """Raise if cancelled, dropping a backup taken for this run first."""
        if cancel is not None and cancel.cancelled:
            if backup is not None:
                self._require_backups().discard(backup)
            raise OperationCancelledError("Operation cancelled before any write")

    def _require_backups(self) -> BackupManager:
        if self.backups is None:
            raise RuntimeError("A BackupManager is required for operations that modify the working copy")
        return self.backups

    def _reconcile(
        self,
        operation: OperationKind,
        base: ResourceSnapshot,
        local: ResourceSnapshot,
        remote: ResourceSnapshot,
        remote_revision: str,
        ours: ResourceSnapshot,
        strategy: Optional[Strategy],
        scope,
        dry_run: bool,
        message: Optional[str],
        cancel: Optional[CancelToken],
        backup: Optional[BackupHandle] = None,
        reverts: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> SyncOutcome:
        """
        Shared merge-and-apply path. `ours` is the local side proposed for merging.

        scope is a SyncScope or an EntrySelection; entries outside it are carried
        through untouched on both sides.
        """
        result = self._merge(
            _restrict(base, scope),
            _restrict(ours, scope),
            _restrict(remote, scope),
            strategy,
        )
        if result.has_conflicts:
            return SyncOutcome(operation.value, "conflicted", merge=result, backup=backup, stage=stage)

        new_local = _combine(local, result.merged, scope)
        new_remote = _combine(remote, result.merged, scope)
        if operation is OperationKind.PULL:
            # Pull only brings remote changes down; local-only edits wait for a push.
            new_remote = remote

        local_changes = diff(local, new_local)
        remote_changes = diff(remote, new_remote)

        if dry_run:
            self._enter(SyncPhase.IDLE)
            return SyncOutcome(
                operation.value, "dry-run", merge=result,
                local_changes=local_changes, remote_changes=remote_changes,
            )

        self._check_cancel(cancel, backup)
        self._enter(SyncPhase.APPLYING)

        revision = remote_revision
        if not remote_changes.is_empty():
            revision = self.remote.push_snapshot(new_remote)
        # Entry order counts here even though diff ignores it.
        local_written = not local_changes.is_empty() or new_local.ids() != local.ids()
        if local_written:
            self.store.save_snapshot(new_local)

        # The remote state just merged becomes the common ancestor. Local edits a
        # pull kept (including conflicts resolved to local) then show up as
        # one-sided changes on the next push.
        new_base = _combine(base, _restrict(new_remote, scope), scope)
        base_revision = revision if scope is SyncScope.ALL else new_base.revision
        self.store.save_baseline(base_revision, new_base)

        recorded = remote_changes if operation is not OperationKind.PULL else local_changes
        entry = None
        if not recorded.is_empty():
            produced = revision if operation is not OperationKind.PULL else new_local.revision
            entry = self.ledger.append(HistoryEntry.create(
                kind=operation,
                actor=self.actor,
                changes=recorded,
                revision=produced,
                message=message,
                source=self.source,
                reverts=reverts,
            ))

        self._enter(SyncPhase.IDLE)
        status = "ok" if entry is not None or local_written else "up-to-date"
        logger.info(
            "%s finished: %s (local %s, remote %s)",
            operation.value, status, local_changes.summary(), remote_changes.summary(),
        )
        return SyncOutcome(
            operation.value, status, merge=result,
            local_changes=local_changes, remote_changes=remote_changes,
            history_entry=entry, backup=backup, revision=base_revision,
        )

    def _guarded(self, operation: str, dry_run: bool, run):
        """Run under the lock (dry runs skip it); phase returns to IDLE on error."""
        try:
            if dry_run:
                return run()
            with self._lock(operation):
                return run()
        except BaseException:
            self._enter(SyncPhase.IDLE)
            raise

    def push(
        self,
        strategy: Optional[Strategy] = None,
        scope: SyncScope = SyncScope.ALL,
        dry_run: bool = False,
        message: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> SyncOutcome:
        """
        Merge local changes into the remote.

        base = baseline, ours = working copy, theirs = remote. On success the
        merged snapshot is pushed in one request, the working copy is updated to
        match, a push entry is appended and the baseline advances.
        """
        def run():
            base, local, remote, remote_revision = self._fetch(scope)
            self._check_cancel(cancel)
            return self._reconcile(
                OperationKind.PUSH, base, local, remote, remote_revision,
                ours=local, strategy=strategy, scope=scope, dry_run=dry_run,
                message=message, cancel=cancel,
            )
        return self._guarded("push", dry_run, run)

    def pull(
        self,
        strategy: Optional[Strategy] = None,
        scope: SyncScope = SyncScope.ALL,
        dry_run: bool = False,
        message: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> SyncOutcome:
        """
        Merge remote changes into the working copy.

        A backup of the working copy is taken right after the fetch, before any
        local mutation. Local-only edits are kept and left for the next push.
        """
        def run():
            base, local, remote, remote_revision = self._fetch(scope)
            self._check_cancel(cancel)
            backup = None
            if not dry_run:
                backup = self._require_backups().capture_before("pull")
            return self._reconcile(
                OperationKind.PULL, base, local, remote, remote_revision,
                ours=local, strategy=strategy, scope=scope, dry_run=dry_run,
                message=message, cancel=cancel, backup=backup,
            )
        return self._guarded("pull", dry_run, run)

    def revert(
        self,
        entry_id: str,
        strategy: Optional[Strategy] = None,
        dry_run: bool = False,
        message: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
        remote_strategy: Optional[Strategy] = None,
    ) -> SyncOutcome:
        """
        Undo a history entry.

        Two merges run. The "proposal" stage puts the inverse change set against
        the current working copy, so entries edited since come back as
        conflicts. The "remote" stage then pushes the proposal through the same
        merge path as any other change, limited to the entries the reverted
        operation touched: other unpushed local edits stay local and are not
        recorded in the revert entry. The ledger gains a new revert entry; the
        reverted entry itself is never touched.

        Args:
            entry_id: History entry to undo
            strategy: Closes proposal-stage conflicts (local = keep the current
                working copy, remote = take the reverted state)
            dry_run: Compute only
            message: Note recorded in history
            cancel: Cancellation token
            remote_strategy: Closes remote-stage conflicts (local = the revert,
                remote = the remote's current state). Left open when None.

        Returns:
            SyncOutcome; a conflicted outcome names the stage in `stage`
        """
        def run():
            base, local, remote, remote_revision = self._fetch(SyncScope.ALL)
            self._enter(SyncPhase.MERGING)
            proposal = self.ledger.revert(entry_id, local)
            if proposal.conflicts and strategy is not None:
                proposal = close(proposal, strategy)
            self.last_result = proposal
            if proposal.has_conflicts:
                self._enter(SyncPhase.CONFLICTED)
                return SyncOutcome("revert", "conflicted", merge=proposal, stage="proposal")

            selection = EntrySelection(frozenset(self.ledger.compute_inverse(entry_id).ids()))
            self._check_cancel(cancel)
            backup = None
            if not dry_run:
                backup = self._require_backups().capture_before("revert")
            return self._reconcile(
                OperationKind.REVERT, base, local, remote, remote_revision,
                ours=proposal.merged, strategy=remote_strategy, scope=selection,
                dry_run=dry_run, message=message or f"Revert {entry_id}",
                cancel=cancel, backup=backup, reverts=entry_id, stage="remote",
            )
        return self._guarded("revert", dry_run, run)

    def restore_snapshot(
        self,
        snapshot_id: str,
        strategy: Optional[Strategy] = None,
        dry_run: bool = False,
        message: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> SyncOutcome:
        """
        Propose a named snapshot as 'theirs' against the working copy.

        base is the baseline. Entries unchanged since the last sync take the
        snapshot's state; local edits made since then that the snapshot
        disagrees with come back as conflicts rather than being dropped. Only
        the working copy is written; the baseline stays where it is until the
        next push or pull.
        """
        if self.snapshots is None:
            raise RuntimeError("A SnapshotManager is required to restore snapshots")

        def run():
            self._enter(SyncPhase.FETCHING)
            base = self.store.load_baseline_snapshot()
            local = self.store.load_snapshot()
            stored = self.snapshots.restore(snapshot_id)
            self._check_cancel(cancel)

            result = self._merge(base, local, stored, strategy, replace_ours=True)
            if result.has_conflicts:
                return SyncOutcome("restore", "conflicted", merge=result)

            local_changes = diff(local, result.merged)
            if dry_run:
                self._enter(SyncPhase.IDLE)
                return SyncOutcome("restore", "dry-run", merge=result, local_changes=local_changes)

            backup = self._require_backups().capture_before("restore")
            self._check_cancel(cancel, backup)
            self._enter(SyncPhase.APPLYING)
            entry = None
            written = not local_changes.is_empty() or result.merged.ids() != local.ids()
            if written:
                self.store.save_snapshot(result.merged)
            if not local_changes.is_empty():
                entry = self.ledger.append(HistoryEntry.create(
                    kind=OperationKind.RESTORE,
                    actor=self.actor,
                    changes=local_changes,
                    revision=result.merged.revision,
                    message=message or f"Restore snapshot {snapshot_id}",
                    source=self.source,
                ))
            self._enter(SyncPhase.IDLE)
            return SyncOutcome(
                "restore", "ok" if written else "up-to-date", merge=result,
                local_changes=local_changes, history_entry=entry, backup=backup,
                revision=result.merged.revision,
            )
        return self._guarded("restore", dry_run, run)

    def restore_backup(self, backup_id: str, message: Optional[str] = None) -> SyncOutcome:
        """Write an archived working copy straight back (emergency path, no merge)."""
        backups = self._require_backups()

        def run():
            self._enter(SyncPhase.APPLYING)
            local = self.store.load_snapshot()
            # Unknown or unreadable archives fail here, before the safety backup.
            backups.load(backup_id)
            safety = backups.capture_before("restore")
            restored = backups.restore(backup_id)
            changes = diff(local, restored)
            entry = None
            if not changes.is_empty():
                entry = self.ledger.append(HistoryEntry.create(
                    kind=OperationKind.RESTORE,
                    actor=self.actor,
                    changes=changes,
                    revision=restored.revision,
                    message=message or f"Restore backup {backup_id}",
                    source=self.source,
                ))
            self._enter(SyncPhase.IDLE)
            return SyncOutcome(
                "restore", "ok" if entry else "up-to-date",
                local_changes=changes, history_entry=entry, backup=safety,
                revision=restored.revision,
            )
        return self._guarded("restore", False, run)

    def status(self, scope: SyncScope = SyncScope.ALL) -> dict:
        """Pending changes on each side since the baseline. No lock, no writes."""
        base, local, remote, remote_revision = self._fetch(scope)
        self._enter(SyncPhase.IDLE)
        base, local, remote = (_restrict(s, scope) for s in (base, local, remote))
        local_changes = diff(base, local)
        remote_changes = diff(base, remote)
        conflicts = merge(base, local, remote).conflicts
        return {
            "status": "ok",
            "baseline": self.store.load_baseline(),
            "local_revision": local.revision,
            "remote_revision": remote_revision,
            "in_sync": local.same_content(remote),
            "local_changes": local_changes.summary(),
            "remote_changes": remote_changes.summary(),
            "pending_conflicts": len(conflicts),
        }
