#!/usr/bin/env python3
"""
Tests for the sync orchestrator.

Every test wires a real working copy and a directory remote under tmp_path,
so push/pull/revert/restore are exercised end to end on disk.
"""

import threading

import pytest

from lrmsync.backup import BackupManager
from lrmsync.errors import (
    AlreadyRevertedError,
    BackupNotFoundError,
    ConcurrentOperationError,
    OperationCancelledError,
    SyncUnavailableError,
)
from lrmsync.history import HistoryLedger, OperationKind
from lrmsync.locking import WorkingCopyLock, is_locked
from lrmsync.resolver import AcceptLocal, AcceptRemote, Prompt, TakeCustom
from lrmsync.snapshot import EntryId, ResourceSnapshot
from lrmsync.snapshots import SnapshotManager
from lrmsync.storage import FileWorkingCopy
from lrmsync.sync import CancelToken, SyncOrchestrator, SyncPhase, SyncScope
from lrmsync.transport import DirectoryRemote

GREETING = EntryId("Greeting", "en")
NAME = EntryId("Name", "en")
LANG = EntryId("@config.lang", "en")


def _snap(values):
    return ResourceSnapshot.from_mapping(values)


def _values(snapshot):
    return {e.key: e.value for e in snapshot}


def make_orchestrator(tmp_path, remote=None):
    project = tmp_path / "project"
    remote_dir = tmp_path / "remote"
    remote_dir.mkdir(exist_ok=True)
    store = FileWorkingCopy(str(project))
    return SyncOrchestrator(
        store=store,
        remote=remote or DirectoryRemote(str(remote_dir)),
        ledger=HistoryLedger(str(store.state_dir / "history.jsonl")),
        backups=BackupManager(store, str(store.state_dir / "backups")),
        snapshots=SnapshotManager(store, str(store.state_dir / "snapshots")),
        actor="alice",
        lock_path=store.state_dir / "sync.lock",
    )


@pytest.fixture
def orchestrator(tmp_path):
    return make_orchestrator(tmp_path)


@pytest.fixture
def synced(orchestrator):
    """Working copy and remote both at {Greeting: Hi}."""
    orchestrator.store.save_snapshot(_snap({"Greeting": "Hi"}))
    orchestrator.push()
    return orchestrator


def _remote_values(orchestrator):
    return _values(orchestrator.remote.fetch_snapshot()[0])


def _edit_remote(orchestrator, values):
    """Someone else pushed to the remote."""
    orchestrator.remote.push_snapshot(_snap(values))


def test_first_push_publishes_working_copy(orchestrator):
    orchestrator.store.save_snapshot(_snap({"Greeting": "Hi"}))

    outcome = orchestrator.push(message="initial")

    assert outcome.status == "ok"
    assert _remote_values(orchestrator) == {"Greeting": "Hi"}
    assert outcome.remote_changes.summary() == {"added": 1, "removed": 0, "modified": 0}
    entry = orchestrator.ledger.get(outcome.history_entry.id)
    assert entry.kind is OperationKind.PUSH
    assert entry.message == "initial"
    assert orchestrator.store.load_baseline() == outcome.revision
    assert orchestrator.phase is SyncPhase.IDLE


def test_push_without_changes_is_up_to_date(synced):
    outcome = synced.push()
    assert outcome.status == "up-to-date"
    assert outcome.history_entry is None
    assert len(synced.ledger.entries()) == 1


def test_pull_applies_remote_change_with_backup(synced):
    _edit_remote(synced, {"Greeting": "Hello"})

    outcome = synced.pull()

    assert outcome.status == "ok"
    assert _values(synced.store.load_snapshot()) == {"Greeting": "Hello"}
    assert outcome.backup is not None
    assert synced.backups.load(outcome.backup).same_content(_snap({"Greeting": "Hi"}))
    assert synced.ledger.tail(1)[0].kind is OperationKind.PULL
    assert synced.store.load_baseline_snapshot().same_content(_snap({"Greeting": "Hello"}))


def test_pull_keeps_local_edits_for_next_push(synced):
    synced.store.save_snapshot(_snap({"Greeting": "Hi", "Name": "Bob"}))

    pulled = synced.pull()

    assert pulled.remote_changes.is_empty()
    assert _remote_values(synced) == {"Greeting": "Hi"}
    assert _values(synced.store.load_snapshot()) == {"Greeting": "Hi", "Name": "Bob"}

    pushed = synced.push()
    assert pushed.status == "ok"
    assert _remote_values(synced) == {"Greeting": "Hi", "Name": "Bob"}


def test_conflict_halts_without_writes(synced):
    synced.store.save_snapshot(_snap({"Greeting": "Hi", "Name": "Bob"}))
    _edit_remote(synced, {"Greeting": "Hi", "Name": "Robert"})
    baseline_before = synced.store.load_baseline()
    history_before = len(synced.ledger.entries())

    outcome = synced.push()

    assert outcome.status == "conflicted"
    assert synced.phase is SyncPhase.CONFLICTED
    assert [c.id for c in outcome.conflicts] == [NAME]
    assert GREETING not in [c.id for c in outcome.conflicts]
    assert _values(synced.store.load_snapshot())["Name"] == "Bob"
    assert _remote_values(synced)["Name"] == "Robert"
    assert synced.store.load_baseline() == baseline_before
    assert len(synced.ledger.entries()) == history_before
    assert not is_locked(synced.store.identity)


def test_reinvoke_with_strategy_after_conflict(synced):
    synced.store.save_snapshot(_snap({"Greeting": "Hi", "Name": "Bob"}))
    _edit_remote(synced, {"Greeting": "Hi", "Name": "Robert"})
    assert synced.pull().status == "conflicted"

    outcome = synced.pull(strategy=AcceptRemote())

    assert outcome.status == "ok"
    assert synced.phase is SyncPhase.IDLE
    assert _values(synced.store.load_snapshot())["Name"] == "Robert"


def test_pull_resolved_to_local_then_push_does_not_conflict_again(synced):
    synced.store.save_snapshot(_snap({"Greeting": "Hi", "Name": "Bob"}))
    _edit_remote(synced, {"Greeting": "Hi", "Name": "Robert"})

    synced.pull(strategy=AcceptLocal())
    pushed = synced.push()

    assert pushed.status == "ok"
    assert _remote_values(synced)["Name"] == "Bob"


def test_custom_decision_reaches_both_sides(synced):
    synced.store.save_snapshot(_snap({"Greeting": "Hey"}))
    _edit_remote(synced, {"Greeting": "Hello"})

    outcome = synced.push(strategy=Prompt(decisions={GREETING: TakeCustom("Hello there")}))

    assert outcome.status == "ok"
    assert _remote_values(synced) == {"Greeting": "Hello there"}
    assert _values(synced.store.load_snapshot()) == {"Greeting": "Hello there"}


def test_dry_run_writes_nothing(synced):
    synced.store.save_snapshot(_snap({"Greeting": "Hi", "Name": "Bob"}))
    _edit_remote(synced, {"Greeting": "Hello"})
    backups_before = len(synced.backups.list())

    outcome = synced.pull(dry_run=True)

    assert outcome.status == "dry-run"
    assert set(outcome.local_changes.modified) == {GREETING}
    assert _values(synced.store.load_snapshot()) == {"Greeting": "Hi", "Name": "Bob"}
    assert len(synced.ledger.entries()) == 1
    assert len(synced.backups.list()) == backups_before

    push_preview = synced.push(dry_run=True)
    assert set(push_preview.remote_changes.added) == {NAME}
    assert _remote_values(synced) == {"Greeting": "Hello"}


def test_config_scope_leaves_translations_alone(orchestrator):
    orchestrator.store.save_snapshot(_snap({"Greeting": "Hi", "@config.lang": "en"}))
    orchestrator.push()
    orchestrator.store.save_snapshot(_snap({"Greeting": "Hello", "@config.lang": "de"}))

    outcome = orchestrator.push(scope=SyncScope.CONFIG)

    assert outcome.remote_changes.ids() == {LANG}
    assert _remote_values(orchestrator) == {"Greeting": "Hi", "@config.lang": "de"}

    pending = orchestrator.status(SyncScope.ENTRIES)
    assert pending["local_changes"] == {"added": 0, "removed": 0, "modified": 1}
    assert orchestrator.status(SyncScope.CONFIG)["in_sync"]

    orchestrator.push(scope=SyncScope.ENTRIES)
    assert _remote_values(orchestrator) == {"Greeting": "Hello", "@config.lang": "de"}


def test_cancel_before_apply_leaves_no_trace(synced):
    synced.store.save_snapshot(_snap({"Greeting": "Hello"}))
    token = CancelToken()
    token.cancel()

    with pytest.raises(OperationCancelledError):
        synced.push(cancel=token)

    assert _remote_values(synced) == {"Greeting": "Hi"}
    assert len(synced.ledger.entries()) == 1
    assert synced.phase is SyncPhase.IDLE
    assert not is_locked(synced.store.identity)


def test_held_lock_rejects_pull(synced):
    with WorkingCopyLock(synced.store.identity, operation="push"):
        with pytest.raises(ConcurrentOperationError):
            synced.pull()


def test_concurrent_pulls_on_same_working_copy(tmp_path):
    """The second pull fails while the first is still fetching."""
    entered = threading.Event()
    release = threading.Event()

    class SlowRemote(DirectoryRemote):
        def fetch_snapshot(self):
            entered.set()
            release.wait(timeout=10)
            return super().fetch_snapshot()

    (tmp_path / "remote").mkdir()
    first = make_orchestrator(tmp_path, SlowRemote(str(tmp_path / "remote")))
    second = make_orchestrator(tmp_path)
    results = []
    worker = threading.Thread(target=lambda: results.append(first.pull()))
    worker.start()
    try:
        assert entered.wait(timeout=10)
        with pytest.raises(ConcurrentOperationError):
            second.pull()
    finally:
        release.set()
        worker.join(timeout=10)

    assert results and results[0].status in ("ok", "up-to-date")
    assert second.pull().status == "up-to-date"


def test_transport_failure_releases_lock(tmp_path):
    orchestrator = make_orchestrator(tmp_path, DirectoryRemote(str(tmp_path / "unmounted")))

    with pytest.raises(SyncUnavailableError):
        orchestrator.push()

    assert orchestrator.phase is SyncPhase.IDLE
    assert not is_locked(orchestrator.store.identity)
    assert not (orchestrator.store.state_dir / "sync.lock").exists()


def test_revert_push_restores_both_sides(synced):
    synced.store.save_snapshot(_snap({"Greeting": "Hello", "Name": "Bob"}))
    pushed = synced.push()

    outcome = synced.revert(pushed.history_entry.id)

    assert outcome.status == "ok"
    assert _remote_values(synced) == {"Greeting": "Hi"}
    assert _values(synced.store.load_snapshot()) == {"Greeting": "Hi"}
    entry = outcome.history_entry
    assert entry.kind is OperationKind.REVERT
    assert entry.reverts == pushed.history_entry.id
    assert synced.ledger.get(pushed.history_entry.id).changes.to_dict() == pushed.history_entry.changes.to_dict()

    with pytest.raises(AlreadyRevertedError):
        synced.revert(pushed.history_entry.id)


def test_revert_conflicts_with_later_edit(synced):
    synced.store.save_snapshot(_snap({"Greeting": "Hello"}))
    pushed = synced.push()
    synced.store.save_snapshot(_snap({"Greeting": "Hey"}))

    outcome = synced.revert(pushed.history_entry.id)

    assert outcome.status == "conflicted"
    conflict = outcome.conflicts[0]
    assert (conflict.ours.value, conflict.theirs.value) == ("Hey", "Hi")
    assert _remote_values(synced) == {"Greeting": "Hello"}

    resolved = synced.revert(pushed.history_entry.id, strategy=AcceptRemote())
    assert resolved.status == "ok"
    assert _remote_values(synced) == {"Greeting": "Hi"}


def test_restore_snapshot_merges_into_working_copy(synced):
    named = synced.snapshots.create("before rename")
    synced.store.save_snapshot(_snap({"Greeting": "Hello"}))
    synced.push()
    baseline = synced.store.load_baseline()

    outcome = synced.restore_snapshot(named.id)

    assert outcome.status == "ok"
    assert outcome.backup is not None
    assert _values(synced.store.load_snapshot()) == {"Greeting": "Hi"}
    assert synced.store.load_baseline() == baseline
    assert _remote_values(synced) == {"Greeting": "Hello"}
    assert synced.ledger.tail(1)[0].kind is OperationKind.RESTORE


def test_restore_snapshot_surfaces_unsynced_edits(synced):
    named = synced.snapshots.create("start")
    synced.store.save_snapshot(_snap({"Greeting": "Draft"}))
    _edit_remote(synced, {"Greeting": "Hello"})
    synced.pull(strategy=AcceptLocal())
    synced.store.save_snapshot(_snap({"Greeting": "Draft 2"}))

    outcome = synced.restore_snapshot(named.id)

    assert outcome.status == "conflicted"
    assert _values(synced.store.load_snapshot()) == {"Greeting": "Draft 2"}


def test_restore_backup_is_direct(synced):
    _edit_remote(synced, {"Greeting": "Hello"})
    pulled = synced.pull()

    outcome = synced.restore_backup(pulled.backup.id)

    assert _values(synced.store.load_snapshot()) == {"Greeting": "Hi"}
    assert outcome.backup.id != pulled.backup.id
    assert synced.ledger.tail(1)[0].kind is OperationKind.RESTORE


def test_status_reports_both_sides(synced):
    synced.store.save_snapshot(_snap({"Greeting": "Hi", "Name": "Bob"}))
    _edit_remote(synced, {"Greeting": "Hi", "Name": "Robert"})

    status = synced.status()

    assert status["pending_conflicts"] == 1
    assert not status["in_sync"]
    assert status["local_changes"]["added"] == 1
    assert status["remote_changes"]["added"] == 1
    assert status["baseline"] == synced.store.load_baseline()


def test_restore_snapshot_never_drops_unsynced_edits(synced):
    """A snapshot equal to the synced state still contests local edits."""
    named = synced.snapshots.create("synced")
    synced.store.save_snapshot(_snap({"Greeting": "Hi", "Name": "Bob"}))

    outcome = synced.restore_snapshot(named.id)

    assert outcome.status == "conflicted"
    assert [c.id for c in outcome.conflicts] == [NAME]
    assert _values(synced.store.load_snapshot()) == {"Greeting": "Hi", "Name": "Bob"}

    resolved = synced.restore_snapshot(named.id, strategy=AcceptRemote())
    assert resolved.status == "ok"
    assert _values(synced.store.load_snapshot()) == {"Greeting": "Hi"}


def test_pull_takes_remote_entry_order(synced):
    synced.store.save_snapshot(_snap({"Greeting": "Hi", "Name": "Bob"}))
    synced.push()
    _edit_remote(synced, {"Name": "Bob", "Greeting": "Hi"})

    outcome = synced.pull()

    assert outcome.status == "ok"
    assert outcome.local_changes.is_empty()
    assert synced.store.load_snapshot().ids() == [NAME, GREETING]
    assert synced.pull().status == "up-to-date"


class CancelOnSecondCheck(CancelToken):
    """Lets the first check pass, then reports cancelled."""

    def __init__(self):
        super().__init__()
        self.checks = 0

    @property
    def cancelled(self):
        self.checks += 1
        return self.checks >= 2


def test_cancelled_pull_drops_its_backup(synced):
    _edit_remote(synced, {"Greeting": "Hello"})

    with pytest.raises(OperationCancelledError):
        synced.pull(cancel=CancelOnSecondCheck())

    assert synced.backups.list() == []
    assert not list(synced.backups.directory.glob("*.zip"))
    assert _values(synced.store.load_snapshot()) == {"Greeting": "Hi"}
    assert len(synced.ledger.entries()) == 1


def test_revert_leaves_unrelated_local_edits_unpublished(synced):
    synced.store.save_snapshot(_snap({"Greeting": "Hello"}))
    pushed = synced.push()
    synced.store.save_snapshot(_snap({"Greeting": "Hello", "Draft": "wip"}))

    outcome = synced.revert(pushed.history_entry.id)

    assert outcome.status == "ok"
    assert _remote_values(synced) == {"Greeting": "Hi"}
    assert _values(synced.store.load_snapshot()) == {"Greeting": "Hi", "Draft": "wip"}
    assert outcome.history_entry.changes.summary() == {"added": 0, "removed": 0, "modified": 1}

    later = synced.push()
    assert _remote_values(synced) == {"Greeting": "Hi", "Draft": "wip"}
    assert set(later.history_entry.changes.added) == {EntryId("Draft", "en")}


def test_revert_reports_remote_stage_conflicts(synced):
    synced.store.save_snapshot(_snap({"Greeting": "Hello"}))
    pushed = synced.push()
    _edit_remote(synced, {"Greeting": "Hola"})

    outcome = synced.revert(pushed.history_entry.id, strategy=Prompt(decisions={}))

    assert outcome.status == "conflicted"
    assert outcome.stage == "remote"
    conflict = outcome.conflicts[0]
    assert (conflict.ours.value, conflict.theirs.value) == ("Hi", "Hola")
    assert _remote_values(synced) == {"Greeting": "Hola"}

    resolved = synced.revert(pushed.history_entry.id, remote_strategy=AcceptLocal())
    assert resolved.status == "ok"
    assert _remote_values(synced) == {"Greeting": "Hi"}


def test_restore_unknown_backup_leaves_no_safety_copy(synced):
    with pytest.raises(BackupNotFoundError):
        synced.restore_backup("pull-backup-19700101-000000-000000")

    assert synced.backups.list() == []
