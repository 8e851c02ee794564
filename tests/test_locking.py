#!/usr/bin/env python3
"""
Tests for the per-working-copy lock.
"""

import json
import os

import pytest

from lrmsync.errors import ConcurrentOperationError
from lrmsync.locking import WorkingCopyLock, is_locked


def test_second_acquire_in_process_fails(tmp_path):
    identity = str(tmp_path)
    with WorkingCopyLock(identity, operation="pull"):
        assert is_locked(identity)
        with pytest.raises(ConcurrentOperationError, match="pull"):
            WorkingCopyLock(identity, operation="pull").acquire()
    assert not is_locked(identity)


def test_different_working_copies_are_independent(tmp_path):
    with WorkingCopyLock(str(tmp_path / "a")):
        with WorkingCopyLock(str(tmp_path / "b")):
            assert is_locked(str(tmp_path / "a"))
            assert is_locked(str(tmp_path / "b"))


def test_lock_file_held_by_live_process(tmp_path):
    """A lock file written by another live process blocks the operation."""
    lock_path = tmp_path / ".lrm" / "sync.lock"
    lock_path.parent.mkdir()
    lock_path.write_text(json.dumps({"pid": os.getppid(), "operation": "push"}), encoding="utf-8")

    with pytest.raises(ConcurrentOperationError):
        WorkingCopyLock(str(tmp_path), lock_path).acquire()

    assert not is_locked(str(tmp_path))
    assert lock_path.exists()


def test_stale_lock_file_is_cleared(tmp_path, monkeypatch):
    lock_path = tmp_path / "sync.lock"
    lock_path.write_text(json.dumps({"pid": 999999, "operation": "push"}), encoding="utf-8")
    monkeypatch.setattr("lrmsync.locking._pid_alive", lambda pid: False)

    with WorkingCopyLock(str(tmp_path), lock_path, operation="pull"):
        info = json.loads(lock_path.read_text(encoding="utf-8"))
        assert info["pid"] == os.getpid()
        assert info["operation"] == "pull"

    assert not lock_path.exists()
