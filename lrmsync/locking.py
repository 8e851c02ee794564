#!/usr/bin/env python3
"""
Per-working-copy advisory lock.

Two layers: a process-wide registry catches concurrent operations from threads
of the same process, and an O_EXCL lock file catches other processes. The lock
is never waited on; contention raises ConcurrentOperationError right away.
"""

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .errors import ConcurrentOperationError

logger = logging.getLogger(__name__)

_registry_guard = threading.Lock()
_held: dict[str, str] = {}  # working copy identity -> operation


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except (PermissionError, OSError):
        return True
    return True


class WorkingCopyLock:
    """
    Exclusive lock for one working copy, usable as a context manager.

    Args:
        identity: Working copy identity (its resolved path)
        lock_path: Lock file location; None keeps the lock in-process only
        operation: Name recorded for diagnostics (push, pull, ...)
    """

    def __init__(self, identity: str, lock_path: Optional[Path] = None, operation: str = "sync"):
        self.identity = identity
        self.lock_path = Path(lock_path) if lock_path else None
        self.operation = operation
        self._acquired = False

    def acquire(self) -> None:
        with _registry_guard:
            if self.identity in _held:
                raise ConcurrentOperationError(
                    f"'{_held[self.identity]}' is already running on {self.identity}"
                )
            _held[self.identity] = self.operation

        try:
            if self.lock_path is not None:
                self._create_lock_file()
        except BaseException:
            with _registry_guard:
                _held.pop(self.identity, None)
            raise
        self._acquired = True
        logger.debug("Acquired lock on %s for %s", self.identity, self.operation)

    def _create_lock_file(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(str(self.lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if self._clear_stale_lock():
                    continue
                raise ConcurrentOperationError(
                    f"Working copy is locked by another process ({self.lock_path})"
                )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({
                    "pid": os.getpid(),
                    "operation": self.operation,
                    "acquired_at": datetime.now(timezone.utc).isoformat(),
                }, f)
            return
        raise ConcurrentOperationError(f"Could not acquire {self.lock_path}")

    def _clear_stale_lock(self) -> bool:
        """Remove a lock file left behind by a process that no longer exists."""
        try:
            info = json.loads(self.lock_path.read_text(encoding="utf-8"))
            pid = int(info["pid"])
        except (OSError, ValueError, KeyError, TypeError):
            return False
        if pid == os.getpid() or _pid_alive(pid):
            return False
        logger.warning("Removing stale lock %s left by pid %d", self.lock_path, pid)
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass
        return True

    def release(self) -> None:
        if not self._acquired:
            return
        if self.lock_path is not None:
            try:
                self.lock_path.unlink()
            except FileNotFoundError:
                pass
        with _registry_guard:
            _held.pop(self.identity, None)
        self._acquired = False
        logger.debug("Released lock on %s", self.identity)

    def __enter__(self) -> "WorkingCopyLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def is_locked(identity: str) -> bool:
    with _registry_guard:
        return identity in _held
