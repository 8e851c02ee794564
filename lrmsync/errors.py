#!/usr/bin/env python3
"""
Error taxonomy for the sync engine.

Divergence between copies is never an exception: conflicts are data carried by
MergeResult. Exceptions are reserved for structural failures, transport failures
and operations the caller has to retry or re-invoke.
"""

from typing import Optional


class LrmSyncError(Exception):
    """Base class for all sync engine errors."""

    error_type = "SYNC_ERROR"
    recoverable = False

    def to_dict(self) -> dict:
        return {
            "status": "error",
            "error_type": self.error_type,
            "error": str(self),
            "recoverable": self.recoverable,
        }


class ConfigError(LrmSyncError):
    """Configuration file is malformed or incomplete."""

    error_type = "CONFIG_ERROR"


class TransportError(LrmSyncError):
    """Network or authentication failure talking to a remote endpoint."""

    error_type = "TRANSPORT_ERROR"


class SyncUnavailableError(TransportError):
    """Remote could not be reached after the transport exhausted its retries."""

    error_type = "SYNC_UNAVAILABLE"

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class AuthenticationError(TransportError):
    """Remote rejected the credentials."""

    error_type = "AUTHENTICATION_FAILED"


class UnresolvedConflictsError(LrmSyncError):
    """Conflicts remain that no decision was supplied for."""

    error_type = "UNRESOLVED_CONFLICTS"
    recoverable = True

    def __init__(self, message: str, conflicts: Optional[list] = None):
        super().__init__(message)
        self.conflicts = conflicts or []

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["conflicts"] = [c.to_dict() for c in self.conflicts]
        return data


class QuotaExceededError(LrmSyncError):
    """The quota collaborator refused to admit a new named snapshot."""

    error_type = "QUOTA_EXCEEDED"
    recoverable = True


class CorruptSnapshotError(LrmSyncError):
    """A stored snapshot violates the model's invariants."""

    error_type = "CORRUPT_SNAPSHOT"


class ConcurrentOperationError(LrmSyncError):
    """Another operation holds the working copy lock."""

    error_type = "CONCURRENT_OPERATION"
    recoverable = True


class OperationCancelledError(LrmSyncError):
    """Caller aborted the operation before anything was written."""

    error_type = "CANCELLED"
    recoverable = True


class LedgerUnavailableError(LrmSyncError):
    """History storage cannot be read or appended to."""

    error_type = "LEDGER_UNAVAILABLE"


class HistoryEntryNotFoundError(LrmSyncError):
    error_type = "HISTORY_NOT_FOUND"


class AlreadyRevertedError(LrmSyncError):
    error_type = "ALREADY_REVERTED"


class SnapshotNotFoundError(LrmSyncError):
    error_type = "SNAPSHOT_NOT_FOUND"


class BackupNotFoundError(LrmSyncError):
    error_type = "BACKUP_NOT_FOUND"
