"""
Exception taxonomy for the sync engine.

Nothing here is allowed to be fatal to the app. The orchestrator
catches these at the cycle boundary and reports "no progress, retry
later" instead.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID


class LedgerSyncError(Exception):
    """Base exception for all ledger sync errors."""
    pass


class MalformedRecord(LedgerSyncError):
    """
    A single row could not be decoded.

    The row is skipped, never the whole file. `record_id` is set when
    the id column was still readable, so the orchestrator can protect
    that record from being treated as deleted. `row` keeps the raw cells
    so the row can be written back untouched, and `updated_at` is the
    row's modification time when that column still parses.
    """

    def __init__(
        self,
        line_number: int,
        reason: str,
        record_id: Optional[UUID] = None,
        row: Optional[list[str]] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.line_number = line_number
        self.reason = reason
        self.record_id = record_id
        self.row = row or []
        self.updated_at = updated_at
        super().__init__(f"Malformed record at line {line_number}: {reason}")


class DecodeError(LedgerSyncError):
    """A whole document is unreadable (partial write, bad encoding, bad JSON)."""
    pass


class StorageError(LedgerSyncError):
    """Base exception for storage operations."""
    pass


class IOFailure(StorageError):
    """Transient read/write/list failure. Retried, never fatal."""
    pass


class NotFoundError(StorageError):
    """A file or record does not exist."""
    pass


class SnapshotMismatch(StorageError):
    """Ancestor snapshot missing or schema-incompatible. Means first sync."""
    pass


class ValidationError(LedgerSyncError, ValueError):
    """A collaborator draft cannot be turned into a transaction."""
    pass
