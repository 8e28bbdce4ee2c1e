"""
Storage Services Package

Provides abstract interfaces and concrete implementations for the local
store, the shared folder, the ancestor snapshot and the audit log.
"""

from family_ledger.exceptions import (
    IOFailure,
    NotFoundError,
    SnapshotMismatch,
    StorageError,
)
from family_ledger.services.storage.interface import (
    AuditStorageInterface,
    LocalStoreInterface,
    LocalStoreSession,
    SharedFileStoreInterface,
)
from family_ledger.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryFileStore,
    InMemoryLocalStore,
)
from family_ledger.services.storage.filesystem import (
    FolderFileStore,
    atomic_write_bytes,
)
from family_ledger.services.storage.snapshot import SnapshotStore
from family_ledger.services.storage.audit_log import JsonlAuditStorage

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "LocalStoreInterface",
    "LocalStoreSession",
    "SharedFileStoreInterface",
    # Exceptions
    "IOFailure",
    "NotFoundError",
    "SnapshotMismatch",
    "StorageError",
    # Implementations
    "FolderFileStore",
    "InMemoryAuditStorage",
    "InMemoryFileStore",
    "InMemoryLocalStore",
    "JsonlAuditStorage",
    "SnapshotStore",
    "atomic_write_bytes",
]
