"""Services package."""

from family_ledger.services.storage import (
    AuditStorageInterface,
    FolderFileStore,
    InMemoryAuditStorage,
    InMemoryFileStore,
    InMemoryLocalStore,
    JsonlAuditStorage,
    LocalStoreInterface,
    SharedFileStoreInterface,
    SnapshotStore,
)

__all__ = [
    "AuditStorageInterface",
    "FolderFileStore",
    "InMemoryAuditStorage",
    "InMemoryFileStore",
    "InMemoryLocalStore",
    "JsonlAuditStorage",
    "LocalStoreInterface",
    "SharedFileStoreInterface",
    "SnapshotStore",
]
