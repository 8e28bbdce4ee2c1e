"""
In-memory storage implementations.

Used as the reference local store and in tests. The local store keeps
copy-on-commit tables: a session works on its own copy and the copy
replaces the committed tables only when the scope exits cleanly.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional
from uuid import UUID

from family_ledger.exceptions import NotFoundError
from family_ledger.models.audit import AuditEvent
from family_ledger.models.ledger import (
    EntityType,
    LedgerRecord,
    LedgerSettings,
    RECORD_MODELS,
    entity_type_of,
)
from family_ledger.services.storage.interface import (
    AuditStorageInterface,
    LocalStoreInterface,
    LocalStoreSession,
    SharedFileStoreInterface,
)


Tables = dict[EntityType, dict[UUID, LedgerRecord]]


class _InMemorySession(LocalStoreSession):

    def __init__(self, tables: Tables, settings: LedgerSettings):
        self.tables: Tables = {name: dict(rows) for name, rows in tables.items()}
        self.settings = settings

    async def fetch_all(self, entity_type: EntityType) -> dict[UUID, LedgerRecord]:
        return dict(self.tables[entity_type])

    async def upsert(self, record: LedgerRecord) -> None:
        self.tables[entity_type_of(record)][record.id] = record

    async def delete(self, entity_type: EntityType, record_id: UUID) -> bool:
        return self.tables[entity_type].pop(record_id, None) is not None

    async def get_settings(self) -> LedgerSettings:
        return self.settings

    async def save_settings(self, settings: LedgerSettings) -> None:
        self.settings = settings


class InMemoryLocalStore(LocalStoreInterface):
    """Local store backed by dictionaries and an asyncio.Lock."""

    def __init__(
        self,
        records: Optional[Iterable[LedgerRecord]] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self._tables: Tables = {entity_type: {} for entity_type in RECORD_MODELS}
        for record in records or ():
            self._tables[entity_type_of(record)][record.id] = record
        self._settings = settings or LedgerSettings()
        self._lock = asyncio.Lock()

    async def fetch_all(self, entity_type: EntityType) -> dict[UUID, LedgerRecord]:
        return dict(self._tables[entity_type])

    async def get_settings(self) -> LedgerSettings:
        return self._settings

    @asynccontextmanager
    async def transactionally(self) -> AsyncIterator[LocalStoreSession]:
        async with self._lock:
            session = _InMemorySession(self._tables, self._settings)
            yield session
            # Only reached when the body did not raise
            self._tables = session.tables
            self._settings = session.settings


class InMemoryFileStore(SharedFileStoreInterface):
    """
    Shared folder kept in a dict of path -> bytes.

    Handy for tests that need to inspect or corrupt remote files
    without touching the disk.
    """

    def __init__(self, files: Optional[dict[str, bytes]] = None):
        self.files: dict[str, bytes] = dict(files or {})
        self.folders: set[str] = {""}

    async def list_files(self, folder: str = "") -> list[str]:
        prefix = f"{folder.rstrip('/')}/" if folder else ""
        names = []
        for path in self.files:
            if not path.startswith(prefix):
                continue
            rest = path[len(prefix):]
            if "/" not in rest:
                names.append(rest)
        return sorted(names)

    async def read_file(self, path: str) -> bytes:
        if path not in self.files:
            raise NotFoundError(f"File not found: {path}")
        return self.files[path]

    async def write_file_atomic(self, path: str, data: bytes) -> None:
        self.files[path] = bytes(data)

    async def ensure_folder(self, path: str = "") -> None:
        self.folders.add(path)

    async def file_exists(self, path: str) -> bool:
        return path in self.files


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only list of events."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    async def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        return [e for e in self.events if e.correlation_id == correlation_id]

    async def get_events_by_entity(self, entity_type: str, entity_id: UUID) -> list[AuditEvent]:
        return [
            e for e in self.events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return list(reversed(self.events))[:limit]
