"""
Abstract Storage Interfaces

DESIGN DECISION: The engine talks to storage only through these
interfaces. This allows us to:
1. Plug in the platform's local database behind LocalStoreInterface
2. Run the whole sync engine against in-memory stores in tests
3. Swap the shared-folder transport without touching merge logic

Every method is async. Adapter calls are the only places a sync cycle
suspends; diffing, resolving and encoding are plain synchronous code.

Neither adapter locks across devices. Another device may be writing a
remote file while we read it.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import date
from typing import Optional
from uuid import UUID

from family_ledger.models.audit import AuditEvent
from family_ledger.models.ledger import (
    Category,
    EntityType,
    LedgerRecord,
    LedgerSettings,
    Member,
    Transaction,
    TransactionType,
    month_key_for,
)


class LocalStoreSession(ABC):
    """
    Mutators available inside one transactional scope.

    Changes become visible to other readers only when the scope exits
    without an exception. Any exception discards all of them.
    """

    @abstractmethod
    async def fetch_all(self, entity_type: EntityType) -> dict[UUID, LedgerRecord]:
        """All records of one entity set, keyed by id."""
        pass

    @abstractmethod
    async def upsert(self, record: LedgerRecord) -> None:
        pass

    @abstractmethod
    async def delete(self, entity_type: EntityType, record_id: UUID) -> bool:
        """Returns False when the id was not present."""
        pass

    @abstractmethod
    async def get_settings(self) -> LedgerSettings:
        pass

    @abstractmethod
    async def save_settings(self, settings: LedgerSettings) -> None:
        pass


class LocalStoreInterface(ABC):
    """
    Abstract interface for the device's working copy of the ledger.

    Any local database implementation must provide fetch_all,
    get_settings and transactionally. Single-record mutators and the
    typed queries are built on top of them.
    """

    @abstractmethod
    async def fetch_all(self, entity_type: EntityType) -> dict[UUID, LedgerRecord]:
        """
        Read a committed view of one entity set.

        Args:
            entity_type: TRANSACTION, MEMBER or CATEGORY

        Returns:
            Mapping of id to record
        """
        pass

    @abstractmethod
    async def get_settings(self) -> LedgerSettings:
        pass

    @abstractmethod
    def transactionally(self) -> AbstractAsyncContextManager[LocalStoreSession]:
        """
        Open an all-or-nothing write scope.

        Usage:
            async with store.transactionally() as session:
                await session.upsert(record)

        The scope is the only mutual-exclusion mechanism for local writes.
        """
        pass

    async def upsert(self, record: LedgerRecord) -> None:
        async with self.transactionally() as session:
            await session.upsert(record)

    async def delete(self, entity_type: EntityType, record_id: UUID) -> bool:
        async with self.transactionally() as session:
            return await session.delete(entity_type, record_id)

    async def save_settings(self, settings: LedgerSettings) -> None:
        async with self.transactionally() as session:
            await session.save_settings(settings)

    # Typed queries -----------------------------------------------------

    async def fetch_transactions(
        self,
        month: Optional[str] = None,
        payer_id: Optional[UUID] = None,
        category_id: Optional[UUID] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        type: Optional[TransactionType] = None,
    ) -> list[Transaction]:
        """
        List transactions with optional filters.

        Args:
            month: Month bucket, e.g. '2024-01'
            payer_id: Only transactions paid by this member
            category_id: Only transactions in this category
            date_from: On or after this date
            date_to: On or before this date
            type: expense or income

        Returns:
            Matching transactions, newest date first
        """
        records = await self.fetch_all(EntityType.TRANSACTION)
        results = []
        for txn in records.values():
            if month is not None and month_key_for(txn.date) != month:
                continue
            if payer_id is not None and txn.payer_id != payer_id:
                continue
            if category_id is not None and txn.category_id != category_id:
                continue
            if date_from is not None and txn.date < date_from:
                continue
            if date_to is not None and txn.date > date_to:
                continue
            if type is not None and txn.type != type:
                continue
            results.append(txn)
        results.sort(key=lambda t: (t.date, str(t.id)), reverse=True)
        return results

    async def fetch_members(self) -> list[Member]:
        records = await self.fetch_all(EntityType.MEMBER)
        return sorted(records.values(), key=lambda m: (m.created_at, str(m.id)))

    async def fetch_categories(
        self,
        type: Optional[TransactionType] = None,
    ) -> list[Category]:
        records = await self.fetch_all(EntityType.CATEGORY)
        categories = [
            c for c in records.values()
            if type is None or c.type == type
        ]
        return sorted(categories, key=lambda c: (c.type.value, c.sort_order, str(c.id)))


class SharedFileStoreInterface(ABC):
    """
    Abstract interface for the shared folder mirrored between devices.

    Paths are relative to the ledger folder. Implementations raise
    NotFoundError for absent files and IOFailure for everything else,
    timeouts included.
    """

    @abstractmethod
    async def list_files(self, folder: str = "") -> list[str]:
        """File names directly inside folder, sorted."""
        pass

    @abstractmethod
    async def read_file(self, path: str) -> bytes:
        """
        Read a whole file.

        Raises:
            NotFoundError: If the file does not exist
            IOFailure: On any other failure
        """
        pass

    @abstractmethod
    async def write_file_atomic(self, path: str, data: bytes) -> None:
        """Replace the file so that readers see either old or new bytes, never a mix."""
        pass

    @abstractmethod
    async def ensure_folder(self, path: str = "") -> None:
        pass

    @abstractmethod
    async def file_exists(self, path: str) -> bool:
        pass


class AuditStorageInterface(ABC):
    """
    Where audit events are kept.

    Only appends; stored events are never changed.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Store one event at the end of the trail.

        Args:
            event: Event to store

        Returns:
            Whether the event was stored
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one sync cycle).

        Returns:
            Events sharing the id, oldest first
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Latest events across the trail.

        Returns:
            Events, newest first
        """
        pass
