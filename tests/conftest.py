"""
Shared fixtures for the Family Ledger tests.

No test touches a real shared folder: the remote side is an
InMemoryFileStore (or a FolderFileStore under tmp_path) and every
device keeps its snapshot under tmp_path.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import UUID

import pytest

from family_ledger.audit import AuditLogger
from family_ledger.config import AppSettings, SyncSettings
from family_ledger.exceptions import IOFailure
from family_ledger.models.ledger import (
    Category,
    Member,
    MemberRole,
    Transaction,
    TransactionType,
)
from family_ledger.services.storage import (
    InMemoryAuditStorage,
    InMemoryFileStore,
    InMemoryLocalStore,
    SnapshotStore,
)
from family_ledger.sync import SyncOrchestrator


T0 = datetime(2024, 1, 10, 8, 0, 0, tzinfo=timezone.utc)
T1 = datetime(2024, 1, 11, 8, 0, 0, tzinfo=timezone.utc)
T2 = datetime(2024, 1, 12, 8, 0, 0, tzinfo=timezone.utc)

ALICE_ID = UUID("00000000-0000-4000-8000-00000000000a")
BOB_ID = UUID("00000000-0000-4000-8000-00000000000b")
FOOD_ID = UUID("00000000-0000-4000-8000-0000000000f0")
SALARY_ID = UUID("00000000-0000-4000-8000-0000000000f1")


@pytest.fixture
def alice() -> Member:
    return Member(
        id=ALICE_ID,
        name="Alice",
        nickname="Mom",
        role=MemberRole.ADMIN,
        identity_token="token-alice",
        created_at=T0,
        updated_at=T0,
    )


@pytest.fixture
def bob() -> Member:
    return Member(id=BOB_ID, name="Bob", nickname="Dad", created_at=T0, updated_at=T0)


@pytest.fixture
def food() -> Category:
    return Category(
        id=FOOD_ID,
        name="Food",
        icon="fork.knife",
        color="orange",
        type=TransactionType.EXPENSE,
        is_default=True,
        sort_order=0,
        created_at=T0,
        updated_at=T0,
    )


@pytest.fixture
def salary() -> Category:
    return Category(
        id=SALARY_ID,
        name="Salary",
        type=TransactionType.INCOME,
        is_default=True,
        sort_order=0,
        created_at=T0,
        updated_at=T0,
    )


@pytest.fixture
def make_txn():
    """Factory for transactions with fixed timestamps."""

    def _make(
        amount: str = "25.50",
        day: date = date(2024, 1, 15),
        updated_at: datetime = T0,
        **fields,
    ) -> Transaction:
        fields.setdefault("created_at", T0)
        fields.setdefault("payer_id", ALICE_ID)
        fields.setdefault("category_id", FOOD_ID)
        return Transaction(
            date=day,
            amount=Decimal(amount),
            updated_at=updated_at,
            **fields,
        )

    return _make


@pytest.fixture
def sync_settings(tmp_path) -> SyncSettings:
    """Retries without waiting; no audit file."""
    return SyncSettings(
        ledger_folder=tmp_path / "shared",
        snapshot_path=tmp_path / "snapshot.json",
        audit_log_path=None,
        device_id="test-device",
        max_io_attempts=3,
        retry_backoff_multiplier=0.0,
        retry_wait_min_seconds=0.0,
        retry_wait_max_seconds=0.0,
    )


@pytest.fixture
def app_settings() -> AppSettings:
    return AppSettings(
        max_transaction_amount=100000.0,
        future_date_tolerance_days=7,
        min_draft_confidence=0.6,
        recurring_catch_up_days=31,
    )


@pytest.fixture
def shared_folder() -> InMemoryFileStore:
    return InMemoryFileStore()


@pytest.fixture
def audit_storage() -> InMemoryAuditStorage:
    return InMemoryAuditStorage()


class FlakyFileStore(InMemoryFileStore):
    """
    Shared folder with scripted failures.

    read_failures / write_failures map a path to how many calls fail
    (-1 for every call).
    """

    def __init__(self, files=None):
        super().__init__(files)
        self.read_failures: dict[str, int] = {}
        self.write_failures: dict[str, int] = {}
        self.fail_listing = False
        self.list_calls = 0

    @staticmethod
    def _should_fail(table: dict[str, int], path: str) -> bool:
        remaining = table.get(path, 0)
        if remaining == 0:
            return False
        if remaining > 0:
            table[path] = remaining - 1
        return True

    async def list_files(self, folder: str = "") -> list[str]:
        self.list_calls += 1
        if self.fail_listing:
            raise IOFailure("simulated listing failure")
        return await super().list_files(folder)

    async def read_file(self, path: str) -> bytes:
        if self._should_fail(self.read_failures, path):
            raise IOFailure(f"simulated read failure: {path}")
        return await super().read_file(path)

    async def write_file_atomic(self, path: str, data: bytes) -> None:
        if self._should_fail(self.write_failures, path):
            raise IOFailure(f"simulated write failure: {path}")
        await super().write_file_atomic(path, data)


@pytest.fixture
def flaky_folder() -> FlakyFileStore:
    return FlakyFileStore()


class Device:
    """One simulated device: its local store, snapshot and orchestrator."""

    def __init__(self, name, local, snapshots, orchestrator):
        self.name = name
        self.local = local
        self.snapshots = snapshots
        self.orchestrator = orchestrator

    async def sync(self):
        return await self.orchestrator.sync()

    async def records(self, entity_type):
        return await self.local.fetch_all(entity_type)


@pytest.fixture
def make_device(tmp_path, sync_settings, shared_folder, audit_storage):
    """Factory for devices sharing one folder and one audit trail."""

    def _make(
        name: str,
        records=(),
        file_store=None,
        snapshots=None,
        **overrides,
    ) -> Device:
        settings = sync_settings.model_copy(update={"device_id": name, **overrides})
        local = InMemoryLocalStore(records=list(records))
        snapshots = snapshots or SnapshotStore(tmp_path / name / "snapshot.json")
        orchestrator = SyncOrchestrator(
            local_store=local,
            file_store=file_store or shared_folder,
            snapshot_store=snapshots,
            settings=settings,
            audit_logger=AuditLogger(storage=audit_storage, device_id=name),
        )
        return Device(name, local, snapshots, orchestrator)

    return _make
