"""
Sync Models

Types shared by the differencer, the resolver and the orchestrator:
change classification, merge outcomes, the ancestor snapshot and the
per-cycle report.

DESIGN DECISION: Change and outcome records hold ledger records as plain
values (Any). The differencer and resolver work on Transaction, Member
and Category alike, keyed by id.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from family_ledger.models.ledger import (
    Category,
    EntityType,
    LedgerSettings,
    Member,
    Transaction,
    normalize_timestamp,
    utc_now,
)


SNAPSHOT_SCHEMA_VERSION = 1


# =============================================================================
# DIFF
# =============================================================================

class ChangeKind(str, Enum):
    """Classification of one id across ancestor (S), local (L) and remote (R)."""
    UNCHANGED = "unchanged"
    LOCAL_ONLY_CHANGE = "local_only_change"
    REMOTE_ONLY_CHANGE = "remote_only_change"
    BOTH_CHANGED_IDENTICALLY = "both_changed_identically"
    CONFLICT = "conflict"
    LOCAL_ADDED = "local_added"
    REMOTE_ADDED = "remote_added"
    ADDED_BOTH_SIDES = "added_both_sides"
    LOCAL_DELETED = "local_deleted"
    REMOTE_DELETED = "remote_deleted"
    DELETE_EDIT_CONFLICT = "delete_edit_conflict"


class ChangeEntry(BaseModel):
    """One id and its three versions (any of which may be absent)."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: UUID
    kind: ChangeKind
    ancestor: Optional[Any] = None
    local: Optional[Any] = None
    remote: Optional[Any] = None


class ChangeSet(BaseModel):
    """Every id of S ∪ L ∪ R classified exactly once."""

    entity_type: EntityType
    entries: list[ChangeEntry] = Field(default_factory=list)

    def by_kind(self, kind: ChangeKind) -> list[ChangeEntry]:
        return [entry for entry in self.entries if entry.kind == kind]

    def kinds(self) -> dict[UUID, ChangeKind]:
        return {entry.id: entry.kind for entry in self.entries}

    def __len__(self) -> int:
        return len(self.entries)


# =============================================================================
# RESOLUTION
# =============================================================================

class OutcomeClass(str, Enum):
    CLEAN_MERGE = "clean_merge"
    RESOLVED_CONFLICT = "resolved_conflict"
    UNRESOLVED_CONFLICT = "unresolved_conflict"


class FieldDecision(BaseModel):
    """
    Audit trail of a single automatic decision.

    field is "*" when the decision covers the whole record
    (delete-edit, id collision, deferral, document last-writer-wins).
    """
    entity_id: UUID
    field: str
    local: Any = None
    remote: Any = None
    chosen: Any = None
    reason: str


class RecordOutcome(BaseModel):
    entity_id: UUID
    kind: ChangeKind
    outcome: OutcomeClass
    decisions: list[FieldDecision] = Field(default_factory=list)
    reinserted_id: Optional[UUID] = Field(
        default=None,
        description="New id of the collision loser, if one was re-inserted"
    )


class ResolvedSet(BaseModel):
    """
    Resolver output for one entity set (or one month group).

    merged is the authoritative id -> record map to apply on both sides.
    Deferred ids are held out of merged: retained_local is what the local
    store keeps, retained_ancestor is what the snapshot keeps.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    entity_type: EntityType
    merged: dict[UUID, Any] = Field(default_factory=dict)
    retained_local: dict[UUID, Any] = Field(default_factory=dict)
    retained_ancestor: dict[UUID, Any] = Field(default_factory=dict)
    outcomes: list[RecordOutcome] = Field(default_factory=list)

    def count(self, outcome: OutcomeClass) -> int:
        return sum(1 for item in self.outcomes if item.outcome == outcome)

    def local_view(self) -> dict[UUID, Any]:
        """Records the local store should hold after applying."""
        view = dict(self.merged)
        view.update(self.retained_local)
        return view

    def snapshot_view(self) -> dict[UUID, Any]:
        """Records the next snapshot should hold."""
        view = dict(self.merged)
        view.update(self.retained_ancestor)
        return view


class DocumentResolution(BaseModel):
    """Outcome of last-writer-wins on the settings document."""
    settings: LedgerSettings
    winner: str  # "local" or "remote"
    outcome: OutcomeClass
    decision: Optional[FieldDecision] = None


# =============================================================================
# SNAPSHOT
# =============================================================================

class Snapshot(BaseModel):
    """
    The last synchronized state, used as the merge ancestor.

    Written only by the orchestrator, after a cycle's writes are done.
    """
    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    taken_at: datetime = Field(default_factory=utc_now)
    transactions: list[Transaction] = Field(default_factory=list)
    members: list[Member] = Field(default_factory=list)
    categories: list[Category] = Field(default_factory=list)
    settings: Optional[LedgerSettings] = None

    @field_validator('taken_at')
    @classmethod
    def normalize_taken_at(cls, v: datetime) -> datetime:
        return normalize_timestamp(v)

    def records(self, entity_type: EntityType) -> dict[UUID, Any]:
        if entity_type == EntityType.TRANSACTION:
            items = self.transactions
        elif entity_type == EntityType.MEMBER:
            items = self.members
        elif entity_type == EntityType.CATEGORY:
            items = self.categories
        else:
            raise ValueError(f"Not a record entity set: {entity_type}")
        return {item.id: item for item in items}


# =============================================================================
# ORCHESTRATION
# =============================================================================

class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING_REMOTE = "fetching_remote"
    DIFFING = "diffing"
    RESOLVING = "resolving"
    APPLYING_LOCAL = "applying_local"
    WRITING_REMOTE = "writing_remote"
    UPDATING_SNAPSHOT = "updating_snapshot"
    FAILED = "failed"


class SyncTrigger(str, Enum):
    APP_FOREGROUND = "app_foreground"
    USER_ACTION = "user_action"
    MANUAL = "manual"


class SyncReport(BaseModel):
    """What one sync cycle did. Returned to every caller of that cycle."""

    cycle_id: UUID = Field(default_factory=uuid4)
    trigger: SyncTrigger = SyncTrigger.MANUAL
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    success: bool = False
    error: Optional[str] = None
    first_sync: bool = False
    author_member_id: Optional[UUID] = Field(
        default=None,
        description="Member whose identity token matches this device"
    )
    states: list[SyncState] = Field(default_factory=list)

    records_applied_locally: int = 0
    files_written: list[str] = Field(default_factory=list)
    clean_merges: int = 0
    conflicts_resolved: int = 0
    unresolved_conflicts: int = 0
    id_collisions: int = 0
    deferred_deletes: int = 0
    malformed_records: int = 0
    skipped: list[str] = Field(
        default_factory=list,
        description="Entity sets or month groups left for a later cycle"
    )
    coalesced_requests: int = Field(
        default=0,
        description="Calls that arrived during the cycle and were folded into it"
    )
