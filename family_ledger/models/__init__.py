"""
Data Models Package

This package contains all Pydantic models used by the Family Ledger engine.
All data flowing through the sync cycle must conform to these schemas.
"""

from family_ledger.models.ledger import (
    Category,
    EntityType,
    LedgerRecord,
    LedgerSettings,
    Member,
    MemberRole,
    OcrDraft,
    ParsedDraft,
    ReminderConfig,
    ReminderFrequency,
    TextDraft,
    Transaction,
    TransactionSource,
    TransactionType,
    VisionDraft,
    canonical_form,
    canonical_json,
    parse_draft,
    records_equal,
)
from family_ledger.models.sync import (
    ChangeEntry,
    ChangeKind,
    ChangeSet,
    DocumentResolution,
    FieldDecision,
    OutcomeClass,
    RecordOutcome,
    ResolvedSet,
    Snapshot,
    SyncReport,
    SyncState,
    SyncTrigger,
)
from family_ledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from family_ledger.models.validation import (
    ConfirmedDraft,
    ValidationIssue,
    ValidationResult,
)

__all__ = [
    # Ledger models
    "Category",
    "EntityType",
    "LedgerRecord",
    "LedgerSettings",
    "Member",
    "MemberRole",
    "OcrDraft",
    "ParsedDraft",
    "ReminderConfig",
    "ReminderFrequency",
    "TextDraft",
    "Transaction",
    "TransactionSource",
    "TransactionType",
    "VisionDraft",
    "canonical_form",
    "canonical_json",
    "parse_draft",
    "records_equal",
    # Sync models
    "ChangeEntry",
    "ChangeKind",
    "ChangeSet",
    "DocumentResolution",
    "FieldDecision",
    "OutcomeClass",
    "RecordOutcome",
    "ResolvedSet",
    "Snapshot",
    "SyncReport",
    "SyncState",
    "SyncTrigger",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
    # Validation models
    "ConfirmedDraft",
    "ValidationIssue",
    "ValidationResult",
]
