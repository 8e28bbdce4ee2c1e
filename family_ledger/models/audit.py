"""
Audit Models for Family Ledger

Every automatic decision the sync engine takes is logged for audit.
This provides:
1. Traceability of every merge the user never had to confirm
2. Debugging information when two devices disagree
3. Ability to reconstruct why a record looks the way it does

Audit trails only grow: events are appended and never rewritten.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from family_ledger.models.ledger import canonical_text
from family_ledger.models.sync import FieldDecision, SyncReport


class AuditEventType(str, Enum):
    """
    What happened on a device.

    Every step of a sync cycle has its own event type.
    """
    # Cycle lifecycle
    SYNC_STARTED = "sync_started"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"

    # Remote reads
    REMOTE_FILE_MISSING = "remote_file_missing"
    REMOTE_FILE_STALE = "remote_file_stale"
    MALFORMED_RECORD = "malformed_record"
    IO_RETRY = "io_retry"

    # Resolution
    CONFLICT_RESOLVED = "conflict_resolved"
    DELETE_EDIT_RESOLVED = "delete_edit_resolved"
    ID_COLLISION = "id_collision"
    DELETE_DEFERRED = "delete_deferred"
    DUPLICATE_CATEGORY = "duplicate_category"

    # Writes
    LOCAL_APPLIED = "local_applied"
    REMOTE_WRITTEN = "remote_written"
    REMOTE_WRITE_FAILED = "remote_write_failed"

    # Snapshot
    SNAPSHOT_RESET = "snapshot_reset"
    SNAPSHOT_ADVANCED = "snapshot_advanced"

    # Drafts
    DRAFT_CONFIRMED = "draft_confirmed"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    One entry in a device audit trail.
    Sync cycles and conflict decisions each produce one.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Event id"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC time the event was recorded"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Event kind"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="How serious the event is"
    )

    # Which record the event concerns
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'transaction', 'member', 'file')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="Id of the record involved"
    )

    # Correlation - all events of one sync cycle share it
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., one sync cycle)"
    )
    device_id: Optional[str] = None

    # Event details
    description: str = Field(
        ...,
        max_length=500,
        description="Short summary for people reading the trail"
    )

    # Per-event payload
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Payload specific to the event kind"
    )

    # Set for failures
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Flatten into keyword arguments for structlog.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "device_id": self.device_id,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
        }

    def to_json_line(self) -> str:
        """One line of the append-only JSONL audit file."""
        return json.dumps(self.to_log_dict(), ensure_ascii=False, default=str)


def _decision_details(decision: FieldDecision) -> dict[str, Any]:
    return {
        "field": decision.field,
        "local": canonical_text(decision.local),
        "remote": canonical_text(decision.remote),
        "chosen": canonical_text(decision.chosen),
        "reason": decision.reason,
    }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.sync_started(cycle_id, "manual")
        event = AuditEventBuilder.conflict_resolved("transaction", decision, cycle_id)
    """

    @staticmethod
    def sync_started(correlation_id: UUID, trigger: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_STARTED,
            correlation_id=correlation_id,
            description=f"Sync cycle started ({trigger})",
            details={"trigger": trigger},
        )

    @staticmethod
    def sync_completed(report: SyncReport) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_COMPLETED,
            correlation_id=report.cycle_id,
            description=(
                f"Sync cycle completed: {report.records_applied_locally} local changes, "
                f"{len(report.files_written)} files written"
            ),
            details={
                "files_written": report.files_written,
                "conflicts_resolved": report.conflicts_resolved,
                "unresolved_conflicts": report.unresolved_conflicts,
                "skipped": report.skipped,
                "first_sync": report.first_sync,
            },
        )

    @staticmethod
    def sync_failed(report: SyncReport, error_message: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_FAILED,
            severity=AuditSeverity.ERROR,
            correlation_id=report.cycle_id,
            description="Sync cycle failed, no progress recorded",
            error_message=error_message,
            details={"states": [state.value for state in report.states]},
        )

    @staticmethod
    def remote_file_missing(path: str, correlation_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REMOTE_FILE_MISSING,
            entity_type="file",
            correlation_id=correlation_id,
            description=f"Remote file not found, treated as empty: {path}",
            details={"path": path},
        )

    @staticmethod
    def remote_file_stale(
        path: str,
        error_message: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REMOTE_FILE_STALE,
            severity=AuditSeverity.WARNING,
            entity_type="file",
            correlation_id=correlation_id,
            description=f"Remote file unreadable, skipped this cycle: {path}",
            error_message=error_message,
            details={"path": path},
        )

    @staticmethod
    def malformed_record(
        path: str,
        line_number: int,
        reason: str,
        record_id: Optional[UUID],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MALFORMED_RECORD,
            severity=AuditSeverity.WARNING,
            entity_type="file",
            entity_id=record_id,
            correlation_id=correlation_id,
            description=f"Malformed record skipped at {path}:{line_number}",
            details={"path": path, "line_number": line_number, "reason": reason},
        )

    @staticmethod
    def io_retry(
        operation: str,
        path: str,
        attempt: int,
        error_message: str,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.IO_RETRY,
            severity=AuditSeverity.WARNING,
            entity_type="file",
            correlation_id=correlation_id,
            description=f"Retrying {operation} of {path} (attempt {attempt})",
            error_message=error_message,
            details={"operation": operation, "path": path, "attempt": attempt},
        )

    @staticmethod
    def conflict_resolved(
        entity_type: str,
        decision: FieldDecision,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONFLICT_RESOLVED,
            entity_type=entity_type,
            entity_id=decision.entity_id,
            correlation_id=correlation_id,
            description=f"Conflict on '{decision.field}' resolved: {decision.reason}",
            details=_decision_details(decision),
        )

    @staticmethod
    def delete_edit_resolved(
        entity_type: str,
        decision: FieldDecision,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DELETE_EDIT_RESOLVED,
            severity=AuditSeverity.WARNING,
            entity_type=entity_type,
            entity_id=decision.entity_id,
            correlation_id=correlation_id,
            description="Delete-edit conflict resolved in favour of the edit",
            details=_decision_details(decision),
        )

    @staticmethod
    def id_collision(
        entity_type: str,
        entity_id: UUID,
        reinserted_id: Optional[UUID],
        decision: FieldDecision,
        correlation_id: UUID,
    ) -> AuditEvent:
        details = _decision_details(decision)
        details["reinserted_id"] = str(reinserted_id) if reinserted_id else None
        return AuditEvent(
            event_type=AuditEventType.ID_COLLISION,
            severity=AuditSeverity.WARNING,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description="Both sides added the same id with different content",
            details=details,
        )

    @staticmethod
    def delete_deferred(
        entity_type: str,
        entity_id: UUID,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DELETE_DEFERRED,
            severity=AuditSeverity.WARNING,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description="Remote delete deferred: remote state incomplete this cycle",
        )

    @staticmethod
    def duplicate_category(
        name: str,
        category_type: str,
        category_ids: list[UUID],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DUPLICATE_CATEGORY,
            severity=AuditSeverity.WARNING,
            entity_type="category",
            correlation_id=correlation_id,
            description=f"Duplicate category '{name}' ({category_type}) kept",
            details={"ids": [str(category_id) for category_id in category_ids]},
        )

    @staticmethod
    def local_applied(
        entity_type: str,
        upserts: int,
        deletes: int,
        skipped: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LOCAL_APPLIED,
            entity_type=entity_type,
            correlation_id=correlation_id,
            description=f"Applied {upserts} upserts and {deletes} deletes locally",
            details={"upserts": upserts, "deletes": deletes, "skipped_concurrent_edits": skipped},
        )

    @staticmethod
    def remote_written(path: str, size: int, correlation_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REMOTE_WRITTEN,
            entity_type="file",
            correlation_id=correlation_id,
            description=f"Remote file written: {path}",
            details={"path": path, "size_bytes": size},
        )

    @staticmethod
    def remote_write_failed(
        path: str,
        error_message: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REMOTE_WRITE_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="file",
            correlation_id=correlation_id,
            description=f"Remote write failed, snapshot kept for: {path}",
            error_message=error_message,
            details={"path": path},
        )

    @staticmethod
    def snapshot_reset(reason: str, correlation_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SNAPSHOT_RESET,
            severity=AuditSeverity.WARNING,
            correlation_id=correlation_id,
            description="No usable snapshot, running as first sync",
            details={"reason": reason},
        )

    @staticmethod
    def snapshot_advanced(
        transactions: int,
        members: int,
        categories: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SNAPSHOT_ADVANCED,
            correlation_id=correlation_id,
            description="Snapshot advanced",
            details={
                "transactions": transactions,
                "members": members,
                "categories": categories,
            },
        )

    @staticmethod
    def draft_confirmed(
        transaction_id: UUID,
        draft_id: UUID,
        source: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DRAFT_CONFIRMED,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"User confirmed {source} draft",
            details={"draft_id": str(draft_id), "source": source},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
