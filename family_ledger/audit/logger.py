"""
Audit Logger

DESIGN DECISION: Every automatic sync decision is logged.
This provides:
1. Complete traceability of merges nobody was asked to confirm
2. Debugging capability when devices disagree
3. A history the user can inspect

The audit logger:
- Is async to not block the sync cycle
- Gracefully handles failures (a broken audit log never fails a sync)
- Supports correlation IDs to trace all events of one cycle
"""

import logging
import sys
from typing import Optional
from uuid import UUID, uuid4

import structlog

from family_ledger.config import get_settings
from family_ledger.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from family_ledger.models.sync import FieldDecision, SyncReport
from family_ledger.services.storage import AuditStorageInterface


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structlog (JSON lines) on top of stdlib logging."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(get_settings().app.log_level)


class AuditLogger:
    """
    Records ledger and sync events for a device.

    Logs events both to:
    1. A JSON line through structlog
    2. An AuditStorageInterface (for persistence and user visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
        device_id: Optional[str] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Where events are kept after logging.
                    Without one, events only reach the structured log.
            device_id: Stamped on every event
        """
        self._storage = storage
        self._device_id = device_id
        self._logger = structlog.get_logger(__name__)

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        The structured log always gets the event; storage gets it when configured.

        False only when a configured storage rejected or failed the append.
        """
        if self._device_id and not event.device_id:
            event.device_id = self._device_id

        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        elif event.severity == AuditSeverity.DEBUG:
            self._logger.debug("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # audit trouble must not fail the caller
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_sync_started(self, correlation_id: UUID, trigger: str) -> None:
        await self.log(AuditEventBuilder.sync_started(correlation_id, trigger))

    async def log_sync_completed(self, report: SyncReport) -> None:
        await self.log(AuditEventBuilder.sync_completed(report))

    async def log_sync_failed(self, report: SyncReport, error_message: str) -> None:
        await self.log(AuditEventBuilder.sync_failed(report, error_message))

    async def log_remote_file_missing(self, path: str, correlation_id: UUID) -> None:
        await self.log(AuditEventBuilder.remote_file_missing(path, correlation_id))

    async def log_remote_file_stale(
        self,
        path: str,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        """Log a remote file that could not be read or decoded."""
        await self.log(
            AuditEventBuilder.remote_file_stale(path, error_message, correlation_id)
        )

    async def log_malformed_record(
        self,
        path: str,
        line_number: int,
        reason: str,
        record_id: Optional[UUID],
        correlation_id: UUID,
    ) -> None:
        await self.log(
            AuditEventBuilder.malformed_record(
                path=path,
                line_number=line_number,
                reason=reason,
                record_id=record_id,
                correlation_id=correlation_id,
            )
        )

    async def log_io_retry(
        self,
        operation: str,
        path: str,
        attempt: int,
        error_message: str,
        correlation_id: Optional[UUID],
    ) -> None:
        await self.log(
            AuditEventBuilder.io_retry(
                operation=operation,
                path=path,
                attempt=attempt,
                error_message=error_message,
                correlation_id=correlation_id,
            )
        )

    async def log_conflict_resolved(
        self,
        entity_type: str,
        decision: FieldDecision,
        correlation_id: UUID,
    ) -> None:
        """Log one field-level (or whole-document) conflict decision."""
        await self.log(
            AuditEventBuilder.conflict_resolved(entity_type, decision, correlation_id)
        )

    async def log_delete_edit_resolved(
        self,
        entity_type: str,
        decision: FieldDecision,
        correlation_id: UUID,
    ) -> None:
        await self.log(
            AuditEventBuilder.delete_edit_resolved(entity_type, decision, correlation_id)
        )

    async def log_id_collision(
        self,
        entity_type: str,
        entity_id: UUID,
        reinserted_id: Optional[UUID],
        decision: FieldDecision,
        correlation_id: UUID,
    ) -> None:
        await self.log(
            AuditEventBuilder.id_collision(
                entity_type=entity_type,
                entity_id=entity_id,
                reinserted_id=reinserted_id,
                decision=decision,
                correlation_id=correlation_id,
            )
        )

    async def log_delete_deferred(
        self,
        entity_type: str,
        entity_id: UUID,
        correlation_id: UUID,
    ) -> None:
        await self.log(
            AuditEventBuilder.delete_deferred(entity_type, entity_id, correlation_id)
        )

    async def log_duplicate_category(
        self,
        name: str,
        category_type: str,
        category_ids: list[UUID],
        correlation_id: UUID,
    ) -> None:
        await self.log(
            AuditEventBuilder.duplicate_category(
                name, category_type, category_ids, correlation_id
            )
        )

    async def log_local_applied(
        self,
        entity_type: str,
        upserts: int,
        deletes: int,
        skipped: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(
            AuditEventBuilder.local_applied(
                entity_type, upserts, deletes, skipped, correlation_id
            )
        )

    async def log_remote_written(self, path: str, size: int, correlation_id: UUID) -> None:
        await self.log(AuditEventBuilder.remote_written(path, size, correlation_id))

    async def log_remote_write_failed(
        self,
        path: str,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(
            AuditEventBuilder.remote_write_failed(path, error_message, correlation_id)
        )

    async def log_snapshot_reset(self, reason: str, correlation_id: UUID) -> None:
        await self.log(AuditEventBuilder.snapshot_reset(reason, correlation_id))

    async def log_snapshot_advanced(
        self,
        transactions: int,
        members: int,
        categories: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(
            AuditEventBuilder.snapshot_advanced(
                transactions, members, categories, correlation_id
            )
        )

    async def log_draft_confirmed(
        self,
        transaction_id: UUID,
        draft_id: UUID,
        source: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log user confirmation of a collaborator draft."""
        await self.log(
            AuditEventBuilder.draft_confirmed(
                transaction_id, draft_id, source, correlation_id
            )
        )

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    The orchestrator uses the cycle id; other callers (draft
    confirmation, manual tools) can mint one here.
    """
    return uuid4()
