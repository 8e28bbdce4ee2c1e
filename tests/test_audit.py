"""
Tests for the audit logger.
"""

from uuid import UUID, uuid4

import pytest

from family_ledger.audit import AuditLogger, create_correlation_id
from family_ledger.exceptions import IOFailure
from family_ledger.models.audit import AuditEventBuilder, AuditEventType, AuditSeverity
from family_ledger.models.sync import FieldDecision, SyncReport
from family_ledger.services.storage import InMemoryAuditStorage


class BrokenAuditStorage(InMemoryAuditStorage):
    """Audit storage whose disk is full."""

    async def append_event(self, event):
        raise IOFailure("disk full")


class TestAuditLogger:
    """Tests for AuditLogger."""

    async def test_persists_and_stamps_device(self, audit_storage):
        """Test that events are stored with the device id."""
        audit = AuditLogger(storage=audit_storage, device_id="phone-a")
        cycle = create_correlation_id()

        await audit.log_sync_started(cycle, "manual")

        event = audit_storage.events[0]
        assert event.event_type == AuditEventType.SYNC_STARTED
        assert event.device_id == "phone-a"
        assert event.correlation_id == cycle

    async def test_explicit_device_id_kept(self, audit_storage):
        """Test that an event already carrying a device id keeps it."""
        audit = AuditLogger(storage=audit_storage, device_id="phone-a")
        event = AuditEventBuilder.sync_started(uuid4(), "manual")
        event.device_id = "imported"

        assert await audit.log(event) is True
        assert audit_storage.events[0].device_id == "imported"

    async def test_storage_failure_does_not_raise(self):
        """Test that a broken audit log never fails the caller."""
        audit = AuditLogger(storage=BrokenAuditStorage())
        assert await audit.log(AuditEventBuilder.sync_started(uuid4(), "manual")) is False

    async def test_without_storage(self):
        """Test structured-log-only mode."""
        audit = AuditLogger()
        assert await audit.log(AuditEventBuilder.sync_started(uuid4(), "manual")) is True

    async def test_conflict_decision_details(self, audit_storage):
        """Test that a field decision is recorded with both values."""
        audit = AuditLogger(storage=audit_storage)
        record_id = uuid4()
        decision = FieldDecision(
            entity_id=record_id,
            field="note",
            local="apple",
            remote="banana",
            chosen="banana",
            reason="equal timestamps, greater value",
        )

        await audit.log_conflict_resolved("transaction", decision, uuid4())

        event = audit_storage.events[0]
        assert event.entity_id == record_id
        assert event.details["field"] == "note"
        assert event.details["chosen"] == "banana"

    async def test_sync_failed_is_error(self, audit_storage):
        """Test the severity of a failed cycle."""
        audit = AuditLogger(storage=audit_storage)
        report = SyncReport()

        await audit.log_sync_failed(report, "IOFailure: offline")

        event = audit_storage.events[0]
        assert event.event_type == AuditEventType.SYNC_FAILED
        assert event.severity == AuditSeverity.ERROR
        assert event.correlation_id == report.cycle_id

    async def test_log_error(self, audit_storage):
        """Test the system error helper."""
        audit = AuditLogger(storage=audit_storage)
        await audit.log_error("Boom", "it broke", details={"step": "write"})

        event = audit_storage.events[0]
        assert event.event_type == AuditEventType.SYSTEM_ERROR
        assert event.error_message == "it broke"
        assert event.details == {"step": "write"}


def test_correlation_ids_unique():
    """Test that each call mints a new id."""
    first = create_correlation_id()
    assert isinstance(first, UUID)
    assert first != create_correlation_id()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
