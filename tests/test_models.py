"""
Tests for Family Ledger models

Test strategy:
1. Unit tests for individual components (models, codec, differ, resolver)
2. Integration tests for sync cycles (in-memory shared folder, tmp_path snapshots)
3. No real shared folder or network in tests
"""

import pytest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from family_ledger.models.ledger import (
    Category,
    LedgerSettings,
    Member,
    OcrDraft,
    TextDraft,
    Transaction,
    TransactionSource,
    VisionDraft,
    canonical_form,
    canonical_text,
    format_timestamp,
    normalize_timestamp,
    parse_draft,
    records_equal,
)
from family_ledger.models.sync import (
    ChangeEntry,
    ChangeKind,
    ChangeSet,
    OutcomeClass,
    RecordOutcome,
    ResolvedSet,
    Snapshot,
)
from family_ledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from family_ledger.models.sync import FieldDecision
from family_ledger.models.validation import ValidationIssue, ValidationResult
from family_ledger.models.ledger import EntityType


class TestTimestamps:
    """Tests for timestamp normalization."""

    def test_naive_timestamp_is_utc(self):
        """Test that naive datetimes are taken as UTC."""
        value = normalize_timestamp(datetime(2024, 1, 15, 10, 30, 0))
        assert value.tzinfo == timezone.utc
        assert value.hour == 10

    def test_offset_converted_and_fraction_dropped(self):
        """Test offset conversion and sub-second truncation."""
        shanghai = timezone(timedelta(hours=8))
        value = normalize_timestamp(datetime(2024, 1, 15, 18, 30, 0, 999999, tzinfo=shanghai))
        assert value == datetime(2024, 1, 15, 10, 30, 0, tzinfo=timezone.utc)

    def test_format_timestamp_uses_z(self):
        """Test the wire form of a timestamp."""
        value = datetime(2024, 1, 15, 10, 30, 0, tzinfo=timezone.utc)
        assert format_timestamp(value) == "2024-01-15T10:30:00Z"


class TestTransaction:
    """Tests for the Transaction model."""

    def test_transaction_creation(self, make_txn):
        """Test Transaction model creation."""
        txn = make_txn("25.50", date(2024, 1, 15))
        assert txn.amount == Decimal("25.50")
        assert txn.month_key == "2024-01"
        assert txn.source == TransactionSource.MANUAL
        assert txn.currency == "CNY"

    def test_transaction_rejects_non_positive_amount(self):
        """Test that zero and negative amounts are rejected."""
        with pytest.raises(ValueError):
            Transaction(date=date(2024, 1, 15), amount=Decimal("0"))
        with pytest.raises(ValueError):
            Transaction(date=date(2024, 1, 15), amount=Decimal("-3"))

    def test_participants_deduplicated_in_order(self):
        """Test participant ids keep first-occurrence order."""
        a, b = uuid4(), uuid4()
        txn = Transaction(date=date(2024, 1, 15), amount=Decimal("1"), participant_ids=[a, b, a])
        assert txn.participant_ids == [a, b]

    def test_currency_upper_cased(self):
        """Test currency normalization."""
        txn = Transaction(date=date(2024, 1, 15), amount=Decimal("1"), currency=" usd ")
        assert txn.currency == "USD"

    def test_empty_ocr_text_is_none(self):
        """Test that an empty OCR text reads as absent."""
        txn = Transaction(date=date(2024, 1, 15), amount=Decimal("1"), ocr_text="")
        assert txn.ocr_text is None

    def test_touch_bumps_updated_at(self, make_txn):
        """Test that an edit bumps updated_at and keeps the id."""
        txn = make_txn()
        later = datetime(2024, 2, 1, 9, 0, 0, tzinfo=timezone.utc)
        edited = txn.touch(now=later, note="dinner")
        assert edited.id == txn.id
        assert edited.note == "dinner"
        assert edited.updated_at == later
        assert txn.note == ""

    def test_touch_revalidates(self, make_txn):
        """Test that an edit cannot bypass validation."""
        with pytest.raises(ValueError):
            make_txn().touch(amount=Decimal("-1"))


class TestMemberAndCategory:
    """Tests for Member and Category models."""

    def test_nickname_defaults_to_name(self):
        """Test nickname fallback."""
        member = Member(name="  Carol  ")
        assert member.name == "Carol"
        assert member.nickname == "Carol"
        assert member.display_name == "Carol"

    def test_member_matches_name_or_nickname(self, alice):
        """Test lookups by name and nickname."""
        assert alice.matches_name("Alice")
        assert alice.matches_name(" Mom ")
        assert not alice.matches_name("Bob")

    def test_empty_identity_token_is_none(self):
        """Test that an empty identity token reads as unlinked."""
        assert Member(name="Carol", identity_token="").identity_token is None

    def test_member_requires_name(self):
        """Test that a blank name is rejected."""
        with pytest.raises(ValueError):
            Member(name="   ")

    def test_category_defaults(self):
        """Test Category default icon and color."""
        category = Category(name="Transport")
        assert category.icon == "tag"
        assert category.color == "blue"
        assert category.is_default is False


class TestCanonicalForm:
    """Tests for structural equality."""

    def test_equal_amounts_with_different_scale(self, make_txn):
        """Test that 10.5 and 10.50 compare equal."""
        a = make_txn("10.5")
        b = a.model_copy(update={"amount": Decimal("10.50")})
        assert records_equal(a, b)

    def test_changed_field_breaks_equality(self, make_txn):
        """Test that any field change is visible."""
        a = make_txn()
        assert not records_equal(a, a.model_copy(update={"note": "x"}))

    def test_none_handling(self, make_txn):
        """Test that None equals only None."""
        assert records_equal(None, None)
        assert not records_equal(make_txn(), None)

    def test_canonical_form_is_json_friendly(self, make_txn):
        """Test canonical values are plain strings."""
        form = canonical_form(make_txn("25.50"))
        assert form["amount"] == "25.5"
        assert form["date"] == "2024-01-15"
        assert form["updated_at"] == "2024-01-10T08:00:00Z"
        assert form["type"] == "expense"

    def test_canonical_text_for_lists_and_bools(self):
        """Test tie-break strings for lists and booleans."""
        a, b = uuid4(), uuid4()
        assert canonical_text([a, b]) == f"{a};{b}"
        assert canonical_text(True) == "true"
        assert canonical_text(None) == ""


class TestLedgerSettings:
    """Tests for the settings document model."""

    def test_unknown_keys_survive(self):
        """Test that keys from newer app versions are kept."""
        settings = LedgerSettings.model_validate({"currency": "CNY", "theme": "dark"})
        assert settings.model_extra == {"theme": "dark"}
        assert canonical_form(settings)["theme"] == "dark"

    def test_default_updated_at_is_epoch(self):
        """Test that an untouched document loses to any edit."""
        assert LedgerSettings().updated_at == datetime(1970, 1, 1, tzinfo=timezone.utc)


class TestDrafts:
    """Tests for collaborator draft variants."""

    def test_parse_text_draft(self):
        """Test the discriminator picks TextDraft."""
        draft = parse_draft({"source": "text", "date": "2024-01-15", "amount": "30"})
        assert isinstance(draft, TextDraft)
        assert draft.amount == Decimal("30")

    def test_parse_vision_draft(self):
        """Test the discriminator picks VisionDraft."""
        draft = parse_draft({"source": "vision_model", "date": "2024-01-15", "amount": "30"})
        assert isinstance(draft, VisionDraft)

    def test_ocr_draft_requires_text(self):
        """Test that an OCR draft without OCR text is rejected."""
        with pytest.raises(PydanticValidationError):
            parse_draft({"source": "ocr", "date": "2024-01-15", "amount": "30"})
        draft = parse_draft({
            "source": "ocr",
            "date": "2024-01-15",
            "amount": "30",
            "ocr_text": "TOTAL 30.00",
        })
        assert isinstance(draft, OcrDraft)

    def test_unknown_source_rejected(self):
        """Test that manual entries are not drafts."""
        with pytest.raises(PydanticValidationError):
            parse_draft({"source": "manual", "date": "2024-01-15", "amount": "30"})

    def test_confidence_bounds(self):
        """Test confidence must be between 0 and 1."""
        with pytest.raises(ValueError):
            TextDraft(date=date(2024, 1, 15), amount=Decimal("1"), confidence_amount=1.5)


class TestSyncModels:
    """Tests for change sets, resolved sets and snapshots."""

    def test_change_set_by_kind(self):
        """Test filtering entries by kind."""
        a, b = uuid4(), uuid4()
        change_set = ChangeSet(
            entity_type=EntityType.MEMBER,
            entries=[
                ChangeEntry(id=a, kind=ChangeKind.UNCHANGED),
                ChangeEntry(id=b, kind=ChangeKind.CONFLICT),
            ],
        )
        assert len(change_set) == 2
        assert [e.id for e in change_set.by_kind(ChangeKind.CONFLICT)] == [b]
        assert change_set.kinds() == {a: ChangeKind.UNCHANGED, b: ChangeKind.CONFLICT}

    def test_resolved_set_views(self, make_txn):
        """Test that retained records appear in the local view only as local."""
        kept = make_txn()
        deferred = make_txn("9")
        ancestor_version = deferred.model_copy(update={"note": "old"})
        resolved = ResolvedSet(
            entity_type=EntityType.TRANSACTION,
            merged={kept.id: kept},
            retained_local={deferred.id: deferred},
            retained_ancestor={deferred.id: ancestor_version},
            outcomes=[
                RecordOutcome(
                    entity_id=deferred.id,
                    kind=ChangeKind.REMOTE_DELETED,
                    outcome=OutcomeClass.UNRESOLVED_CONFLICT,
                )
            ],
        )
        assert resolved.local_view() == {kept.id: kept, deferred.id: deferred}
        assert resolved.snapshot_view()[deferred.id] == ancestor_version
        assert resolved.count(OutcomeClass.UNRESOLVED_CONFLICT) == 1

    def test_snapshot_records_by_entity(self, alice, make_txn):
        """Test snapshot lookup tables."""
        txn = make_txn()
        snapshot = Snapshot(transactions=[txn], members=[alice])
        assert snapshot.records(EntityType.TRANSACTION) == {txn.id: txn}
        assert snapshot.records(EntityType.MEMBER) == {alice.id: alice}
        assert snapshot.records(EntityType.CATEGORY) == {}


class TestAuditModels:
    """Tests for audit-related models."""

    def test_audit_event_creation(self):
        """Test AuditEvent model creation."""
        event = AuditEvent(
            event_type=AuditEventType.SYNC_STARTED,
            description="Sync cycle started",
        )
        assert event.event_type == AuditEventType.SYNC_STARTED
        assert event.severity == AuditSeverity.INFO

    def test_audit_event_to_log_dict(self):
        """Test conversion to log dictionary."""
        event = AuditEvent(
            event_type=AuditEventType.REMOTE_WRITTEN,
            description="Remote file written",
            details={"path": "members.csv"},
        )
        log_dict = event.to_log_dict()
        assert "event_id" in log_dict
        assert log_dict["event_type"] == "remote_written"
        assert log_dict["details"]["path"] == "members.csv"

    def test_audit_event_builder_conflict_resolved(self):
        """Test AuditEventBuilder.conflict_resolved."""
        entity_id = uuid4()
        correlation_id = uuid4()
        decision = FieldDecision(
            entity_id=entity_id,
            field="amount",
            local=Decimal("10.50"),
            remote=Decimal("12"),
            chosen=Decimal("12"),
            reason="both changed, remote updated_at is later",
        )

        event = AuditEventBuilder.conflict_resolved("transaction", decision, correlation_id)

        assert event.event_type == AuditEventType.CONFLICT_RESOLVED
        assert event.entity_id == entity_id
        assert event.correlation_id == correlation_id
        assert event.details["local"] == "10.5"
        assert event.details["chosen"] == "12"

    def test_audit_event_builder_remote_write_failed(self):
        """Test that failed writes are errors."""
        event = AuditEventBuilder.remote_write_failed("members.csv", "disk full", uuid4())
        assert event.severity == AuditSeverity.ERROR
        assert event.error_message == "disk full"


class TestValidationResult:
    """Tests for ValidationResult model."""

    def test_validation_result_has_errors(self):
        """Test has_errors property."""
        result = ValidationResult(
            draft_id=uuid4(),
            schema_valid=False,
            semantic_valid=False,
            is_valid=False,
            can_confirm=False,
            issues=[
                ValidationIssue(
                    field="amount",
                    issue_type="invalid_value",
                    message="Amount must be greater than zero",
                    severity="error",
                ),
            ],
        )
        assert result.has_errors is True
        assert result.error_count == 1

    def test_validation_result_warnings_only(self):
        """Test that warnings don't count as errors."""
        result = ValidationResult(
            draft_id=uuid4(),
            schema_valid=True,
            semantic_valid=True,
            is_valid=True,
            can_confirm=True,
            issues=[
                ValidationIssue(
                    field="date",
                    issue_type="future_date",
                    message="Date in future",
                    severity="warning",
                ),
            ],
        )
        assert result.has_errors is False
        assert result.error_count == 0

    def test_issue_severity_is_checked(self):
        """Test that unknown severities are rejected."""
        with pytest.raises(ValueError):
            ValidationIssue(field="x", issue_type="x", message="x", severity="fatal")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
