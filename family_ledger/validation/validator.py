"""
Two-Stage Draft Validation

Collaborators (AI text parsing, vision models, on-device OCR) hand the
engine a ParsedDraft. Nothing is written until the user confirms it.

STAGE 1 - SCHEMA VALIDATION:
- Amount present and positive
- Draft not empty

STAGE 2 - SEMANTIC VALIDATION:
- Future date beyond tolerance
- Suspiciously old date
- Absurd or tiny amount
- Low parser confidence
- Unknown payer or category (will be created on confirmation)
- Possible duplicate of an existing transaction

IMPORTANT: Validation NEVER silently fixes issues.
It reports them for human review.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional, Union

import structlog

from family_ledger.audit import AuditLogger
from family_ledger.config import AppSettings, get_settings
from family_ledger.exceptions import StorageError, ValidationError
from family_ledger.models.ledger import (
    Category,
    Member,
    OcrDraft,
    TextDraft,
    Transaction,
    VisionDraft,
    normalize_timestamp,
    utc_now,
)
from family_ledger.models.validation import (
    ConfirmedDraft,
    ValidationIssue,
    ValidationResult,
)
from family_ledger.services.storage import LocalStoreInterface


logger = structlog.get_logger(__name__)

Draft = Union[TextDraft, VisionDraft, OcrDraft]


def find_member(members: Iterable[Member], name: str) -> Optional[Member]:
    """Match by name first, then by nickname."""
    needle = name.strip()
    members = list(members)
    for member in members:
        if member.name == needle:
            return member
    for member in members:
        if member.nickname == needle:
            return member
    return None


def find_category(categories: Iterable[Category], name: str, category_type) -> Optional[Category]:
    needle = name.strip()
    for category in categories:
        if category.name == needle and category.type == category_type:
            return category
    return None


class DraftValidator:
    """
    Validates collaborator drafts through a two-stage pipeline and turns
    confirmed drafts into ledger records.

    Stage 1: Schema validation (no context needed)
    Stage 2: Semantic validation (uses members, categories and the
             local store for duplicate checks)
    """

    def __init__(
        self,
        local_store: Optional[LocalStoreInterface] = None,
        settings: Optional[AppSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        """
        Initialize validator.

        Args:
            local_store: Used for duplicate checks and confirm_and_store.
                        If None, duplicate checking is skipped.
            settings: Thresholds; defaults to the application settings
            audit_logger: Receives draft confirmations
        """
        self._store = local_store
        self._settings = settings or get_settings().app
        self._audit = audit_logger

    def _validate_schema(self, draft: Draft) -> tuple[bool, list[ValidationIssue]]:
        """
        Stage 1: Schema validation.

        Returns: (is_valid, list_of_issues)
        """
        issues = []

        if draft.amount <= 0:
            issues.append(ValidationIssue(
                field="amount",
                issue_type="invalid_value",
                message="Amount must be greater than zero",
                severity="error",
                suggested_fix="Check if the amount was read correctly",
            ))

        if (
            draft.amount <= 0
            and not draft.note
            and not draft.merchant
            and not draft.category_name
        ):
            issues.append(ValidationIssue(
                field="draft",
                issue_type="empty",
                message="Nothing meaningful could be parsed from the input",
                severity="error",
                suggested_fix="Please describe the expense again or enter it manually",
            ))

        is_valid = not any(issue.severity == "error" for issue in issues)
        return is_valid, issues

    def _validate_semantic(
        self,
        draft: Draft,
        members: list[Member],
        categories: list[Category],
        today: date,
    ) -> tuple[bool, list[ValidationIssue]]:
        """
        Stage 2: Semantic validation.

        Returns: (is_valid, list_of_issues)
        """
        issues = []

        max_future_date = today + timedelta(days=self._settings.future_date_tolerance_days)
        if draft.date > max_future_date:
            issues.append(ValidationIssue(
                field="date",
                issue_type="future_date",
                message=f"Date ({draft.date}) is in the future",
                severity="warning",
                suggested_fix="Please verify the date is correct",
            ))

        # Very old date (might be a parse error)
        min_reasonable_date = today - timedelta(days=365 * 2)
        if draft.date < min_reasonable_date:
            issues.append(ValidationIssue(
                field="date",
                issue_type="suspicious_date",
                message=f"Date ({draft.date}) seems unusually old",
                severity="warning",
                suggested_fix="Please verify the date was read correctly",
            ))

        max_amount = Decimal(str(self._settings.max_transaction_amount))
        if draft.amount > max_amount:
            issues.append(ValidationIssue(
                field="amount",
                issue_type="suspicious_value",
                message=f"Amount ({draft.amount:,.2f}) seems unusually high",
                severity="warning",
                suggested_fix="Please verify this amount is correct",
            ))
        elif draft.amount < Decimal("1"):
            issues.append(ValidationIssue(
                field="amount",
                issue_type="suspicious_value",
                message=f"Amount ({draft.amount}) seems unusually low",
                severity="warning",
                suggested_fix="Please verify this amount is correct",
            ))

        threshold = self._settings.min_draft_confidence
        for field, confidence in (
            ("amount", draft.confidence_amount),
            ("date", draft.confidence_date),
        ):
            if confidence is not None and confidence < threshold:
                issues.append(ValidationIssue(
                    field=field,
                    issue_type="low_confidence",
                    message=f"The {field} was read with low confidence ({confidence:.0%})",
                    severity="warning",
                    suggested_fix=f"Please double-check the {field}",
                ))

        if draft.payer_name and find_member(members, draft.payer_name) is None:
            issues.append(ValidationIssue(
                field="payer_name",
                issue_type="unknown_reference",
                message=f"No family member named '{draft.payer_name}'",
                severity="warning",
                suggested_fix="A new member will be added when you confirm",
            ))

        for name in draft.participant_names:
            if find_member(members, name) is None:
                issues.append(ValidationIssue(
                    field="participant_names",
                    issue_type="unknown_reference",
                    message=f"No family member named '{name}'",
                    severity="warning",
                    suggested_fix="A new member will be added when you confirm",
                ))

        if draft.category_name and find_category(categories, draft.category_name, draft.type) is None:
            issues.append(ValidationIssue(
                field="category_name",
                issue_type="unknown_reference",
                message=f"No {draft.type.value} category named '{draft.category_name}'",
                severity="warning",
                suggested_fix="A new category will be added when you confirm",
            ))

        is_valid = not any(issue.severity == "error" for issue in issues)
        return is_valid, issues

    async def _check_duplicates(self, draft: Draft) -> list[ValidationIssue]:
        """
        Check for a transaction with the same date, amount and merchant.

        This requires storage access.
        """
        issues = []

        if self._store is None:
            return issues

        try:
            same_day = await self._store.fetch_transactions(
                date_from=draft.date,
                date_to=draft.date,
            )
        except StorageError as e:
            logger.warning("duplicate_check_unavailable", error=str(e))
            return issues

        for txn in same_day:
            if txn.amount == draft.amount and txn.merchant == draft.merchant:
                issues.append(ValidationIssue(
                    field="duplicate",
                    issue_type="potential_duplicate",
                    message=f"A {txn.amount} transaction on {txn.date} may already exist",
                    severity="warning",
                    suggested_fix="Please verify this isn't a duplicate entry",
                ))
                break

        return issues

    async def validate(
        self,
        draft: Draft,
        members: Iterable[Member] = (),
        categories: Iterable[Category] = (),
        today: Optional[date] = None,
        check_duplicates: bool = True,
    ) -> ValidationResult:
        """
        Run full two-stage validation pipeline.

        Args:
            draft: The parsed draft to validate
            members: Known members (for payer/participant lookups)
            categories: Known categories
            today: Reference date (defaults to the current UTC date)
            check_duplicates: Whether to check for duplicates (requires storage)

        Returns:
            ValidationResult with all issues found
        """
        today = today or utc_now().date()
        all_issues = []

        # Stage 1: Schema validation
        schema_valid, schema_issues = self._validate_schema(draft)
        all_issues.extend(schema_issues)

        # Only run stage 2 if stage 1 passes
        semantic_valid = False
        if schema_valid:
            semantic_valid, semantic_issues = self._validate_semantic(
                draft, list(members), list(categories), today
            )
            all_issues.extend(semantic_issues)

            if check_duplicates:
                all_issues.extend(await self._check_duplicates(draft))

        warnings = [issue.message for issue in all_issues if issue.severity == "warning"]

        return ValidationResult(
            draft_id=draft.draft_id,
            schema_valid=schema_valid,
            semantic_valid=semantic_valid,
            is_valid=schema_valid and semantic_valid,
            can_confirm=schema_valid,
            issues=all_issues,
            warnings=warnings,
        )

    def confirm(
        self,
        draft: Draft,
        members: Iterable[Member],
        categories: Iterable[Category],
        now: Optional[datetime] = None,
        currency: str = "CNY",
    ) -> ConfirmedDraft:
        """
        Turn a user-confirmed draft into a Transaction.

        Categories are found or created by (name, type); payer and
        participants by name or nickname. The payer is always among the
        participants when any are named.

        Raises:
            ValidationError: If the draft fails schema validation
        """
        schema_valid, issues = self._validate_schema(draft)
        if not schema_valid:
            raise ValidationError(
                "; ".join(issue.message for issue in issues if issue.severity == "error")
            )

        now = normalize_timestamp(now) if now else utc_now()
        known_members = list(members)
        known_categories = list(categories)
        new_members: list[Member] = []
        new_categories: list[Category] = []

        def member_for(name: str) -> Member:
            member = find_member(known_members, name)
            if member is None:
                member = Member(name=name, created_at=now, updated_at=now)
                known_members.append(member)
                new_members.append(member)
            return member

        category_id = None
        if draft.category_name:
            category = find_category(known_categories, draft.category_name, draft.type)
            if category is None:
                same_type = [c.sort_order for c in known_categories if c.type == draft.type]
                category = Category(
                    name=draft.category_name,
                    type=draft.type,
                    sort_order=max(same_type, default=-1) + 1,
                    created_at=now,
                    updated_at=now,
                )
                known_categories.append(category)
                new_categories.append(category)
            category_id = category.id

        payer = member_for(draft.payer_name) if draft.payer_name else None
        participant_ids = [member_for(name).id for name in draft.participant_names]
        if payer is not None and participant_ids and payer.id not in participant_ids:
            participant_ids.insert(0, payer.id)

        transaction = Transaction(
            created_at=now,
            updated_at=now,
            date=draft.date,
            amount=draft.amount,
            type=draft.type,
            category_id=category_id,
            payer_id=payer.id if payer else None,
            participant_ids=participant_ids,
            note=draft.note,
            merchant=draft.merchant,
            source=draft.source,
            ocr_text=draft.ocr_text if isinstance(draft, OcrDraft) else None,
            currency=currency,
        )

        return ConfirmedDraft(
            draft_id=draft.draft_id,
            transaction=transaction,
            new_members=new_members,
            new_categories=new_categories,
        )

    async def confirm_and_store(
        self,
        draft: Draft,
        now: Optional[datetime] = None,
    ) -> ConfirmedDraft:
        """
        Confirm a draft against the local store and save the results in
        one transaction.
        """
        if self._store is None:
            raise ValidationError("No local store configured for confirmation")

        members = await self._store.fetch_members()
        categories = await self._store.fetch_categories()
        ledger_settings = await self._store.get_settings()
        confirmed = self.confirm(
            draft, members, categories, now=now, currency=ledger_settings.currency
        )

        async with self._store.transactionally() as session:
            for member in confirmed.new_members:
                await session.upsert(member)
            for category in confirmed.new_categories:
                await session.upsert(category)
            await session.upsert(confirmed.transaction)

        if self._audit:
            await self._audit.log_draft_confirmed(
                transaction_id=confirmed.transaction.id,
                draft_id=draft.draft_id,
                source=draft.source.value,
            )
        return confirmed

    def get_user_friendly_summary(self, result: ValidationResult) -> str:
        """
        Generate a user-friendly summary of validation results.

        This is what we show next to the draft before confirmation.
        """
        if result.is_valid and not result.warnings:
            return "✅ All checks passed! Please review the details below."

        lines = []

        if not result.schema_valid:
            lines.append("❌ This draft can't be saved yet:")
            for issue in result.issues:
                if issue.severity == "error":
                    lines.append(f"   • {issue.message}")
                    if issue.suggested_fix:
                        lines.append(f"     💡 {issue.suggested_fix}")

        if result.warnings:
            lines.append("")
            lines.append("⚠️ Please verify the following:")
            for warning in result.warnings:
                lines.append(f"   • {warning}")

        lines.append("")
        if result.can_confirm:
            lines.append("You can still confirm, but please review carefully.")
        else:
            lines.append("Please fix the issues above before confirming.")

        return "\n".join(lines)
