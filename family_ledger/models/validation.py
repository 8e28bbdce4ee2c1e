"""
Draft validation models.

Results of checking a collaborator draft before the user confirms it,
and the records produced once they do.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from family_ledger.models.ledger import Category, Member, Transaction, utc_now


class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'future_date', 'low_confidence')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
    severity: str = Field(
        ...,
        pattern="^(error|warning|info)$",
        description="Issue severity"
    )
    suggested_fix: Optional[str] = Field(
        default=None,
        description="Suggested fix if available"
    )


class ValidationResult(BaseModel):
    """
    Result of the two-stage validation.

    Stage 1: Schema validation (required values, positive amount)
    Stage 2: Semantic validation (dates, magnitudes, confidence, references)
    """

    draft_id: UUID = Field(
        ...,
        description="ID of the draft being validated"
    )
    validated_at: datetime = Field(default_factory=utc_now)

    # Stage results
    schema_valid: bool
    semantic_valid: bool

    # Overall result
    is_valid: bool
    can_confirm: bool = Field(
        ...,
        description="Can the user confirm this draft (possibly after review)?"
    )

    issues: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[str] = Field(
        default_factory=list,
        description="Non-blocking warnings"
    )

    @property
    def has_errors(self) -> bool:
        """Check if there are any error-level issues."""
        return any(issue.severity == "error" for issue in self.issues)

    @property
    def error_count(self) -> int:
        return sum(1 for issue in self.issues if issue.severity == "error")


class ConfirmedDraft(BaseModel):
    """
    A draft the user accepted, turned into ledger records.

    new_members and new_categories were created by name lookup and must
    be stored together with the transaction.
    """

    draft_id: UUID
    transaction: Transaction
    new_members: list[Member] = Field(default_factory=list)
    new_categories: list[Category] = Field(default_factory=list)
