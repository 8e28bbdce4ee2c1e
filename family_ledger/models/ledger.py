"""
Core Data Models for Family Ledger

These models define the strict schemas for the four ledger entity sets
that travel through the shared folder:
1. Transactions (partitioned by month bucket)
2. Members
3. Categories
4. The ledger settings document

DESIGN DECISION: Every timestamp is normalized to UTC at whole-second
resolution when a model is built. The wire format only carries seconds,
so anything finer would show up as a false conflict after a round trip.

DESIGN DECISION: Amounts are Decimal, never float. Merges run on every
device, and float rounding drift would make two devices disagree.
"""

import json
from datetime import date as date_type
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    """Current time, already normalized."""
    return normalize_timestamp(datetime.now(timezone.utc))


def normalize_timestamp(value: datetime) -> datetime:
    """UTC, whole seconds. Naive values are taken to be UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.replace(microsecond=0)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 with a trailing Z, e.g. 2024-01-15T10:30:00Z."""
    return normalize_timestamp(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def month_key_for(day: date_type) -> str:
    return f"{day.year:04d}-{day.month:02d}"


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class EntityType(str, Enum):
    """The entity sets the engine synchronizes."""
    TRANSACTION = "transaction"
    MEMBER = "member"
    CATEGORY = "category"
    SETTINGS = "settings"


class TransactionType(str, Enum):
    EXPENSE = "expense"
    INCOME = "income"


class TransactionSource(str, Enum):
    """
    How a transaction was created (provenance).

    Only MANUAL is typed by a person; the others arrive as drafts from
    collaborators and are confirmed by the user first.
    """
    MANUAL = "manual"
    TEXT_AI = "text"
    VISION_AI = "vision_model"
    OCR = "ocr"


class MemberRole(str, Enum):
    ADMIN = "admin"     # can change settings, export, manage categories
    MEMBER = "member"   # can record, view and edit transactions


class ReminderFrequency(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"


# =============================================================================
# LEDGER ENTITIES
# =============================================================================

class Transaction(BaseModel):
    """
    A single ledger entry.

    Lifecycle: created by the UI, by a confirmed draft, or by recurring
    materialization; mutated only by explicit user edit (which bumps
    updated_at); deleted only by explicit user action.

    participant_ids, when non-empty, is expected to include the payer.
    Not enforced here, but the split logic in queries assumes it.
    """
    model_config = ConfigDict(str_strip_whitespace=False)

    id: UUID = Field(
        default_factory=uuid4,
        description="Stable identifier, never reused"
    )
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(
        default_factory=utc_now,
        description="Last-modified timestamp, drives conflict tie-breaks"
    )
    date: date_type = Field(
        ...,
        description="Transaction date, decides the month bucket"
    )
    amount: Decimal = Field(
        ...,
        gt=0,
        description="Fixed-point amount, always positive"
    )
    type: TransactionType = TransactionType.EXPENSE
    category_id: Optional[UUID] = None
    payer_id: Optional[UUID] = None
    participant_ids: list[UUID] = Field(
        default_factory=list,
        description="Ordered set of members sharing the cost"
    )
    note: str = ""
    merchant: str = ""
    source: TransactionSource = TransactionSource.MANUAL
    ocr_text: Optional[str] = None
    currency: str = Field(default="CNY", min_length=1, max_length=8)

    @field_validator('created_at', 'updated_at')
    @classmethod
    def normalize_timestamps(cls, v: datetime) -> datetime:
        return normalize_timestamp(v)

    @field_validator('participant_ids')
    @classmethod
    def dedupe_participants(cls, v: list[UUID]) -> list[UUID]:
        """Keep first occurrence order, drop repeats."""
        seen = set()
        ordered = []
        for member_id in v:
            if member_id not in seen:
                seen.add(member_id)
                ordered.append(member_id)
        return ordered

    @field_validator('currency')
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator('ocr_text')
    @classmethod
    def empty_ocr_text_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    @property
    def month_key(self) -> str:
        """Month bucket, e.g. '2024-01'."""
        return month_key_for(self.date)

    def touch(self, now: Optional[datetime] = None, **changes: Any) -> "Transaction":
        """Return an edited copy with updated_at bumped."""
        data = self.model_dump()
        data.update(changes)
        data["updated_at"] = now or utc_now()
        return Transaction.model_validate(data)


class Member(BaseModel):
    """
    A family member.

    The id is stable across renames; transactions refer to members by id
    only, so a rename on one device never breaks another device's rows.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Display name (required)"
    )
    nickname: str = Field(default="", max_length=100)
    role: MemberRole = MemberRole.MEMBER
    avatar_color: str = "blue"
    identity_token: Optional[str] = Field(
        default=None,
        description="Linked identity, attributes which member authored a sync"
    )
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator('created_at', 'updated_at')
    @classmethod
    def normalize_timestamps(cls, v: datetime) -> datetime:
        return normalize_timestamp(v)

    @field_validator('identity_token')
    @classmethod
    def empty_token_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    @model_validator(mode='after')
    def default_nickname(self) -> 'Member':
        if not self.nickname:
            self.nickname = self.name
        return self

    @property
    def display_name(self) -> str:
        return self.nickname or self.name

    def matches_name(self, name: str) -> bool:
        needle = name.strip()
        return needle in (self.name, self.nickname)


class Category(BaseModel):
    """
    A transaction category.

    (name, type) should be unique per ledger, but two devices can create
    the same pair concurrently. The resolver keeps both and logs it.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=100)
    icon: str = "tag"
    color: str = "blue"
    type: TransactionType = TransactionType.EXPENSE
    is_default: bool = False
    sort_order: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator('created_at', 'updated_at')
    @classmethod
    def normalize_timestamps(cls, v: datetime) -> datetime:
        return normalize_timestamp(v)


class ReminderConfig(BaseModel):
    """Reminder preferences. Scheduling itself belongs to the notification layer."""

    model_config = ConfigDict(extra="allow")

    id: UUID = Field(default_factory=uuid4)
    hour: int = Field(default=14, ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)
    message: str = "Time to record today's spending!"
    frequency: ReminderFrequency = ReminderFrequency.DAILY
    enabled: bool = True


class LedgerSettings(BaseModel):
    """
    Ledger-wide preferences, stored as one JSON document.

    DESIGN DECISION: extra="allow" keeps keys written by newer app
    versions. Merging is last-writer-wins for the whole document, so
    unknown keys survive untouched.
    """
    model_config = ConfigDict(extra="allow")

    schema_version: int = 1
    currency: str = "CNY"
    default_split_all: bool = True
    default_participant_ids: list[UUID] = Field(default_factory=list)
    ledger_folder: Optional[str] = Field(
        default=None,
        description="Shared-folder path of this ledger"
    )
    reminders: list[ReminderConfig] = Field(default_factory=list)
    updated_at: datetime = Field(
        default=EPOCH,
        description="Document-level last-modified timestamp"
    )

    @field_validator('updated_at')
    @classmethod
    def normalize_updated_at(cls, v: datetime) -> datetime:
        return normalize_timestamp(v)


LedgerRecord = Union[Transaction, Member, Category]

RECORD_MODELS: dict[EntityType, type] = {
    EntityType.TRANSACTION: Transaction,
    EntityType.MEMBER: Member,
    EntityType.CATEGORY: Category,
}


def entity_type_of(record: BaseModel) -> EntityType:
    for entity_type, model in RECORD_MODELS.items():
        if isinstance(record, model):
            return entity_type
    raise TypeError(f"Not a ledger record: {type(record).__name__}")


# =============================================================================
# CANONICAL FORM - used for equality and deterministic tie-breaks
# =============================================================================

def _canonical_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, date_type):
        return value.isoformat()
    if isinstance(value, Decimal):
        # 10.5 and 10.50 are the same amount
        return format(value.normalize(), "f")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, BaseModel):
        return canonical_form(value)
    if isinstance(value, dict):
        return {str(k): _canonical_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical_value(v) for v in value]
    return value


def canonical_form(record: BaseModel) -> dict[str, Any]:
    """Field-by-field comparable form of a record (extra keys included)."""
    data = dict(record)
    if record.model_extra:
        data.update(record.model_extra)
    return {name: _canonical_value(value) for name, value in data.items()}


def canonical_json(record: BaseModel) -> str:
    return json.dumps(canonical_form(record), sort_keys=True, ensure_ascii=False)


def records_equal(a: Optional[BaseModel], b: Optional[BaseModel]) -> bool:
    """Structural equality after timestamp normalization. None == None."""
    if a is None or b is None:
        return a is None and b is None
    return canonical_form(a) == canonical_form(b)


def canonical_text(value: Any) -> str:
    """String used for the lexical tie-break between two field values."""
    canonical = _canonical_value(value)
    if canonical is None:
        return ""
    if isinstance(canonical, list):
        return ";".join(
            json.dumps(item, sort_keys=True) if isinstance(item, dict) else str(item)
            for item in canonical
        )
    if isinstance(canonical, dict):
        return json.dumps(canonical, sort_keys=True, ensure_ascii=False)
    if isinstance(canonical, bool):
        return "true" if canonical else "false"
    return str(canonical)


# =============================================================================
# COLLABORATOR DRAFTS - output of the AI / OCR pipeline
# =============================================================================

class DraftBase(BaseModel):
    """
    Fields every parsed draft carries.

    CRITICAL: A draft is PROPOSED data. It only becomes a Transaction
    after the user confirms it (see DraftValidator.confirm).
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    draft_id: UUID = Field(default_factory=uuid4)

    # Required
    date: date_type
    amount: Decimal
    type: TransactionType = TransactionType.EXPENSE

    # Optional - names, resolved to ids on confirmation
    category_name: Optional[str] = None
    payer_name: Optional[str] = None
    participant_names: list[str] = Field(default_factory=list)
    note: str = ""
    merchant: str = ""

    # Confidence scores from the parser
    confidence_amount: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    confidence_date: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class TextDraft(DraftBase):
    """Draft parsed by an AI model from free text."""
    source: Literal[TransactionSource.TEXT_AI] = TransactionSource.TEXT_AI


class VisionDraft(DraftBase):
    """Draft parsed by a vision model from a photo."""
    source: Literal[TransactionSource.VISION_AI] = TransactionSource.VISION_AI


class OcrDraft(DraftBase):
    """Draft built from on-device OCR text."""
    source: Literal[TransactionSource.OCR] = TransactionSource.OCR
    ocr_text: str = Field(..., min_length=1)


ParsedDraft = Annotated[
    Union[TextDraft, VisionDraft, OcrDraft],
    Field(discriminator="source"),
]

_draft_adapter = TypeAdapter(ParsedDraft)


def parse_draft(payload: dict[str, Any]) -> Union[TextDraft, VisionDraft, OcrDraft]:
    """Validate a collaborator payload into the matching draft variant."""
    return _draft_adapter.validate_python(payload)
