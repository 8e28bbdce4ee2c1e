"""
Ledger Record Codec (CSV)

Encodes and decodes the three record sets exchanged through the shared
folder. The files must stay readable by people opening them in a
spreadsheet, and must survive being read while another device is still
writing them.

DESIGN DECISION: Decoding is row-tolerant. A row that cannot be parsed
is reported as MalformedRecord and skipped; the rest of the file is
still returned. The error keeps the raw cells so a writer can put the
row back unchanged. Only text that cannot be read as CSV at all (or has no
recognizable header) fails the whole document with DecodeError.

DESIGN DECISION: Encoding is deterministic. Rows are sorted and every
value has exactly one textual form, so unchanged data always produces
identical bytes and the orchestrator can skip writing it.

Column layouts (header row first, fixed order, versioned by the header):

    transactions  id, created_at, updated_at, date, amount, type,
                  category, payer, participants, note, merchant, source,
                  ocr_text, currency                        (minimum 12)
    members       id, name, nickname, role, avatar_color,
                  identity_token, created_at, updated_at    (minimum 7)
    categories    id, name, icon, color, type, is_default, sort_order,
                  created_at, updated_at                    (minimum 7)

category, payer and participants hold member/category ids, not names,
so a rename never breaks a reference. participants is ';'-joined.
"""

import csv
import io
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, Iterator, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from family_ledger.exceptions import DecodeError, MalformedRecord
from family_ledger.models.ledger import (
    EPOCH,
    Category,
    EntityType,
    LedgerRecord,
    Member,
    MemberRole,
    Transaction,
    TransactionSource,
    TransactionType,
    format_timestamp,
    normalize_timestamp,
)


logger = structlog.get_logger(__name__)


TRANSACTION_COLUMNS = [
    "id",
    "created_at",
    "updated_at",
    "date",
    "amount",
    "type",
    "category",
    "payer",
    "participants",
    "note",
    "merchant",
    "source",
    "ocr_text",
    "currency",
]
TRANSACTION_MIN_COLUMNS = 12

MEMBER_COLUMNS = [
    "id",
    "name",
    "nickname",
    "role",
    "avatar_color",
    "identity_token",
    "created_at",
    "updated_at",
]
MEMBER_MIN_COLUMNS = 7

CATEGORY_COLUMNS = [
    "id",
    "name",
    "icon",
    "color",
    "type",
    "is_default",
    "sort_order",
    "created_at",
    "updated_at",
]
CATEGORY_MIN_COLUMNS = 7

PARTICIPANT_SEPARATOR = ";"

# Values older app versions wrote
_TYPE_ALIASES = {
    "expense": TransactionType.EXPENSE,
    "income": TransactionType.INCOME,
    "支出": TransactionType.EXPENSE,
    "收入": TransactionType.INCOME,
}
_SOURCE_ALIASES = {
    "": TransactionSource.MANUAL,
    "manual": TransactionSource.MANUAL,
    "text": TransactionSource.TEXT_AI,
    "vision_model": TransactionSource.VISION_AI,
    "ocr": TransactionSource.OCR,
    "apple_ocr": TransactionSource.OCR,
}
_TRUE = {"true", "1", "yes"}
_FALSE = {"false", "0", "no", ""}
_FRACTION_RE = re.compile(r"\.\d+")
_BOM = "\ufeff"


class DecodeResult(BaseModel):
    """Records that decoded cleanly plus one MalformedRecord per skipped row."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    records: list[Any] = Field(default_factory=list)
    errors: list[MalformedRecord] = Field(default_factory=list)

    def by_id(self) -> dict[UUID, Any]:
        return {record.id: record for record in self.records}

    def protected_ids(self) -> set[UUID]:
        """Ids of rows that were present but unreadable."""
        return {e.record_id for e in self.errors if e.record_id is not None}


# =============================================================================
# VALUE PARSING
# =============================================================================

def parse_uuid(value: str) -> UUID:
    return UUID(value.strip())


def _parse_optional_uuid(value: str) -> Optional[UUID]:
    value = value.strip()
    return UUID(value) if value else None


def parse_timestamp(value: str) -> datetime:
    """
    Accepts '...Z', explicit offsets, naive values (UTC) and fractional
    seconds (truncated).
    """
    text = value.strip()
    if not text:
        raise ValueError("empty timestamp")
    if text[-1] in "Zz":
        text = text[:-1] + "+00:00"
    # fromisoformat is picky about fraction width before 3.11
    text = _FRACTION_RE.sub("", text, count=1)
    return normalize_timestamp(datetime.fromisoformat(text))


def _parse_date(value: str) -> date:
    text = value.strip()
    if len(text) > 10:
        return parse_timestamp(text).date()
    return date.fromisoformat(text)


def _parse_amount(value: str) -> Decimal:
    amount = Decimal(value.strip())
    if not amount.is_finite():
        raise ValueError(f"amount is not finite: {value!r}")
    return amount


def _parse_type(value: str) -> TransactionType:
    key = value.strip().lower()
    if key not in _TYPE_ALIASES:
        raise ValueError(f"unknown transaction type: {value!r}")
    return _TYPE_ALIASES[key]


def _parse_source(value: str) -> TransactionSource:
    key = value.strip().lower()
    if key not in _SOURCE_ALIASES:
        raise ValueError(f"unknown source: {value!r}")
    return _SOURCE_ALIASES[key]


def _parse_bool(value: str) -> bool:
    key = value.strip().lower()
    if key in _TRUE:
        return True
    if key in _FALSE:
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _parse_participants(value: str) -> list[UUID]:
    return [
        UUID(part.strip())
        for part in value.split(PARTICIPANT_SEPARATOR)
        if part.strip()
    ]


def _format_amount(amount: Decimal) -> str:
    return format(amount, "f")


def _reason(error: Exception) -> str:
    if isinstance(error, PydanticValidationError):
        first = error.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        return f"{location}: {first.get('msg', 'invalid value')}" if location else first.get("msg", "invalid value")
    return str(error) or type(error).__name__


# =============================================================================
# ROW MAPPERS
# =============================================================================

def _transaction_to_row(txn: Transaction) -> list[str]:
    return [
        str(txn.id),
        format_timestamp(txn.created_at),
        format_timestamp(txn.updated_at),
        txn.date.isoformat(),
        _format_amount(txn.amount),
        txn.type.value,
        str(txn.category_id) if txn.category_id else "",
        str(txn.payer_id) if txn.payer_id else "",
        PARTICIPANT_SEPARATOR.join(str(p) for p in txn.participant_ids),
        txn.note,
        txn.merchant,
        txn.source.value,
        txn.ocr_text or "",
        txn.currency,
    ]


def _row_to_transaction(row: list[str], default_currency: str) -> Transaction:
    currency = row[13].strip() if len(row) > 13 and row[13].strip() else default_currency
    return Transaction(
        id=parse_uuid(row[0]),
        created_at=parse_timestamp(row[1]),
        updated_at=parse_timestamp(row[2]),
        date=_parse_date(row[3]),
        amount=_parse_amount(row[4]),
        type=_parse_type(row[5]),
        category_id=_parse_optional_uuid(row[6]),
        payer_id=_parse_optional_uuid(row[7]),
        participant_ids=_parse_participants(row[8]),
        note=row[9],
        merchant=row[10],
        source=_parse_source(row[11]),
        ocr_text=row[12] if len(row) > 12 else None,
        currency=currency,
    )


def _member_to_row(member: Member) -> list[str]:
    return [
        str(member.id),
        member.name,
        member.nickname,
        member.role.value,
        member.avatar_color,
        member.identity_token or "",
        format_timestamp(member.created_at),
        format_timestamp(member.updated_at),
    ]


def _row_to_member(row: list[str], default_currency: str) -> Member:
    created_at = parse_timestamp(row[6])
    updated_at = parse_timestamp(row[7]) if len(row) > 7 and row[7].strip() else created_at
    return Member(
        id=parse_uuid(row[0]),
        name=row[1],
        nickname=row[2],
        role=MemberRole(row[3].strip().lower() or MemberRole.MEMBER.value),
        avatar_color=row[4].strip() or "blue",
        identity_token=row[5],
        created_at=created_at,
        updated_at=updated_at,
    )


def _category_to_row(category: Category) -> list[str]:
    return [
        str(category.id),
        category.name,
        category.icon,
        category.color,
        category.type.value,
        "true" if category.is_default else "false",
        str(category.sort_order),
        format_timestamp(category.created_at),
        format_timestamp(category.updated_at),
    ]


def _row_to_category(row: list[str], default_currency: str) -> Category:
    created_at = parse_timestamp(row[7]) if len(row) > 7 and row[7].strip() else EPOCH
    updated_at = parse_timestamp(row[8]) if len(row) > 8 and row[8].strip() else created_at
    return Category(
        id=parse_uuid(row[0]),
        name=row[1],
        icon=row[2].strip() or "tag",
        color=row[3].strip() or "blue",
        type=_parse_type(row[4]),
        is_default=_parse_bool(row[5]),
        sort_order=int(row[6].strip() or "0"),
        created_at=created_at,
        updated_at=updated_at,
    )


class _Layout:
    def __init__(
        self,
        columns: list[str],
        minimum: int,
        to_row: Callable[[Any], list[str]],
        from_row: Callable[[list[str], str], Any],
        sort_key: Callable[[Any], Any],
    ):
        self.columns = columns
        self.minimum = minimum
        self.to_row = to_row
        self.from_row = from_row
        self.sort_key = sort_key


_LAYOUTS: dict[EntityType, _Layout] = {
    EntityType.TRANSACTION: _Layout(
        TRANSACTION_COLUMNS,
        TRANSACTION_MIN_COLUMNS,
        _transaction_to_row,
        _row_to_transaction,
        # newest date first, then id
        lambda t: (-t.date.toordinal(), str(t.id)),
    ),
    EntityType.MEMBER: _Layout(
        MEMBER_COLUMNS,
        MEMBER_MIN_COLUMNS,
        _member_to_row,
        _row_to_member,
        lambda m: (m.created_at, str(m.id)),
    ),
    EntityType.CATEGORY: _Layout(
        CATEGORY_COLUMNS,
        CATEGORY_MIN_COLUMNS,
        _category_to_row,
        _row_to_category,
        lambda c: (c.type.value, c.sort_order, str(c.id)),
    ),
}


# =============================================================================
# DOCUMENT LEVEL
# =============================================================================

def _rows_with_line_numbers(text: str) -> Iterator[tuple[int, list[str]]]:
    """Yield (starting 1-based line, row). Quoted newlines span lines."""
    reader = csv.reader(io.StringIO(text, newline=""))
    previous = 0
    for row in reader:
        start = previous + 1
        previous = reader.line_num
        yield start, row


def _try_record_id(row: list[str]) -> Optional[UUID]:
    if not row:
        return None
    try:
        return parse_uuid(row[0])
    except ValueError:
        return None


def _try_updated_at(row: list[str], layout: _Layout) -> Optional[datetime]:
    index = layout.columns.index("updated_at")
    if len(row) <= index:
        return None
    try:
        return parse_timestamp(row[index])
    except ValueError:
        return None


def _malformed(line_number: int, reason: str, row: list[str], layout: _Layout) -> MalformedRecord:
    return MalformedRecord(
        line_number,
        reason,
        _try_record_id(row),
        row=list(row),
        updated_at=_try_updated_at(row, layout),
    )


def encode_records(
    entity_type: EntityType,
    records: Iterable[LedgerRecord],
    preserved_rows: Iterable[list[str]] = (),
) -> str:
    """
    Header plus one sorted row per record, RFC-4180 quoting, CRLF line ends.

    preserved_rows are raw rows this version could not decode. They
    follow the records in the order given, cell for cell.
    """
    layout = _LAYOUTS[entity_type]
    buffer = io.StringIO(newline="")
    writer = csv.writer(buffer, lineterminator="\r\n")
    writer.writerow(layout.columns)
    for record in sorted(records, key=layout.sort_key):
        writer.writerow(layout.to_row(record))
    for row in preserved_rows:
        writer.writerow(row)
    return buffer.getvalue()


def decode_records(
    entity_type: EntityType,
    text: str,
    default_currency: str = "CNY",
) -> DecodeResult:
    """
    Decode one CSV document.

    Args:
        entity_type: Which column layout to expect
        text: The whole file
        default_currency: Used when a transaction row omits currency

    Returns:
        DecodeResult with the good records and one error per skipped row

    Raises:
        DecodeError: If the text is not CSV or the header is not recognizable
    """
    layout = _LAYOUTS[entity_type]
    result = DecodeResult()
    if text.startswith(_BOM):
        text = text[1:]
    if not text.strip():
        return result

    header_seen = False
    try:
        for line_number, row in _rows_with_line_numbers(text):
            if not row or all(not cell.strip() for cell in row):
                continue
            if not header_seen:
                if row[0].strip().lower() != layout.columns[0]:
                    raise DecodeError(
                        f"Unrecognized {entity_type.value} header at line {line_number}: {row[:3]}"
                    )
                header_seen = True
                continue
            if len(row) < layout.minimum:
                error = _malformed(
                    line_number,
                    f"expected at least {layout.minimum} columns, got {len(row)}",
                    row,
                    layout,
                )
            else:
                try:
                    result.records.append(layout.from_row(row, default_currency))
                    continue
                except (ValueError, ArithmeticError) as e:
                    # pydantic's ValidationError is a ValueError; InvalidOperation is arithmetic
                    error = _malformed(line_number, _reason(e), row, layout)
            logger.warning(
                "malformed_record_skipped",
                entity_type=entity_type.value,
                line_number=error.line_number,
                reason=error.reason,
                record_id=str(error.record_id) if error.record_id else None,
            )
            result.errors.append(error)
    except csv.Error as e:
        raise DecodeError(f"Unreadable {entity_type.value} CSV: {e}") from e

    return result


def encode_transactions(
    records: Iterable[Transaction],
    preserved_rows: Iterable[list[str]] = (),
) -> str:
    return encode_records(EntityType.TRANSACTION, records, preserved_rows)


def decode_transactions(text: str, default_currency: str = "CNY") -> DecodeResult:
    return decode_records(EntityType.TRANSACTION, text, default_currency)


def encode_members(records: Iterable[Member]) -> str:
    return encode_records(EntityType.MEMBER, records)


def decode_members(text: str) -> DecodeResult:
    return decode_records(EntityType.MEMBER, text)


def encode_categories(records: Iterable[Category]) -> str:
    return encode_records(EntityType.CATEGORY, records)


def decode_categories(text: str) -> DecodeResult:
    return decode_records(EntityType.CATEGORY, text)


def text_from_bytes(data: bytes) -> str:
    """UTF-8 (with or without BOM). A torn multi-byte sequence is a DecodeError."""
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise DecodeError(f"File is not valid UTF-8: {e}") from e
