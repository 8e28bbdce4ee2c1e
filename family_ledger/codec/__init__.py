"""
Ledger Record Codec

Wire format of the shared folder: one CSV file per record set (month
buckets for transactions) and one JSON settings document.
"""

from family_ledger.codec.layout import (
    CATEGORIES_FILE,
    MEMBERS_FILE,
    SETTINGS_FILE,
    month_from_file_name,
    transaction_file_name,
)
from family_ledger.codec.records import (
    CATEGORY_COLUMNS,
    MEMBER_COLUMNS,
    TRANSACTION_COLUMNS,
    DecodeResult,
    decode_categories,
    decode_members,
    decode_records,
    decode_transactions,
    encode_categories,
    encode_members,
    encode_records,
    encode_transactions,
    parse_timestamp,
    text_from_bytes,
)
from family_ledger.codec.settings_doc import decode_settings, encode_settings

__all__ = [
    # Layout
    "CATEGORIES_FILE",
    "MEMBERS_FILE",
    "SETTINGS_FILE",
    "month_from_file_name",
    "transaction_file_name",
    # Records
    "CATEGORY_COLUMNS",
    "MEMBER_COLUMNS",
    "TRANSACTION_COLUMNS",
    "DecodeResult",
    "decode_categories",
    "decode_members",
    "decode_records",
    "decode_transactions",
    "encode_categories",
    "encode_members",
    "encode_records",
    "encode_transactions",
    "parse_timestamp",
    "text_from_bytes",
    # Settings
    "decode_settings",
    "encode_settings",
]
