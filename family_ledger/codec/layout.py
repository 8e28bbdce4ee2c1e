"""
Shared folder layout.

    transactions_<YYYY-MM>.csv   one file per month bucket
    members.csv
    categories.csv
    settings.json
"""

import re
from typing import Optional

MEMBERS_FILE = "members.csv"
CATEGORIES_FILE = "categories.csv"
SETTINGS_FILE = "settings.json"

_TRANSACTION_FILE_RE = re.compile(r"^transactions_(\d{4}-\d{2})\.csv$")


def transaction_file_name(month: str) -> str:
    return f"transactions_{month}.csv"


def month_from_file_name(name: str) -> Optional[str]:
    """'transactions_2024-01.csv' -> '2024-01'; None for any other file."""
    match = _TRANSACTION_FILE_RE.match(name)
    if not match:
        return None
    month = match.group(1)
    if not 1 <= int(month[5:]) <= 12:
        return None
    return month
