"""Deterministic read-side queries over the local ledger."""

from family_ledger.queries.executor import (
    CategoryTotal,
    LedgerQueries,
    MemberBalance,
    MonthlyTotals,
    split_amount,
)

__all__ = [
    "CategoryTotal",
    "LedgerQueries",
    "MemberBalance",
    "MonthlyTotals",
    "split_amount",
]
