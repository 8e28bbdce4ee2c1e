"""
Ledger Queries

DESIGN DECISION: Queries are DETERMINISTIC and read only through the
local store's typed query functions. Every device computes the same
totals and the same split from the same merged ledger.

Splits use Decimal shares quantized to cents. The cents left over after
an even split go one each to participants in member id order. Any
sub-cent digits of the amount stay with the first share, so the shares
always add back up to the amount exactly.
"""

from decimal import ROUND_DOWN, Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from family_ledger.models.ledger import Transaction, TransactionType
from family_ledger.services.storage import LocalStoreInterface


CENT = Decimal("0.01")


class MonthlyTotals(BaseModel):
    month: str
    expense: Decimal = Decimal("0")
    income: Decimal = Decimal("0")
    net: Decimal = Decimal("0")
    transaction_count: int = 0


class CategoryTotal(BaseModel):
    category_id: Optional[UUID] = Field(
        default=None,
        description="None collects uncategorized transactions"
    )
    total: Decimal = Decimal("0")
    transaction_count: int = 0


class MemberBalance(BaseModel):
    """
    What a member paid versus what they owe for a month.

    balance > 0 means the family owes this member.
    """
    member_id: UUID
    paid: Decimal = Decimal("0")
    owed: Decimal = Decimal("0")

    @property
    def balance(self) -> Decimal:
        return self.paid - self.owed


def split_amount(amount: Decimal, member_ids: list[UUID]) -> dict[UUID, Decimal]:
    """Split an amount into shares that sum exactly to it."""
    if not member_ids:
        return {}
    ordered = sorted(set(member_ids), key=str)
    total_cents = int((amount / CENT).to_integral_value(rounding=ROUND_DOWN))
    base, remainder = divmod(total_cents, len(ordered))
    shares = {}
    for index, member_id in enumerate(ordered):
        cents = base + (1 if index < remainder else 0)
        shares[member_id] = Decimal(cents) * CENT
    shares[ordered[0]] += amount - Decimal(total_cents) * CENT
    return shares


class LedgerQueries:
    """Read-side aggregations over the local store."""

    def __init__(self, local_store: LocalStoreInterface):
        self._store = local_store

    async def monthly_totals(self, month: str) -> MonthlyTotals:
        """Expense, income and net for a month bucket like '2024-01'."""
        transactions = await self._store.fetch_transactions(month=month)
        totals = MonthlyTotals(month=month, transaction_count=len(transactions))
        for txn in transactions:
            if txn.type == TransactionType.EXPENSE:
                totals.expense += txn.amount
            else:
                totals.income += txn.amount
        totals.net = totals.income - totals.expense
        return totals

    async def totals_by_category(
        self,
        month: str,
        type: TransactionType = TransactionType.EXPENSE,
    ) -> list[CategoryTotal]:
        """Per-category totals, largest first."""
        transactions = await self._store.fetch_transactions(month=month, type=type)
        by_category: dict[Optional[UUID], CategoryTotal] = {}
        for txn in transactions:
            entry = by_category.setdefault(
                txn.category_id, CategoryTotal(category_id=txn.category_id)
            )
            entry.total += txn.amount
            entry.transaction_count += 1
        return sorted(
            by_category.values(),
            key=lambda c: (-c.total, str(c.category_id or "")),
        )

    async def member_balances(self, month: str) -> list[MemberBalance]:
        """
        Who paid and who owes for a month's shared expenses.

        Income and expenses without a payer are not split.
        """
        transactions = await self._store.fetch_transactions(
            month=month, type=TransactionType.EXPENSE
        )
        balances: dict[UUID, MemberBalance] = {}

        def entry(member_id: UUID) -> MemberBalance:
            return balances.setdefault(member_id, MemberBalance(member_id=member_id))

        for txn in transactions:
            if txn.payer_id is None:
                continue
            entry(txn.payer_id).paid += txn.amount
            for member_id, share in split_amount(txn.amount, self._sharers(txn)).items():
                entry(member_id).owed += share

        return sorted(balances.values(), key=lambda b: str(b.member_id))

    @staticmethod
    def _sharers(txn: Transaction) -> list[UUID]:
        return list(txn.participant_ids) or [txn.payer_id]
