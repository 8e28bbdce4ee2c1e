"""
Tests for ledger queries and cent-exact splits.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

import pytest

from family_ledger.models.ledger import TransactionType
from family_ledger.queries import LedgerQueries, split_amount
from family_ledger.services.storage import InMemoryLocalStore

from conftest import ALICE_ID, BOB_ID, FOOD_ID, SALARY_ID


CAROL_ID = UUID("00000000-0000-4000-8000-00000000000c")


@pytest.fixture
def queries(make_txn) -> LedgerQueries:
    records = [
        make_txn("30", participant_ids=[ALICE_ID, BOB_ID]),
        make_txn("10", day=date(2024, 1, 20), payer_id=BOB_ID, category_id=None),
        make_txn("100", type=TransactionType.INCOME, category_id=SALARY_ID),
        make_txn("7", day=date(2024, 1, 21), payer_id=None),
        make_txn("5", day=date(2024, 2, 1)),
    ]
    return LedgerQueries(InMemoryLocalStore(records=records))


class TestSplitAmount:
    """Tests for splitting an amount between members."""

    def test_even_split(self):
        """Test a split with no remainder."""
        assert split_amount(Decimal("10"), [ALICE_ID, BOB_ID]) == {
            ALICE_ID: Decimal("5.00"),
            BOB_ID: Decimal("5.00"),
        }

    def test_remainder_goes_to_first_ids(self):
        """Test that leftover cents go out in member id order."""
        shares = split_amount(Decimal("10"), [CAROL_ID, BOB_ID, ALICE_ID])
        assert shares == {
            ALICE_ID: Decimal("3.34"),
            BOB_ID: Decimal("3.33"),
            CAROL_ID: Decimal("3.33"),
        }
        assert sum(shares.values()) == Decimal("10")

    def test_shares_sum_exactly(self):
        """Test awkward amounts."""
        for amount in ("0.01", "0.05", "99.99", "1234.57"):
            shares = split_amount(Decimal(amount), [ALICE_ID, BOB_ID, CAROL_ID])
            assert sum(shares.values()) == Decimal(amount)

    def test_sub_cent_amounts(self):
        """Test that digits below a cent stay with the first share."""
        shares = split_amount(Decimal("10.005"), [ALICE_ID, BOB_ID, CAROL_ID])
        assert shares == {
            ALICE_ID: Decimal("3.345"),
            BOB_ID: Decimal("3.33"),
            CAROL_ID: Decimal("3.33"),
        }
        assert sum(split_amount(Decimal("0.015"), [ALICE_ID, BOB_ID]).values()) == Decimal("0.015")

    def test_duplicates_and_empty(self):
        """Test repeated ids and no members."""
        assert split_amount(Decimal("3"), [ALICE_ID, ALICE_ID]) == {ALICE_ID: Decimal("3.00")}
        assert split_amount(Decimal("3"), []) == {}


class TestLedgerQueries:
    """Tests for LedgerQueries."""

    async def test_monthly_totals(self, queries):
        """Test expense, income and net for one month."""
        totals = await queries.monthly_totals("2024-01")

        assert totals.expense == Decimal("47")
        assert totals.income == Decimal("100")
        assert totals.net == Decimal("53")
        assert totals.transaction_count == 4

    async def test_empty_month(self, queries):
        """Test a month with nothing in it."""
        totals = await queries.monthly_totals("2023-12")
        assert totals.transaction_count == 0
        assert totals.net == Decimal("0")

    async def test_totals_by_category(self, queries):
        """Test per-category totals, largest first."""
        totals = await queries.totals_by_category("2024-01")

        assert [(t.category_id, t.total) for t in totals] == [
            (FOOD_ID, Decimal("37")),
            (None, Decimal("10")),
        ]
        assert totals[0].transaction_count == 2

        income = await queries.totals_by_category("2024-01", type=TransactionType.INCOME)
        assert [(t.category_id, t.total) for t in income] == [(SALARY_ID, Decimal("100"))]

    async def test_member_balances(self, queries):
        """Test who paid and who owes."""
        balances = await queries.member_balances("2024-01")

        by_member = {b.member_id: b for b in balances}
        assert [b.member_id for b in balances] == [ALICE_ID, BOB_ID]
        assert by_member[ALICE_ID].paid == Decimal("30")
        assert by_member[ALICE_ID].owed == Decimal("15.00")
        assert by_member[BOB_ID].paid == Decimal("10")
        assert by_member[BOB_ID].owed == Decimal("25.00")
        assert by_member[ALICE_ID].balance == Decimal("15")
        assert sum(b.balance for b in balances) == Decimal("0")

    async def test_balances_settle_with_sub_cent_amounts(self, make_txn):
        """Test that paid and owed stay equal for amounts below a cent."""
        store = InMemoryLocalStore(records=[
            make_txn("10.005", participant_ids=[ALICE_ID, BOB_ID, CAROL_ID]),
        ])

        balances = await LedgerQueries(store).member_balances("2024-01")

        assert sum(b.paid for b in balances) == sum(b.owed for b in balances)
        assert sum(b.balance for b in balances) == Decimal("0")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
