"""
Tests for the snapshot differencer.
"""

from datetime import date

from family_ledger.codec import decode_transactions, encode_transactions
from family_ledger.models.ledger import EntityType, canonical_form
from family_ledger.models.sync import ChangeKind
from family_ledger.sync.differ import (
    SnapshotDiffer,
    classify,
    month_groups,
    records_in_months,
)

from conftest import T1


def _forms(*records):
    return [canonical_form(r) if r is not None else None for r in records]


class TestClassify:
    """Tests for three-way classification of one id."""

    def test_unchanged(self, make_txn):
        """Test identical on all three sides."""
        s = make_txn()
        assert classify(*_forms(s, s, s)) == ChangeKind.UNCHANGED

    def test_one_sided_changes(self, make_txn):
        """Test local-only and remote-only edits."""
        s = make_txn()
        edited = s.touch(now=T1, note="edited")
        assert classify(*_forms(s, edited, s)) == ChangeKind.LOCAL_ONLY_CHANGE
        assert classify(*_forms(s, s, edited)) == ChangeKind.REMOTE_ONLY_CHANGE

    def test_both_changed(self, make_txn):
        """Test identical and conflicting edits."""
        s = make_txn()
        a = s.touch(now=T1, note="a")
        b = s.touch(now=T1, note="b")
        assert classify(*_forms(s, a, a)) == ChangeKind.BOTH_CHANGED_IDENTICALLY
        assert classify(*_forms(s, a, b)) == ChangeKind.CONFLICT

    def test_additions(self, make_txn):
        """Test new ids on one or both sides."""
        a = make_txn()
        b = a.touch(now=T1, note="other")
        assert classify(*_forms(None, a, None)) == ChangeKind.LOCAL_ADDED
        assert classify(*_forms(None, None, a)) == ChangeKind.REMOTE_ADDED
        assert classify(*_forms(None, a, b)) == ChangeKind.ADDED_BOTH_SIDES
        assert classify(*_forms(None, a, a)) == ChangeKind.BOTH_CHANGED_IDENTICALLY

    def test_deletions(self, make_txn):
        """Test clean deletes and delete-edit conflicts."""
        s = make_txn()
        edited = s.touch(now=T1, note="edited")
        assert classify(*_forms(s, None, s)) == ChangeKind.LOCAL_DELETED
        assert classify(*_forms(s, s, None)) == ChangeKind.REMOTE_DELETED
        assert classify(*_forms(s, None, edited)) == ChangeKind.DELETE_EDIT_CONFLICT
        assert classify(*_forms(s, edited, None)) == ChangeKind.DELETE_EDIT_CONFLICT

    def test_deleted_on_both_sides(self, make_txn):
        """Test that a double delete is a plain delete."""
        s = make_txn()
        assert classify(*_forms(s, None, None)) == ChangeKind.LOCAL_DELETED


class TestSnapshotDiffer:
    """Tests for building change sets."""

    def test_every_id_once_in_order(self, make_txn):
        """Test that S, L and R ids are each classified exactly once."""
        shared = make_txn()
        local_only = make_txn("3")
        remote_only = make_txn("4")
        ancestor = {shared.id: shared}
        local = {shared.id: shared, local_only.id: local_only}
        remote = {shared.id: shared, remote_only.id: remote_only}

        change_set = SnapshotDiffer().diff(EntityType.TRANSACTION, ancestor, local, remote)

        ids = [entry.id for entry in change_set.entries]
        assert ids == sorted(ids, key=str)
        assert change_set.kinds() == {
            shared.id: ChangeKind.UNCHANGED,
            local_only.id: ChangeKind.LOCAL_ADDED,
            remote_only.id: ChangeKind.REMOTE_ADDED,
        }

    def test_codec_round_trip_is_not_a_change(self, make_txn):
        """Test that records read back from CSV compare unchanged."""
        txn = make_txn("10.50", note="lunch, with team")
        decoded = decode_transactions(encode_transactions([txn])).by_id()

        change_set = SnapshotDiffer().diff(
            EntityType.TRANSACTION, {txn.id: txn}, {txn.id: txn}, decoded
        )

        assert change_set.entries[0].kind == ChangeKind.UNCHANGED

    def test_entries_carry_versions(self, make_txn):
        """Test that entries hold the three versions for the resolver."""
        s = make_txn()
        l = s.touch(now=T1, note="local")
        entry = SnapshotDiffer().diff(
            EntityType.TRANSACTION, {s.id: s}, {s.id: l}, {}
        ).entries[0]
        assert entry.kind == ChangeKind.DELETE_EDIT_CONFLICT
        assert entry.ancestor is s
        assert entry.local is l
        assert entry.remote is None


class TestMonthGroups:
    """Tests for grouping month buckets."""

    def test_independent_months(self, make_txn):
        """Test that unrelated months stay separate."""
        jan = make_txn(day=date(2024, 1, 5))
        feb = make_txn(day=date(2024, 2, 5))
        groups = month_groups([{jan.id: jan, feb.id: feb}])
        assert groups == [frozenset({"2024-01"}), frozenset({"2024-02"})]

    def test_moved_record_links_months(self, make_txn):
        """Test that a date edited across months joins both buckets."""
        jan = make_txn(day=date(2024, 1, 31))
        moved = jan.touch(now=T1, date=date(2024, 3, 1))
        other = make_txn(day=date(2024, 2, 10))

        groups = month_groups([{jan.id: jan}, {moved.id: moved, other.id: other}])

        assert groups == [frozenset({"2024-01", "2024-03"}), frozenset({"2024-02"})]

    def test_chain_of_moves(self, make_txn):
        """Test that links are transitive."""
        a = make_txn(day=date(2024, 1, 5))
        b = make_txn(day=date(2024, 2, 5))
        a_moved = a.touch(now=T1, date=date(2024, 2, 6))
        b_moved = b.touch(now=T1, date=date(2024, 4, 1))
        groups = month_groups([{a.id: a, b.id: b}, {a.id: a_moved, b.id: b_moved}])
        assert groups == [frozenset({"2024-01", "2024-02", "2024-04"})]

    def test_empty_months_form_groups(self):
        """Test months known only from file names."""
        groups = month_groups([], months=["2024-05", "2023-12"])
        assert groups == [frozenset({"2023-12"}), frozenset({"2024-05"})]

    def test_records_in_months(self, make_txn):
        """Test filtering a record map by a group."""
        jan = make_txn(day=date(2024, 1, 5))
        feb = make_txn(day=date(2024, 2, 5))
        records = {jan.id: jan, feb.id: feb}
        assert records_in_months(records, frozenset({"2024-02"})) == {feb.id: feb}
        assert records_in_months(records, frozenset({"2025-01"})) == {}
        assert records_in_months({}, frozenset({"2024-01"})) == {}
