"""
Snapshot Differencer

Three-way classification of every record id against the last
synchronized snapshot (S), the local store (L) and the shared folder (R).

Equality is structural on the canonical form of a record, so a timestamp
that went through the CSV codec still compares equal to the original.

Pure and synchronous: no I/O, no logging side effects.
"""

from collections import defaultdict
from typing import Any, Iterable, Mapping, Optional
from uuid import UUID

from family_ledger.models.ledger import EntityType, Transaction, canonical_form
from family_ledger.models.sync import ChangeEntry, ChangeKind, ChangeSet


def classify(
    ancestor: Optional[dict],
    local: Optional[dict],
    remote: Optional[dict],
) -> ChangeKind:
    """Classify one id given canonical forms (None = absent)."""
    if ancestor is None:
        if local is not None and remote is not None:
            if local == remote:
                return ChangeKind.BOTH_CHANGED_IDENTICALLY
            return ChangeKind.ADDED_BOTH_SIDES
        if local is not None:
            return ChangeKind.LOCAL_ADDED
        return ChangeKind.REMOTE_ADDED

    if local is None and remote is None:
        # Deleted on both sides; nothing left to merge
        return ChangeKind.LOCAL_DELETED
    if local is None:
        return ChangeKind.LOCAL_DELETED if remote == ancestor else ChangeKind.DELETE_EDIT_CONFLICT
    if remote is None:
        return ChangeKind.REMOTE_DELETED if local == ancestor else ChangeKind.DELETE_EDIT_CONFLICT

    local_changed = local != ancestor
    remote_changed = remote != ancestor
    if not local_changed and not remote_changed:
        return ChangeKind.UNCHANGED
    if local_changed and not remote_changed:
        return ChangeKind.LOCAL_ONLY_CHANGE
    if remote_changed and not local_changed:
        return ChangeKind.REMOTE_ONLY_CHANGE
    if local == remote:
        return ChangeKind.BOTH_CHANGED_IDENTICALLY
    return ChangeKind.CONFLICT


class SnapshotDiffer:
    """Builds a ChangeSet for one entity set (or one month group)."""

    def diff(
        self,
        entity_type: EntityType,
        ancestor: Mapping[UUID, Any],
        local: Mapping[UUID, Any],
        remote: Mapping[UUID, Any],
    ) -> ChangeSet:
        """
        Classify every id in S ∪ L ∪ R exactly once.

        Args:
            entity_type: Which entity set the maps hold
            ancestor: Snapshot records by id
            local: Local store records by id
            remote: Decoded shared-folder records by id

        Returns:
            ChangeSet with one entry per id, ordered by id
        """
        change_set = ChangeSet(entity_type=entity_type)
        all_ids = set(ancestor) | set(local) | set(remote)
        for record_id in sorted(all_ids, key=str):
            s = ancestor.get(record_id)
            l = local.get(record_id)
            r = remote.get(record_id)
            kind = classify(
                canonical_form(s) if s is not None else None,
                canonical_form(l) if l is not None else None,
                canonical_form(r) if r is not None else None,
            )
            change_set.entries.append(
                ChangeEntry(id=record_id, kind=kind, ancestor=s, local=l, remote=r)
            )
        return change_set


# =============================================================================
# MONTH GROUPS
# =============================================================================

def month_groups(
    versions: Iterable[Mapping[UUID, Transaction]],
    months: Iterable[str] = (),
) -> list[frozenset[str]]:
    """
    Partition month buckets so every version of an id lands in one group.

    Two months are linked when some id has a version in each (its date
    was edited across a month boundary). Linked months are merged as one
    unit. Months in `months` with no records form their own groups.

    Returns:
        Groups ordered by their earliest month
    """
    parent: dict[str, str] = {}

    def find(month: str) -> str:
        parent.setdefault(month, month)
        root = month
        while parent[root] != root:
            root = parent[root]
        while parent[month] != root:
            parent[month], month = root, parent[month]
        return root

    def union(a: str, b: str) -> None:
        root_a, root_b = find(a), find(b)
        if root_a != root_b:
            # Smaller month string becomes root for stable output
            if root_b < root_a:
                root_a, root_b = root_b, root_a
            parent[root_b] = root_a

    for month in months:
        find(month)

    months_by_id: dict[UUID, set[str]] = defaultdict(set)
    for mapping in versions:
        for record_id, txn in mapping.items():
            months_by_id[record_id].add(txn.month_key)

    for id_months in months_by_id.values():
        ordered = sorted(id_months)
        find(ordered[0])
        for month in ordered[1:]:
            union(ordered[0], month)

    groups: dict[str, set[str]] = defaultdict(set)
    for month in list(parent):
        groups[find(month)].add(month)
    return sorted((frozenset(g) for g in groups.values()), key=min)


def records_in_months(
    records: Mapping[UUID, Transaction],
    group: frozenset[str],
) -> dict[UUID, Transaction]:
    return {rid: txn for rid, txn in records.items() if txn.month_key in group}
