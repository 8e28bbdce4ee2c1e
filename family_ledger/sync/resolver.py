"""
Conflict Resolver

Turns a ChangeSet into one authoritative record map that both the local
store and the shared folder will hold after the cycle.

CRITICAL: Resolution is automatic and deterministic. Two devices
resolving the same three states must reach the same result, or the
ledger would flip back and forth between them. Every rule below
therefore depends only on record content, never on which device runs it.

Rules:
- One-sided changes, additions and clean deletes apply as-is
- Delete vs edit: the edit wins
- Both sides edited: field-level three-way merge. A field changed on
  one side takes that side's value; a field changed on both sides takes
  the value of the record with the later updated_at, and on equal
  timestamps the lexically greater value
- Same id added on both sides with different content: the later record
  keeps the id, the other is re-inserted under a derived id

The resolver never performs I/O. Decisions are returned as FieldDecision
records and the orchestrator writes them to the audit log.
"""

from collections import defaultdict
from typing import Any, Mapping, Optional
from uuid import NAMESPACE_URL, UUID, uuid5

from family_ledger.models.ledger import (
    Category,
    LedgerSettings,
    TransactionType,
    canonical_form,
    canonical_json,
    canonical_text,
    records_equal,
)
from family_ledger.models.sync import (
    ChangeEntry,
    ChangeKind,
    ChangeSet,
    DocumentResolution,
    FieldDecision,
    OutcomeClass,
    RecordOutcome,
    ResolvedSet,
)


SETTINGS_DOCUMENT_ID = uuid5(NAMESPACE_URL, "family-ledger:settings.json")

# Whole-record decisions use this in place of a field name
WHOLE_RECORD = "*"

_TAKE_LOCAL = {
    ChangeKind.UNCHANGED,
    ChangeKind.LOCAL_ONLY_CHANGE,
    ChangeKind.LOCAL_ADDED,
    ChangeKind.BOTH_CHANGED_IDENTICALLY,
}
_TAKE_REMOTE = {
    ChangeKind.REMOTE_ONLY_CHANGE,
    ChangeKind.REMOTE_ADDED,
}


def collision_id(record_id: UUID, loser: Any) -> UUID:
    """Id for the re-inserted loser of an id collision. Same on every device."""
    return uuid5(record_id, canonical_json(loser))


def _later_or_greater(local: Any, remote: Any) -> tuple[str, str]:
    """
    Pick a side for a whole-record decision.

    Returns (side, reason) where side is "local" or "remote".
    """
    if local.updated_at > remote.updated_at:
        return "local", "local updated_at is later"
    if remote.updated_at > local.updated_at:
        return "remote", "remote updated_at is later"
    if canonical_json(local) >= canonical_json(remote):
        return "local", "equal updated_at, local is lexically greater"
    return "remote", "equal updated_at, remote is lexically greater"


class ConflictResolver:
    """
    Resolves change sets produced by SnapshotDiffer.

    Stateless; one instance can be shared by every cycle.
    """

    def resolve(
        self,
        change_set: ChangeSet,
        defer_remote_deletes: bool = False,
    ) -> ResolvedSet:
        """
        Resolve every entry of a change set.

        Args:
            change_set: Output of SnapshotDiffer.diff
            defer_remote_deletes: Keep remotely deleted records this cycle
                (set when part of the remote state could not be read)

        Returns:
            ResolvedSet. Outcomes are listed for every id that was not
            unchanged.
        """
        resolved = ResolvedSet(entity_type=change_set.entity_type)
        reinserted: dict[UUID, Any] = {}

        for entry in change_set.entries:
            outcome = self._resolve_entry(entry, resolved, reinserted, defer_remote_deletes)
            if outcome is not None:
                resolved.outcomes.append(outcome)

        # A loser already present under its derived id (e.g. written by
        # another device) has its own entry; keep that one.
        for new_id, record in reinserted.items():
            resolved.merged.setdefault(new_id, record)

        return resolved

    def _resolve_entry(
        self,
        entry: ChangeEntry,
        resolved: ResolvedSet,
        reinserted: dict[UUID, Any],
        defer_remote_deletes: bool,
    ) -> Optional[RecordOutcome]:
        kind = entry.kind

        if kind in _TAKE_LOCAL:
            resolved.merged[entry.id] = entry.local
            if kind == ChangeKind.UNCHANGED:
                return None
            return RecordOutcome(entity_id=entry.id, kind=kind, outcome=OutcomeClass.CLEAN_MERGE)

        if kind in _TAKE_REMOTE:
            resolved.merged[entry.id] = entry.remote
            return RecordOutcome(entity_id=entry.id, kind=kind, outcome=OutcomeClass.CLEAN_MERGE)

        if kind == ChangeKind.LOCAL_DELETED:
            return RecordOutcome(entity_id=entry.id, kind=kind, outcome=OutcomeClass.CLEAN_MERGE)

        if kind == ChangeKind.REMOTE_DELETED:
            if not defer_remote_deletes:
                return RecordOutcome(entity_id=entry.id, kind=kind, outcome=OutcomeClass.CLEAN_MERGE)
            resolved.retained_local[entry.id] = entry.local
            resolved.retained_ancestor[entry.id] = entry.ancestor
            return RecordOutcome(
                entity_id=entry.id,
                kind=kind,
                outcome=OutcomeClass.UNRESOLVED_CONFLICT,
                decisions=[
                    FieldDecision(
                        entity_id=entry.id,
                        field=WHOLE_RECORD,
                        local=entry.local,
                        remote=None,
                        chosen=entry.local,
                        reason="remote delete deferred, remote state incomplete",
                    )
                ],
            )

        if kind == ChangeKind.DELETE_EDIT_CONFLICT:
            survivor = entry.local if entry.local is not None else entry.remote
            side = "local" if entry.local is not None else "remote"
            resolved.merged[entry.id] = survivor
            return RecordOutcome(
                entity_id=entry.id,
                kind=kind,
                outcome=OutcomeClass.RESOLVED_CONFLICT,
                decisions=[
                    FieldDecision(
                        entity_id=entry.id,
                        field=WHOLE_RECORD,
                        local=entry.local,
                        remote=entry.remote,
                        chosen=survivor,
                        reason=f"edit wins over delete ({side} edited)",
                    )
                ],
            )

        if kind == ChangeKind.ADDED_BOTH_SIDES:
            return self._resolve_collision(entry, resolved, reinserted)

        if kind == ChangeKind.CONFLICT:
            merged, decisions = self.merge_fields(entry.ancestor, entry.local, entry.remote)
            resolved.merged[entry.id] = merged
            return RecordOutcome(
                entity_id=entry.id,
                kind=kind,
                outcome=(
                    OutcomeClass.RESOLVED_CONFLICT if decisions else OutcomeClass.CLEAN_MERGE
                ),
                decisions=decisions,
            )

        raise ValueError(f"Unhandled change kind: {kind}")

    def _resolve_collision(
        self,
        entry: ChangeEntry,
        resolved: ResolvedSet,
        reinserted: dict[UUID, Any],
    ) -> RecordOutcome:
        side, reason = _later_or_greater(entry.local, entry.remote)
        winner, loser = (
            (entry.local, entry.remote) if side == "local" else (entry.remote, entry.local)
        )
        new_id = collision_id(entry.id, loser)
        resolved.merged[entry.id] = winner
        reinserted[new_id] = loser.model_copy(update={"id": new_id})
        return RecordOutcome(
            entity_id=entry.id,
            kind=entry.kind,
            outcome=OutcomeClass.RESOLVED_CONFLICT,
            reinserted_id=new_id,
            decisions=[
                FieldDecision(
                    entity_id=entry.id,
                    field=WHOLE_RECORD,
                    local=entry.local,
                    remote=entry.remote,
                    chosen=winner,
                    reason=f"id collision, {side} keeps the id ({reason})",
                )
            ],
        )

    def merge_fields(
        self,
        ancestor: Any,
        local: Any,
        remote: Any,
    ) -> tuple[Any, list[FieldDecision]]:
        """
        Field-level three-way merge of two edited versions of one record.

        Returns:
            (merged record, decisions for fields both sides changed)
        """
        s = canonical_form(ancestor)
        l = canonical_form(local)
        r = canonical_form(remote)
        local_values = dict(local)
        remote_values = dict(remote)

        merged: dict[str, Any] = {}
        decisions: list[FieldDecision] = []

        for name in sorted(set(l) | set(r)):
            if name == "updated_at":
                continue
            lv, rv, sv = l.get(name), r.get(name), s.get(name)
            if lv == rv:
                merged[name] = local_values.get(name)
            elif lv == sv:
                merged[name] = remote_values.get(name)
            elif rv == sv:
                merged[name] = local_values.get(name)
            else:
                side, reason = self._pick_field(local, remote, lv, rv)
                chosen = local_values.get(name) if side == "local" else remote_values.get(name)
                merged[name] = chosen
                decisions.append(
                    FieldDecision(
                        entity_id=local.id,
                        field=name,
                        local=local_values.get(name),
                        remote=remote_values.get(name),
                        chosen=chosen,
                        reason=reason,
                    )
                )

        merged["updated_at"] = max(local.updated_at, remote.updated_at)
        return type(local).model_validate(merged), decisions

    @staticmethod
    def _pick_field(local: Any, remote: Any, local_value: Any, remote_value: Any) -> tuple[str, str]:
        if local.updated_at > remote.updated_at:
            return "local", "both changed, local updated_at is later"
        if remote.updated_at > local.updated_at:
            return "remote", "both changed, remote updated_at is later"
        if canonical_text(local_value) >= canonical_text(remote_value):
            return "local", "both changed at equal updated_at, local value is lexically greater"
        return "remote", "both changed at equal updated_at, remote value is lexically greater"

    def resolve_document(
        self,
        ancestor: Optional[LedgerSettings],
        local: LedgerSettings,
        remote: Optional[LedgerSettings],
    ) -> DocumentResolution:
        """
        Last-writer-wins for the settings document.

        Args:
            ancestor: Snapshot copy, None on first sync
            local: The device's settings
            remote: Decoded settings.json, None when the file is absent

        Returns:
            DocumentResolution naming the winning side
        """
        if remote is None or records_equal(local, remote):
            return DocumentResolution(
                settings=local, winner="local", outcome=OutcomeClass.CLEAN_MERGE
            )
        if ancestor is not None:
            if records_equal(local, ancestor):
                return DocumentResolution(
                    settings=remote, winner="remote", outcome=OutcomeClass.CLEAN_MERGE
                )
            if records_equal(remote, ancestor):
                return DocumentResolution(
                    settings=local, winner="local", outcome=OutcomeClass.CLEAN_MERGE
                )

        if local.updated_at > remote.updated_at:
            side, reason = "local", "local updated_at is later"
        elif remote.updated_at > local.updated_at:
            side, reason = "remote", "remote updated_at is later"
        elif ancestor is None:
            side, reason = "remote", "first sync with equal updated_at, shared copy wins"
        elif canonical_json(local) >= canonical_json(remote):
            side, reason = "local", "equal updated_at, local is lexically greater"
        else:
            side, reason = "remote", "equal updated_at, remote is lexically greater"

        chosen = local if side == "local" else remote
        return DocumentResolution(
            settings=chosen,
            winner=side,
            outcome=OutcomeClass.RESOLVED_CONFLICT,
            decision=FieldDecision(
                entity_id=SETTINGS_DOCUMENT_ID,
                field=WHOLE_RECORD,
                local=local,
                remote=remote,
                chosen=chosen,
                reason=reason,
            ),
        )

    @staticmethod
    def find_duplicate_categories(
        merged: Mapping[UUID, Category],
    ) -> list[tuple[str, TransactionType, list[UUID]]]:
        """
        (name, type) pairs held by more than one category.

        Duplicates are tolerated; callers only report them.
        """
        by_key: dict[tuple[str, TransactionType], list[UUID]] = defaultdict(list)
        for category in merged.values():
            by_key[(category.name, category.type)].append(category.id)
        return [
            (name, category_type, sorted(ids, key=str))
            for (name, category_type), ids in sorted(
                by_key.items(), key=lambda item: (item[0][1].value, item[0][0])
            )
            if len(ids) > 1
        ]
