"""
Sync Orchestrator

Runs one synchronization cycle between the local store and the shared
folder:

    idle -> fetching_remote -> diffing -> resolving -> applying_local
         -> writing_remote -> updating_snapshot -> idle

and failed -> idle when any step fails.

DESIGN DECISION: The orchestrator enforces the safety boundaries:
- A remote file that cannot be read is skipped, never overwritten
- A failed remote read never deletes local data
- Rows this version cannot decode are written back as they were
- Local writes are all-or-nothing and never clobber a concurrent edit
- The snapshot only advances for parts whose writes all succeeded

The worst outcome of any failure is "no progress this cycle, retry
later". Nothing in a cycle is fatal to the app.

Work is split into parts: the member set, the category set, the
settings document, and one part per transaction month group. A part
that cannot be read is skipped on its own while the others complete.
"""

import asyncio
from typing import Any, Awaitable, Callable, Iterable, Optional
from uuid import UUID

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from family_ledger.audit import AuditLogger
from family_ledger.codec import (
    CATEGORIES_FILE,
    MEMBERS_FILE,
    SETTINGS_FILE,
    decode_records,
    decode_settings,
    encode_records,
    encode_settings,
    month_from_file_name,
    text_from_bytes,
    transaction_file_name,
)
from family_ledger.config import SyncSettings, get_settings
from family_ledger.exceptions import (
    DecodeError,
    IOFailure,
    MalformedRecord,
    NotFoundError,
    SnapshotMismatch,
    StorageError,
)
from family_ledger.models.ledger import (
    EntityType,
    LedgerSettings,
    canonical_json,
    records_equal,
    utc_now,
)
from family_ledger.models.sync import (
    ChangeKind,
    ChangeSet,
    DocumentResolution,
    OutcomeClass,
    ResolvedSet,
    Snapshot,
    SyncReport,
    SyncState,
    SyncTrigger,
)
from family_ledger.services.storage import (
    LocalStoreInterface,
    SharedFileStoreInterface,
    SnapshotStore,
)
from family_ledger.sync.differ import SnapshotDiffer, month_groups, records_in_months
from family_ledger.sync.resolver import ConflictResolver


logger = structlog.get_logger(__name__)


RecordMap = dict[UUID, Any]


class _RemoteFile:
    """What reading one remote file produced."""

    def __init__(
        self,
        path: str,
        available: bool = True,
        text: Optional[str] = None,
        records: Optional[RecordMap] = None,
        protected: Optional[set[UUID]] = None,
        malformed: Optional[list[MalformedRecord]] = None,
    ):
        self.path = path
        self.available = available
        self.text = text  # None when the file does not exist
        self.records: RecordMap = records or {}
        self.protected: set[UUID] = protected or set()
        self.malformed: list[MalformedRecord] = malformed or []

    @property
    def exists(self) -> bool:
        return self.text is not None


class _RemoteState:
    def __init__(self):
        self.members: Optional[_RemoteFile] = None
        self.categories: Optional[_RemoteFile] = None
        self.settings_file: Optional[_RemoteFile] = None
        self.settings: Optional[LedgerSettings] = None
        self.month_files: dict[str, _RemoteFile] = {}
        self.transactions: RecordMap = {}
        self.transaction_protected: set[UUID] = set()
        self.unavailable_months: set[str] = set()


class _Part:
    """One unit of merge, write and snapshot advance."""

    def __init__(
        self,
        name: str,
        entity_type: EntityType,
        months: frozenset[str] = frozenset(),
    ):
        self.name = name
        self.entity_type = entity_type
        self.months = months
        self.ancestor: RecordMap = {}
        self.local: RecordMap = {}
        self.remote: RecordMap = {}
        self.skipped = False
        self.defer_remote_deletes = False
        self.change_set: Optional[ChangeSet] = None
        self.resolved: Optional[ResolvedSet] = None
        self.stale_ids: set[UUID] = set()
        # ids whose remote row could not be decoded and was written back as is
        self.held_ids: set[UUID] = set()
        self.write_failed = False

    @property
    def completed(self) -> bool:
        return not self.skipped and not self.write_failed


class _SettingsPart:
    def __init__(self):
        self.skipped = False
        self.ancestor: Optional[LedgerSettings] = None
        self.local: Optional[LedgerSettings] = None
        self.resolution: Optional[DocumentResolution] = None
        self.stale = False
        self.write_failed = False

    @property
    def completed(self) -> bool:
        return not self.skipped and not self.write_failed


class SyncOrchestrator:
    """
    Drives sync cycles for one ledger on one device.

    Built once and passed by reference to whatever triggers syncs
    (app foreground, user edits). At most one cycle runs at a time;
    calls arriving during a cycle are folded into a single follow-up.

    Usage:
        orchestrator = SyncOrchestrator(local_store, file_store, snapshot_store)
        report = await orchestrator.sync(SyncTrigger.APP_FOREGROUND)
    """

    def __init__(
        self,
        local_store: LocalStoreInterface,
        file_store: SharedFileStoreInterface,
        snapshot_store: SnapshotStore,
        settings: Optional[SyncSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
        differ: Optional[SnapshotDiffer] = None,
        resolver: Optional[ConflictResolver] = None,
    ):
        self._local = local_store
        self._files = file_store
        self._snapshots = snapshot_store
        self._settings = settings or get_settings().sync
        self._audit = audit_logger or AuditLogger(device_id=self._settings.device_id)
        self._differ = differ or SnapshotDiffer()
        self._resolver = resolver or ConflictResolver()

        self._state = SyncState.IDLE
        self._cycle_lock = asyncio.Lock()
        self._active: Optional[asyncio.Future] = None
        self._follow_up_requested = False
        self._follow_up_trigger = SyncTrigger.MANUAL
        self._coalesced = 0

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._active is not None and not self._active.done()

    # =========================================================================
    # SINGLE FLIGHT
    # =========================================================================

    async def sync(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> SyncReport:
        """
        Run a sync cycle, or join the one already running.

        A call made while a cycle is in flight requests one follow-up
        cycle (a single slot, however many calls arrive) and receives
        the report of the last cycle run.

        Never raises for sync failures; check report.success.
        """
        if self.is_syncing:
            self._follow_up_requested = True
            self._follow_up_trigger = trigger
            self._coalesced += 1
            logger.info("sync_coalesced", trigger=trigger.value, pending=self._coalesced)
            return await asyncio.shield(self._active)

        self._active = asyncio.ensure_future(self._run_until_settled(trigger))
        return await asyncio.shield(self._active)

    async def _run_until_settled(self, trigger: SyncTrigger) -> SyncReport:
        self._follow_up_requested = False
        self._coalesced = 0
        report = await self._run_cycle(trigger, coalesced=0)
        while self._follow_up_requested:
            self._follow_up_requested = False
            coalesced, self._coalesced = self._coalesced, 0
            report = await self._run_cycle(self._follow_up_trigger, coalesced=coalesced)
        return report

    # =========================================================================
    # CYCLE
    # =========================================================================

    def _enter(self, report: SyncReport, state: SyncState) -> None:
        self._state = state
        report.states.append(state)
        logger.debug("sync_state", cycle_id=str(report.cycle_id), state=state.value)

    async def _run_cycle(self, trigger: SyncTrigger, coalesced: int) -> SyncReport:
        async with self._cycle_lock:
            report = SyncReport(trigger=trigger, coalesced_requests=coalesced)
            report.states.append(SyncState.IDLE)
            await self._audit.log_sync_started(report.cycle_id, trigger.value)
            try:
                await self._cycle(report)
            except asyncio.CancelledError:
                # Local writes are transactional and the snapshot advances last
                self._state = SyncState.IDLE
                raise
            except Exception as e:
                logger.exception("sync_cycle_failed", cycle_id=str(report.cycle_id))
                report.error = f"{type(e).__name__}: {e}"
                self._enter(report, SyncState.FAILED)
                self._enter(report, SyncState.IDLE)
                report.finished_at = utc_now()
                await self._audit.log_sync_failed(report, report.error)
                return report

            report.success = True
            self._enter(report, SyncState.IDLE)
            report.finished_at = utc_now()
            await self._audit.log_sync_completed(report)
            return report

    async def _cycle(self, report: SyncReport) -> None:
        cid = report.cycle_id

        # --- fetching_remote -------------------------------------------------
        self._enter(report, SyncState.FETCHING_REMOTE)
        await self._with_retry("mkdir", "", lambda: self._files.ensure_folder(""), cid)
        names = await self._with_retry("list", "", lambda: self._files.list_files(""), cid)
        remote = await self._fetch_remote(names, report)

        local_records = {
            entity_type: await self._local.fetch_all(entity_type)
            for entity_type in (EntityType.MEMBER, EntityType.CATEGORY, EntityType.TRANSACTION)
        }
        local_settings = await self._local.get_settings()
        snapshot = await self._load_snapshot(report)
        report.author_member_id = self._author_member_id(local_records[EntityType.MEMBER])

        # --- diffing -----------------------------------------------------------
        self._enter(report, SyncState.DIFFING)
        parts = self._plan_parts(snapshot, local_records, remote, report)
        for part in parts:
            if not part.skipped:
                part.change_set = self._differ.diff(
                    part.entity_type, part.ancestor, part.local, part.remote
                )
        settings_part = _SettingsPart()
        settings_part.local = local_settings
        settings_part.ancestor = snapshot.settings if snapshot else None
        settings_file = remote.settings_file
        if (
            settings_file is None
            or not settings_file.available
            # synced before and now missing: not delivered yet
            or (not settings_file.exists and settings_part.ancestor is not None)
        ):
            settings_part.skipped = True
            report.skipped.append(SETTINGS_FILE)

        # --- resolving ---------------------------------------------------------
        self._enter(report, SyncState.RESOLVING)
        for part in parts:
            if part.change_set is not None:
                part.resolved = self._resolver.resolve(
                    part.change_set,
                    defer_remote_deletes=part.defer_remote_deletes,
                )
                await self._record_outcomes(part, report)
        if not settings_part.skipped:
            settings_part.resolution = self._resolver.resolve_document(
                settings_part.ancestor, local_settings, remote.settings
            )
            decision = settings_part.resolution.decision
            if decision is not None:
                report.conflicts_resolved += 1
                await self._audit.log_conflict_resolved(EntityType.SETTINGS.value, decision, cid)

        # --- applying_local ----------------------------------------------------
        self._enter(report, SyncState.APPLYING_LOCAL)
        await self._apply_local(parts, settings_part, report)

        # --- writing_remote ----------------------------------------------------
        self._enter(report, SyncState.WRITING_REMOTE)
        await self._write_remote(parts, settings_part, remote, report)

        # --- updating_snapshot -------------------------------------------------
        self._enter(report, SyncState.UPDATING_SNAPSHOT)
        await self._update_snapshot(parts, settings_part, snapshot, report)

    # =========================================================================
    # FETCHING
    # =========================================================================

    async def _with_retry(
        self,
        operation: str,
        path: str,
        func: Callable[[], Awaitable[Any]],
        correlation_id: Optional[UUID],
    ) -> Any:
        """Run an adapter call, retrying IOFailure with exponential backoff."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._settings.max_io_attempts),
            wait=wait_exponential(
                multiplier=self._settings.retry_backoff_multiplier,
                min=self._settings.retry_wait_min_seconds,
                max=self._settings.retry_wait_max_seconds,
            ),
            retry=retry_if_exception_type(IOFailure),
            reraise=True,
        )
        result = None
        last_error = ""
        async for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                if number > 1:
                    await self._audit.log_io_retry(
                        operation, path or ".", number, last_error, correlation_id
                    )
                try:
                    result = await func()
                except IOFailure as e:
                    last_error = str(e)
                    raise
        return result

    async def _read_remote_file(
        self,
        entity_type: Optional[EntityType],
        path: str,
        report: SyncReport,
    ) -> _RemoteFile:
        """
        Read and decode one remote file.

        Missing files come back available and empty. Unreadable or
        undecodable files come back unavailable.
        """
        cid = report.cycle_id
        try:
            data = await self._with_retry("read", path, lambda: self._files.read_file(path), cid)
        except NotFoundError:
            await self._audit.log_remote_file_missing(path, cid)
            return _RemoteFile(path)
        except StorageError as e:
            await self._audit.log_remote_file_stale(path, str(e), cid)
            return _RemoteFile(path, available=False)

        try:
            text = text_from_bytes(data)
            if entity_type is None:
                return _RemoteFile(path, text=text)
            result = decode_records(entity_type, text, self._settings.default_currency)
        except DecodeError as e:
            await self._audit.log_remote_file_stale(path, str(e), cid)
            return _RemoteFile(path, available=False)

        for error in result.errors:
            report.malformed_records += 1
            await self._audit.log_malformed_record(
                path, error.line_number, error.reason, error.record_id, cid
            )

        records: RecordMap = {}
        for record in result.records:
            records[record.id] = _newer(records.get(record.id), record)
        return _RemoteFile(
            path,
            text=text,
            records=records,
            protected=result.protected_ids(),
            malformed=result.errors,
        )

    async def _fetch_remote(self, names: list[str], report: SyncReport) -> _RemoteState:
        remote = _RemoteState()
        remote.members = await self._read_remote_file(EntityType.MEMBER, MEMBERS_FILE, report)
        remote.categories = await self._read_remote_file(EntityType.CATEGORY, CATEGORIES_FILE, report)

        settings_file = await self._read_remote_file(None, SETTINGS_FILE, report)
        if settings_file.available and settings_file.exists:
            try:
                remote.settings = decode_settings(settings_file.text)
            except DecodeError as e:
                await self._audit.log_remote_file_stale(SETTINGS_FILE, str(e), report.cycle_id)
                settings_file = _RemoteFile(SETTINGS_FILE, available=False)
        remote.settings_file = settings_file

        for name in names:
            month = month_from_file_name(name)
            if month is None:
                continue
            month_file = await self._read_remote_file(EntityType.TRANSACTION, name, report)
            remote.month_files[month] = month_file
            if not month_file.available:
                remote.unavailable_months.add(month)
                continue
            remote.transaction_protected |= month_file.protected
            for record_id, txn in month_file.records.items():
                # The same id in two month files: a move half-propagated
                remote.transactions[record_id] = _newer(remote.transactions.get(record_id), txn)
        return remote

    async def _load_snapshot(self, report: SyncReport) -> Optional[Snapshot]:
        try:
            return await self._snapshots.load()
        except SnapshotMismatch as e:
            report.first_sync = True
            await self._audit.log_snapshot_reset(str(e), report.cycle_id)
            return None

    def _author_member_id(self, members: RecordMap) -> Optional[UUID]:
        token = self._settings.identity_token
        if not token:
            return None
        for member in members.values():
            if member.identity_token == token:
                return member.id
        return None

    # =========================================================================
    # PLANNING
    # =========================================================================

    def _plan_parts(
        self,
        snapshot: Optional[Snapshot],
        local_records: dict[EntityType, RecordMap],
        remote: _RemoteState,
        report: SyncReport,
    ) -> list[_Part]:
        parts = []
        for entity_type, remote_file, name in (
            (EntityType.MEMBER, remote.members, MEMBERS_FILE),
            (EntityType.CATEGORY, remote.categories, CATEGORIES_FILE),
        ):
            part = _Part(name, entity_type)
            part.local = local_records[entity_type]
            ancestor = snapshot.records(entity_type) if snapshot else None
            if not remote_file.available or (not remote_file.exists and ancestor):
                # A file we have synced before has gone missing: treat as unreadable
                part.skipped = True
                part.ancestor = ancestor or {}
                report.skipped.append(name)
            else:
                part.remote = dict(remote_file.records)
                part.ancestor = (
                    ancestor if ancestor is not None
                    else _first_sync_ancestor(part.local, part.remote)
                )
                _protect(part.remote, remote_file.protected, part.ancestor, part.local)
            parts.append(part)

        parts.extend(self._plan_transaction_parts(snapshot, local_records, remote, report))
        return parts

    def _plan_transaction_parts(
        self,
        snapshot: Optional[Snapshot],
        local_records: dict[EntityType, RecordMap],
        remote: _RemoteState,
        report: SyncReport,
    ) -> list[_Part]:
        local = local_records[EntityType.TRANSACTION]
        remote_records = dict(remote.transactions)
        unavailable = set(remote.unavailable_months)

        if snapshot is not None:
            ancestor = snapshot.records(EntityType.TRANSACTION)
            # Months we synced before whose file is gone: not readable this cycle
            for txn in ancestor.values():
                if txn.month_key not in remote.month_files:
                    unavailable.add(txn.month_key)
        else:
            ancestor = _first_sync_ancestor(local, remote_records)

        _protect(remote_records, remote.transaction_protected, ancestor, local)

        groups = month_groups(
            [ancestor, local, remote_records],
            months=remote.month_files.keys(),
        )
        parts = []
        for group in groups:
            part = _Part(
                "transactions:" + ",".join(sorted(group)),
                EntityType.TRANSACTION,
                months=group,
            )
            part.ancestor = records_in_months(ancestor, group)
            part.local = records_in_months(local, group)
            if group & unavailable:
                part.skipped = True
                report.skipped.append(part.name)
            else:
                part.remote = records_in_months(remote_records, group)
                part.defer_remote_deletes = bool(unavailable)
            parts.append(part)
        return parts

    # =========================================================================
    # RESOLUTION AUDIT
    # =========================================================================

    async def _record_outcomes(self, part: _Part, report: SyncReport) -> None:
        cid = report.cycle_id
        entity = part.entity_type.value
        resolved = part.resolved
        report.clean_merges += resolved.count(OutcomeClass.CLEAN_MERGE)
        report.conflicts_resolved += resolved.count(OutcomeClass.RESOLVED_CONFLICT)
        report.unresolved_conflicts += resolved.count(OutcomeClass.UNRESOLVED_CONFLICT)

        for outcome in resolved.outcomes:
            if outcome.kind == ChangeKind.ADDED_BOTH_SIDES:
                report.id_collisions += 1
                await self._audit.log_id_collision(
                    entity, outcome.entity_id, outcome.reinserted_id, outcome.decisions[0], cid
                )
            elif outcome.kind == ChangeKind.DELETE_EDIT_CONFLICT:
                await self._audit.log_delete_edit_resolved(entity, outcome.decisions[0], cid)
            elif outcome.outcome == OutcomeClass.UNRESOLVED_CONFLICT:
                report.deferred_deletes += 1
                await self._audit.log_delete_deferred(entity, outcome.entity_id, cid)
            else:
                for decision in outcome.decisions:
                    await self._audit.log_conflict_resolved(entity, decision, cid)

        if part.entity_type == EntityType.CATEGORY:
            for name, category_type, ids in self._resolver.find_duplicate_categories(
                resolved.merged
            ):
                await self._audit.log_duplicate_category(name, category_type.value, ids, cid)

    # =========================================================================
    # APPLYING LOCAL
    # =========================================================================

    async def _apply_local(
        self,
        parts: list[_Part],
        settings_part: _SettingsPart,
        report: SyncReport,
    ) -> None:
        """
        Apply every merged part to the local store in one transaction.

        Records edited locally since they were read are left alone; they
        keep their ancestor in the snapshot and merge next cycle.
        """
        counts: dict[EntityType, list[int]] = {}
        async with self._local.transactionally() as session:
            current_tables: dict[EntityType, RecordMap] = {}
            for part in parts:
                if part.resolved is None:
                    continue
                if part.entity_type not in current_tables:
                    current_tables[part.entity_type] = await session.fetch_all(part.entity_type)
                current = current_tables[part.entity_type]
                tally = counts.setdefault(part.entity_type, [0, 0, 0])

                desired = part.resolved.local_view()
                for record_id, record in desired.items():
                    before = part.local.get(record_id)
                    if records_equal(before, record):
                        continue
                    if not records_equal(current.get(record_id), before):
                        part.stale_ids.add(record_id)
                        tally[2] += 1
                        continue
                    await session.upsert(record)
                    tally[0] += 1
                for record_id, before in part.local.items():
                    if record_id in desired:
                        continue
                    if not records_equal(current.get(record_id), before):
                        part.stale_ids.add(record_id)
                        tally[2] += 1
                        continue
                    await session.delete(part.entity_type, record_id)
                    tally[1] += 1

            resolution = settings_part.resolution
            if resolution is not None and not records_equal(resolution.settings, settings_part.local):
                if records_equal(await session.get_settings(), settings_part.local):
                    await session.save_settings(resolution.settings)
                    report.records_applied_locally += 1
                else:
                    settings_part.stale = True

        for entity_type, (upserts, deletes, skipped) in counts.items():
            report.records_applied_locally += upserts + deletes
            if upserts or deletes or skipped:
                await self._audit.log_local_applied(
                    entity_type.value, upserts, deletes, skipped, report.cycle_id
                )

    # =========================================================================
    # WRITING REMOTE
    # =========================================================================

    async def _write_if_changed(
        self,
        path: str,
        encoded: str,
        previous: Optional[str],
        report: SyncReport,
    ) -> bool:
        """Write one file when its bytes changed. Returns False on failure."""
        if previous is not None and encoded == previous:
            return True
        data = encoded.encode("utf-8")
        try:
            await self._with_retry(
                "write", path, lambda: self._files.write_file_atomic(path, data), report.cycle_id
            )
        except StorageError as e:
            await self._audit.log_remote_write_failed(path, str(e), report.cycle_id)
            return False
        report.files_written.append(path)
        await self._audit.log_remote_written(path, len(data), report.cycle_id)
        return True

    async def _write_records(
        self,
        entity_type: EntityType,
        path: str,
        records: list[Any],
        remote_file: Optional[_RemoteFile],
        preserved: list[list[str]],
        report: SyncReport,
    ) -> bool:
        previous = remote_file.text if remote_file else None
        if previous is None and not records:
            return True
        if (
            remote_file is not None
            and remote_file.malformed
            and len(preserved) == len(remote_file.malformed)
            and _same_records(records, remote_file.records)
        ):
            # Rewriting would only move the rows we cannot read
            return True
        return await self._write_if_changed(
            path,
            encode_records(entity_type, records, preserved),
            previous,
            report,
        )

    async def _write_remote(
        self,
        parts: list[_Part],
        settings_part: _SettingsPart,
        remote: _RemoteState,
        report: SyncReport,
    ) -> None:
        for part in parts:
            if part.resolved is None:
                continue
            merged = part.resolved.merged
            if part.entity_type == EntityType.TRANSACTION:
                files = {
                    month: remote.month_files[month]
                    for month in part.months
                    if month in remote.month_files
                }
                preserved = _hold_unreadable_rows(part, merged, files.values())
                writable = [t for t in merged.values() if t.id not in part.held_ids]
                for month in sorted(part.months):
                    month_file = files.get(month)
                    ok = await self._write_records(
                        EntityType.TRANSACTION,
                        transaction_file_name(month),
                        [t for t in writable if t.month_key == month],
                        month_file,
                        preserved.get(month_file.path, []) if month_file else [],
                        report,
                    )
                    part.write_failed = part.write_failed or not ok
            else:
                remote_file = remote.members if part.entity_type == EntityType.MEMBER else remote.categories
                preserved = _hold_unreadable_rows(part, merged, [remote_file])
                ok = await self._write_records(
                    part.entity_type,
                    part.name,
                    [r for r in merged.values() if r.id not in part.held_ids],
                    remote_file,
                    preserved.get(remote_file.path, []),
                    report,
                )
                part.write_failed = not ok

        if settings_part.resolution is not None:
            ok = await self._write_if_changed(
                SETTINGS_FILE,
                encode_settings(settings_part.resolution.settings),
                remote.settings_file.text if remote.settings_file else None,
                report,
            )
            settings_part.write_failed = not ok

    # =========================================================================
    # UPDATING SNAPSHOT
    # =========================================================================

    async def _update_snapshot(
        self,
        parts: list[_Part],
        settings_part: _SettingsPart,
        previous: Optional[Snapshot],
        report: SyncReport,
    ) -> None:
        """
        Advance the snapshot for completed parts only.

        A first sync with any incomplete part saves nothing: a partial
        baseline would make unmatched records look like id collisions
        on the next cycle.
        """
        incomplete = [p.name for p in parts if not p.completed]
        if not settings_part.completed:
            incomplete.append(SETTINGS_FILE)
        if previous is None and incomplete:
            logger.warning(
                "first_sync_snapshot_withheld",
                cycle_id=str(report.cycle_id),
                incomplete=incomplete,
            )
            return

        tables: dict[EntityType, RecordMap] = {
            EntityType.MEMBER: {},
            EntityType.CATEGORY: {},
            EntityType.TRANSACTION: {},
        }
        for part in parts:
            if part.completed:
                view = part.resolved.snapshot_view()
                for record_id in part.stale_ids | part.held_ids:
                    if record_id in part.ancestor:
                        view[record_id] = part.ancestor[record_id]
                    else:
                        view.pop(record_id, None)
            else:
                view = part.ancestor
            tables[part.entity_type].update(view)

        if settings_part.completed and not settings_part.stale:
            settings = settings_part.resolution.settings
        else:
            settings = previous.settings if previous else None

        snapshot = Snapshot(
            transactions=_sorted_records(tables[EntityType.TRANSACTION]),
            members=_sorted_records(tables[EntityType.MEMBER]),
            categories=_sorted_records(tables[EntityType.CATEGORY]),
            settings=settings,
        )
        if previous is not None and _same_snapshot(previous, snapshot):
            logger.debug("snapshot_unchanged", cycle_id=str(report.cycle_id))
            return
        await self._snapshots.save(snapshot)
        await self._audit.log_snapshot_advanced(
            len(snapshot.transactions),
            len(snapshot.members),
            len(snapshot.categories),
            report.cycle_id,
        )


# =============================================================================
# HELPERS
# =============================================================================

def _newer(existing: Any, candidate: Any) -> Any:
    """Of two versions of one id, the later updated_at (tie: lexically greater)."""
    if existing is None:
        return candidate
    if candidate.updated_at != existing.updated_at:
        return candidate if candidate.updated_at > existing.updated_at else existing
    return candidate if canonical_json(candidate) > canonical_json(existing) else existing


def _first_sync_ancestor(local: RecordMap, remote: RecordMap) -> RecordMap:
    """
    Baseline when there is no snapshot.

    For ids on both sides the older version plays ancestor, so the newer
    side wins as a one-sided change; on a tie local is the ancestor and
    the shared copy wins. Ids on one side only stay additions.
    """
    ancestor: RecordMap = {}
    for record_id in local.keys() & remote.keys():
        l, r = local[record_id], remote[record_id]
        ancestor[record_id] = r if r.updated_at < l.updated_at else l
    return ancestor


def _protect(
    remote: RecordMap,
    protected: set[UUID],
    ancestor: RecordMap,
    local: RecordMap,
) -> None:
    """Stand in for unreadable remote rows so they never read as deletes."""
    for record_id in protected:
        if record_id in remote:
            continue
        stand_in = ancestor.get(record_id) or local.get(record_id)
        if stand_in is not None:
            remote[record_id] = stand_in


def _hold_unreadable_rows(
    part: _Part,
    merged: RecordMap,
    remote_files: Iterable[_RemoteFile],
) -> dict[str, list[list[str]]]:
    """
    Choose the undecodable remote rows to write back, by file path.

    Such a row may come from a newer app version, so it is only replaced
    when the merged record is newer than the row's own updated_at. A
    kept row's id goes into part.held_ids: it is left out of the written
    records and keeps its ancestor in the snapshot.
    """
    preserved: dict[str, list[list[str]]] = {}
    for remote_file in remote_files:
        for error in remote_file.malformed:
            current = merged.get(error.record_id) if error.record_id else None
            if (
                current is not None
                and error.updated_at is not None
                and current.updated_at > error.updated_at
            ):
                continue
            preserved.setdefault(remote_file.path, []).append(error.row)
            if error.record_id is not None:
                part.held_ids.add(error.record_id)
    return preserved


def _same_records(records: Iterable[Any], existing: RecordMap) -> bool:
    records = list(records)
    return len(records) == len(existing) and all(
        records_equal(existing.get(record.id), record) for record in records
    )


def _same_snapshot(a: Snapshot, b: Snapshot) -> bool:
    """Same records and settings; taken_at is ignored."""
    return records_equal(a.settings, b.settings) and all(
        _same_records(a.records(entity_type).values(), b.records(entity_type))
        for entity_type in (EntityType.TRANSACTION, EntityType.MEMBER, EntityType.CATEGORY)
    )


def _sorted_records(records: RecordMap) -> list[Any]:
    return [records[record_id] for record_id in sorted(records, key=str)]
