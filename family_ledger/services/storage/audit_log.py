"""
Append-only JSONL audit storage.

One event per line. Lines are only ever appended.
"""

import asyncio
import json
from pathlib import Path
from uuid import UUID

import structlog

from family_ledger.exceptions import IOFailure
from family_ledger.models.audit import AuditEvent
from family_ledger.services.storage.interface import AuditStorageInterface


logger = structlog.get_logger(__name__)


class JsonlAuditStorage(AuditStorageInterface):
    """Audit storage in a device-local .jsonl file."""

    def __init__(self, path: Path):
        self._path = Path(path)
        self._lock = asyncio.Lock()

    def _append(self, line: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    def _read_all(self) -> list[AuditEvent]:
        if not self._path.exists():
            return []
        events = []
        with self._path.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(AuditEvent.model_validate(json.loads(line)))
                except ValueError as e:
                    # A torn last line after a crash; keep reading the rest
                    logger.warning(
                        "audit_line_unreadable",
                        path=str(self._path),
                        line_number=line_number,
                        error=str(e),
                    )
        return events

    async def append_event(self, event: AuditEvent) -> bool:
        async with self._lock:
            try:
                await asyncio.to_thread(self._append, event.to_json_line())
            except OSError as e:
                raise IOFailure(f"Could not append audit event: {e}") from e
        return True

    async def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        events = await asyncio.to_thread(self._read_all)
        return [e for e in events if e.correlation_id == correlation_id]

    async def get_events_by_entity(self, entity_type: str, entity_id: UUID) -> list[AuditEvent]:
        events = await asyncio.to_thread(self._read_all)
        return [
            e for e in events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        events = await asyncio.to_thread(self._read_all)
        return list(reversed(events))[:limit]
