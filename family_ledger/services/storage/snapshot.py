"""
Snapshot persistence.

The snapshot is engine-private and lives on the device, never in the
shared folder. Anything wrong with it (missing, corrupt, older schema)
is reported as SnapshotMismatch, which the orchestrator treats as a
first sync.
"""

import asyncio
import json
from pathlib import Path

import structlog
from pydantic import ValidationError as PydanticValidationError

from family_ledger.exceptions import IOFailure, SnapshotMismatch
from family_ledger.models.sync import SNAPSHOT_SCHEMA_VERSION, Snapshot
from family_ledger.services.storage.filesystem import atomic_write_bytes


logger = structlog.get_logger(__name__)


class SnapshotStore:
    """Loads and atomically saves the last synchronized state."""

    def __init__(self, path: Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> Snapshot:
        """
        Load the ancestor snapshot.

        Raises:
            SnapshotMismatch: If missing, unreadable or of another schema version
        """
        try:
            raw = await asyncio.to_thread(self._path.read_bytes)
        except FileNotFoundError as e:
            raise SnapshotMismatch(f"No snapshot at {self._path}") from e
        except OSError as e:
            raise SnapshotMismatch(f"Snapshot unreadable: {e}") from e

        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SnapshotMismatch(f"Snapshot is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise SnapshotMismatch("Snapshot root is not an object")

        version = data.get("schema_version")
        if version != SNAPSHOT_SCHEMA_VERSION:
            raise SnapshotMismatch(
                f"Snapshot schema {version!r} != {SNAPSHOT_SCHEMA_VERSION}"
            )

        try:
            return Snapshot.model_validate(data)
        except PydanticValidationError as e:
            raise SnapshotMismatch(f"Snapshot failed validation: {e}") from e

    async def save(self, snapshot: Snapshot) -> None:
        payload = snapshot.model_dump_json(indent=2).encode("utf-8")
        try:
            await asyncio.to_thread(atomic_write_bytes, self._path, payload)
        except OSError as e:
            raise IOFailure(f"Could not save snapshot: {e}") from e
        logger.info(
            "snapshot_saved",
            path=str(self._path),
            transactions=len(snapshot.transactions),
            members=len(snapshot.members),
            categories=len(snapshot.categories),
        )

    async def clear(self) -> None:
        """Forget the snapshot; the next cycle runs as a first sync."""
        await asyncio.to_thread(self._path.unlink, True)
