"""
Shared Folder Storage Implementation

DESIGN DECISION: The shared folder is just a directory. Whatever mirrors
it between devices (a cloud drive, a sync daemon) is opaque to us, so
the only guarantees we rely on are the ones a local filesystem gives:
1. os.replace is atomic within one directory
2. A reader sees either the old file or the new one

TRADEOFFS:
- No cross-device locking (the merge handles concurrent edits)
- A mirrored file may still be half-downloaded when we read it
  (the codec reports it and the cycle skips that file)

Blocking filesystem calls run in a worker thread via asyncio.to_thread,
each bounded by a timeout.
"""

import asyncio
import contextlib
import os
import tempfile
from pathlib import Path
from typing import Any, Callable

import structlog

from family_ledger.exceptions import IOFailure, NotFoundError
from family_ledger.services.storage.interface import SharedFileStoreInterface


logger = structlog.get_logger(__name__)


def atomic_write_bytes(target: Path, data: bytes) -> None:
    """Write to a temp file in the same directory, then os.replace it in."""
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=target.parent,
    )
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


def _list_files(folder: Path) -> list[str]:
    return sorted(
        entry.name
        for entry in folder.iterdir()
        if entry.is_file() and not entry.name.startswith(".")
    )


class FolderFileStore(SharedFileStoreInterface):
    """
    Shared file store over a local directory.

    All paths are relative to root. OS errors and timeouts surface as
    IOFailure; a missing file surfaces as NotFoundError.
    """

    def __init__(self, root: Path, timeout_seconds: float = 30.0):
        """
        Initialize the file store.

        Args:
            root: The ledger folder (as mirrored by the sync transport)
            timeout_seconds: Bound on every single filesystem operation
        """
        self._root = Path(root)
        self._timeout = timeout_seconds

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, path: str) -> Path:
        return self._root / path if path else self._root

    async def _run(self, operation: str, path: str, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning("file_store_timeout", operation=operation, path=path)
            raise IOFailure(
                f"{operation} timed out after {self._timeout}s: {path}"
            ) from e
        except FileNotFoundError as e:
            raise NotFoundError(f"File not found: {path}") from e
        except OSError as e:
            logger.warning(
                "file_store_error",
                operation=operation,
                path=path,
                error=str(e),
            )
            raise IOFailure(f"{operation} failed for {path}: {e}") from e

    async def list_files(self, folder: str = "") -> list[str]:
        return await self._run("list", folder, _list_files, self._resolve(folder))

    async def read_file(self, path: str) -> bytes:
        return await self._run("read", path, self._resolve(path).read_bytes)

    async def write_file_atomic(self, path: str, data: bytes) -> None:
        await self._run("write", path, atomic_write_bytes, self._resolve(path), data)
        logger.debug("file_written", path=path, size_bytes=len(data))

    async def ensure_folder(self, path: str = "") -> None:
        target = self._resolve(path)
        await self._run(
            "mkdir",
            path,
            lambda: target.mkdir(parents=True, exist_ok=True),
        )

    async def file_exists(self, path: str) -> bool:
        return await self._run("stat", path, self._resolve(path).is_file)
