# src/annotask/storage/project_dir.py

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


class ProjectDirectory:
    """
    Local-folder implementation of the ProjectFiles port.

    - every name is resolved inside `root`; separators and ".." are rejected
    - writes go to a temp file in the same directory, then os.replace()
    - writes to the same file are serialized with one asyncio.Lock per path
    - blocking I/O runs in a worker thread (asyncio.to_thread)

    A write that has started is shielded from cancellation of the caller,
    so a closed panel never leaves a half-applied replace behind.
    """

    def __init__(self, root: str | Path, *, create: bool = True) -> None:
        self._root = Path(root)
        if create:
            self._root.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def root(self) -> Path:
        return self._root

    def __repr__(self) -> str:
        return f"ProjectDirectory(root={str(self._root)!r})"

    # ---- low-level helpers ----

    def _path(self, name: str) -> Path:
        if not name or name in (".", "..") or "/" in name or "\\" in name:
            raise ValueError(f"invalid file name: {name!r}")
        return self._root / name

    def _lock_for(self, path: Path) -> asyncio.Lock:
        key = str(path)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @staticmethod
    def _atomic_write(path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp)

    @staticmethod
    def _read(path: Path) -> str:
        # newline="" keeps CRLF files byte-exact through backup and restore.
        with open(path, encoding="utf-8", newline="") as f:
            return f.read()

    @staticmethod
    def _unlink(path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    # ---- ProjectFiles API ----

    async def exists(self, name: str) -> bool:
        return await asyncio.to_thread(self._path(name).is_file)

    async def read_text(self, name: str) -> str:
        path = self._path(name)
        return await asyncio.to_thread(self._read, path)

    async def write_text(self, name: str, text: str) -> None:
        path = self._path(name)
        async with self._lock_for(path):
            await asyncio.shield(asyncio.to_thread(self._atomic_write, path, text))
        logger.debug("Wrote %s (%d chars)", path, len(text))

    async def delete(self, name: str) -> bool:
        path = self._path(name)
        async with self._lock_for(path):
            removed = await asyncio.to_thread(self._unlink, path)
        if removed:
            logger.debug("Deleted %s", path)
        return removed

    async def list_names(self) -> list[str]:
        def _scan() -> list[str]:
            if not self._root.is_dir():
                return []
            return sorted(p.name for p in self._root.iterdir() if p.is_file())

        return await asyncio.to_thread(_scan)

    def subdir(self, name: str) -> ProjectDirectory:
        return ProjectDirectory(self._path(name), create=True)
