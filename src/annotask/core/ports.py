# src/annotask/core/ports.py

"""
Ports (interfaces) used by the core.

The core depends on Protocols instead of concrete implementations.
This keeps the host environment (browser directory handle, local folder,
in-memory fake) swappable and makes testing easier.
"""

from __future__ import annotations

from typing import Any, Protocol


class ProjectFiles(Protocol):
    """
    File capability over one fixed project directory.

    Names are plain file names inside the root; the core never resolves
    paths on its own. Missing files raise FileNotFoundError on read,
    every other I/O problem surfaces as OSError.
    """

    async def exists(self, name: str) -> bool: ...

    async def read_text(self, name: str) -> str: ...

    async def write_text(self, name: str, text: str) -> None:
        """Whole-file atomic replace: readers see old or new content, never a mix."""
        ...

    async def delete(self, name: str) -> bool:
        """Return True if the file existed and was removed."""
        ...

    async def list_names(self) -> list[str]: ...

    def subdir(self, name: str) -> ProjectFiles: ...


class ChangeNotifier(Protocol):
    """
    Fired after every successful save/rebuild so external views can refresh.

    tasks: the updated chronological task list (Task objects).
    duration: elapsed seconds of the operation that triggered it.
    """

    def __call__(self, tasks: list[Any], duration: float) -> None: ...
