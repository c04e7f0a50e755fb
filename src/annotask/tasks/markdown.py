# src/annotask/tasks/markdown.py

"""
Task list -> markdown rendering.

render() is a pure function of its input: the "_Generated: ..._" footer line
is the only part allowed to differ between two calls with the same tasks.
It never raises; internal failures produce an error document instead, so the
file write that follows always has something readable to write.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Any

from ..core.ports import ChangeNotifier, ProjectFiles
from ..errors import PersistenceError
from .task_models import Readiness, Task, TaskStatus, to_epoch_ms

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Annotation Tasks"
EMPTY_PLACEHOLDER = "_No tasks yet. Annotate an element on the page to create one._"


def _local_now() -> datetime:
    return datetime.now().astimezone()


def _get(task: Any, attr: str, key: str) -> Any:
    if isinstance(task, Mapping):
        return task.get(key)
    return getattr(task, attr, None)


def task_status(task: Any) -> TaskStatus | None:
    raw = _get(task, "status", "status")
    return TaskStatus.from_legacy(raw)


def task_timestamp(task: Any) -> int:
    return to_epoch_ms(_get(task, "timestamp", "timestamp")) or 0


def sort_chronological(tasks: Iterable[Any]) -> list[Any]:
    return sorted(tasks, key=task_timestamp)


def task_stats(tasks: Iterable[Any]) -> dict[str, int]:
    items = list(tasks)
    stats = {"total": len(items)}
    for status in TaskStatus:
        stats[status.value] = 0
    for task in items:
        status = task_status(task)
        if status is not None:
            stats[status.value] += 1
    return stats


def status_checkbox(status: TaskStatus | None) -> str:
    return "[x]" if status is TaskStatus.DONE else "[ ]"


def truncate_comment(comment: str | None, max_length: int = 60) -> str:
    if not comment:
        return ""
    cleaned = " ".join(str(comment).split())
    if len(cleaned) <= max_length:
        return cleaned
    return cleaned[: max_length - 3] + "..."


class MarkdownGenerator:
    def __init__(
        self,
        files: ProjectFiles | None = None,
        *,
        file_name: str = "tasks.md",
        source_name: str = "tasks.json",
        title: str = DEFAULT_TITLE,
        comment_max_length: int = 60,
        notifier: ChangeNotifier | None = None,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self._files = files
        self._file_name = file_name
        self._source_name = source_name
        self._title = title
        self._comment_max_length = comment_max_length
        self._notifier = notifier
        self._clock = clock

    def attach(self, files: ProjectFiles) -> None:
        self._files = files

    @property
    def readiness(self) -> Readiness:
        return Readiness.READY if self._files is not None else Readiness.NOT_READY

    def is_ready(self) -> bool:
        return self.readiness is Readiness.READY

    @property
    def file_name(self) -> str:
        return self._file_name

    # ---- rendering ----

    def render(self, tasks: Iterable[Task | Mapping[str, Any]], *, generated_at: datetime | None = None) -> str:
        stamp = self._format_stamp(generated_at)
        try:
            return self._render(tasks, stamp)
        except Exception as exc:
            logger.exception("Error generating markdown from tasks")
            return self.render_error(str(exc) or type(exc).__name__, stamp)

    def _render(self, tasks: Iterable[Any], stamp: str) -> str:
        ordered = sort_chronological(tasks)
        stats = task_stats(ordered)

        lines = [f"# {self._title}", ""]
        lines.append(
            f"**Total**: {stats['total']} | "
            f"**To Do**: {stats[TaskStatus.TO_DO.value]} | "
            f"**Doing**: {stats[TaskStatus.DOING.value]} | "
            f"**Done**: {stats[TaskStatus.DONE.value]}"
        )
        lines += ["", "## Tasks", ""]

        if not ordered:
            lines.append(EMPTY_PLACEHOLDER)
        else:
            for number, task in enumerate(ordered, start=1):
                title = _get(task, "title", "title") or "Untitled Task"
                checkbox = status_checkbox(task_status(task))
                comment = truncate_comment(_get(task, "comment", "comment"), self._comment_max_length)
                line = f"{number}. {checkbox} {title}"
                if comment:
                    line += f' – "{comment}"'
                lines.append(line)

        lines += ["", "---", "", f"_Generated: {stamp}_", f"_Source: {self._source_name}_"]
        return "\n".join(lines) + "\n"

    def render_error(self, message: str, stamp: str | None = None) -> str:
        stamp = stamp or self._format_stamp(None)
        return (
            f"# {self._title}\n\n"
            "**Error generating task list**\n\n"
            f"{message}\n\n"
            "---\n\n"
            f"_Generated: {stamp}_\n"
        )

    def _format_stamp(self, generated_at: datetime | None) -> str:
        try:
            when = generated_at or self._clock()
            return when.strftime("%Y-%m-%d %H:%M:%S")
        except Exception:
            logger.debug("Generated-at clock failed", exc_info=True)
            return "unknown"

    # ---- file I/O ----

    async def write_to_file(self, text: str) -> None:
        if self._files is None:
            raise PersistenceError("MarkdownGenerator is not attached to a project directory")
        try:
            await self._files.write_text(self._file_name, text)
        except OSError as exc:
            raise PersistenceError(f"Failed to write markdown: {exc}") from exc
        logger.debug("Wrote %s (%d chars)", self._file_name, len(text))

    async def rebuild(self, tasks: Iterable[Task | Mapping[str, Any]]) -> str:
        """render() + write_to_file(); the single entry point used after any mutation."""
        started = time.perf_counter()
        try:
            items = list(tasks)
        except Exception as exc:
            logger.exception("Could not read the task list for %s", self._file_name)
            items = []
            text = self.render_error(f"Unreadable task list: {exc}")
        else:
            text = self.render(items)
        await self.write_to_file(text)
        self._notify(items, time.perf_counter() - started)
        return text

    def _notify(self, tasks: list[Any], duration: float) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier(tasks, duration)
        except Exception:
            logger.exception("Change notifier failed after markdown rebuild")
