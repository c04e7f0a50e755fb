# src/annotask/tasks/task_store.py

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Any

from ..core.ports import ChangeNotifier, ProjectFiles
from ..errors import CorruptDataError, PersistenceError, ValidationError
from .task_models import BoundingRect, Readiness, Task, TaskStatus, new_task_id, now_ms

logger = logging.getLogger(__name__)


class TaskStore:
    """
    JSON-file task store.

    The in-memory list is the source of truth:
    - plain mutators (add_task, update_status, remove_task) touch memory only
    - *_and_save wrappers mutate, then persist the whole list
    - a failed save never rolls memory back, so the caller can retry

    On disk the list is always written oldest-first (chronological by
    timestamp) so that diffs of tasks.json stay small.
    """

    def __init__(
        self,
        files: ProjectFiles | None = None,
        *,
        file_name: str = "tasks.json",
        notifier: ChangeNotifier | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._files = files
        self._file_name = file_name
        self._notifier = notifier
        self._clock = clock
        self._tasks: list[Task] = []
        self._save_lock = asyncio.Lock()

    # ---- readiness ----

    def attach(self, files: ProjectFiles) -> None:
        self._files = files
        logger.info("TaskStore attached to %r file=%s", files, self._file_name)

    @property
    def readiness(self) -> Readiness:
        return Readiness.READY if self._files is not None else Readiness.NOT_READY

    def is_ready(self) -> bool:
        return self.readiness is Readiness.READY

    @property
    def file_name(self) -> str:
        return self._file_name

    def _require_files(self) -> ProjectFiles:
        if self._files is None:
            raise PersistenceError("TaskStore is not attached to a project directory")
        return self._files

    # ---- queries ----

    def get_task(self, task_id: str) -> Task | None:
        for task in self._tasks:
            if task.id == task_id:
                return task
        return None

    def get_all(self) -> list[Task]:
        """Newest first (UI ordering)."""
        return sorted(self._tasks, key=lambda t: t.timestamp, reverse=True)

    def get_all_chronological(self) -> list[Task]:
        """Oldest first; used for every write and render."""
        return sorted(self._tasks, key=lambda t: t.timestamp)

    def count(self) -> int:
        return len(self._tasks)

    def get_stats(self) -> dict[str, int]:
        stats = {"total": len(self._tasks)}
        for status in TaskStatus:
            stats[status.value] = 0
        for task in self._tasks:
            stats[task.status.value] += 1
        return stats

    # ---- in-memory mutations ----

    def add_task(self, data: Mapping[str, Any]) -> Task:
        """
        Create a task, or update/refresh an existing one.

        Resolution order:
        1. data["id"] matches a stored task -> merge the fields present in data
        2. an open task with the same selector and trimmed comment exists
           (functional duplicate) -> refresh its timestamp and return it
        3. otherwise append a new "to-do" task with a fresh id
        """
        task_id = data.get("id")
        if task_id:
            existing = self.get_task(str(task_id))
            if existing is not None:
                self._merge(existing, data)
                logger.debug("Updated existing task id=%s", existing.id)
                return existing

        title = _required_text(data, "title")
        comment = _required_text(data, "comment")
        selector = _required_text(data, "selector")
        screenshot_path = str(data.get("screenshotPath") or "")
        now = self._clock()

        duplicate = self._find_functional_duplicate(selector, comment)
        if duplicate is not None:
            logger.warning(
                "Functional duplicate of task id=%s (selector=%s); refreshing timestamp",
                duplicate.id,
                selector,
            )
            duplicate.timestamp = now
            duplicate.last_modified = now
            if screenshot_path:
                duplicate.screenshot_path = screenshot_path
            return duplicate

        task = Task(
            id=new_task_id(),
            title=title,
            comment=comment,
            selector=selector,
            status=TaskStatus.TO_DO,
            timestamp=now,
            bounding_rect=BoundingRect.from_any(data.get("boundingRect")),
            screenshot_path=screenshot_path,
        )
        self._tasks.append(task)
        logger.info("Created task id=%s selector=%s", task.id, selector)
        return task

    def add_or_update_task(self, task_id: str | None, data: Mapping[str, Any]) -> Task:
        if task_id:
            return self.add_task({**data, "id": task_id})
        return self.add_task(data)

    def put_task(self, task: Task) -> Task:
        """
        Insert a fully-formed task as-is (id and timestamp included).

        Used by migration to carry legacy ids forward. The converter has
        already dropped functional duplicates, so only validation runs here.
        """
        task.validate()
        if self.get_task(task.id) is not None:
            raise ValidationError(f"Task id already exists: {task.id}")
        self._tasks.append(task)
        return task

    def update_status(self, task_id: str, status: TaskStatus | str) -> Task | None:
        new_status = TaskStatus.parse(status)
        task = self.get_task(task_id)
        if task is None:
            return None
        if new_status is not TaskStatus.DONE:
            self._check_open_key(task.selector, task.comment, exclude=task)
        task.status = new_status
        task.last_modified = self._clock()
        logger.info("Task %s -> %s", task_id, new_status.value)
        return task

    def remove_task(self, task_id: str) -> bool:
        for i, task in enumerate(self._tasks):
            if task.id == task_id:
                del self._tasks[i]
                logger.info("Removed task id=%s", task_id)
                return True
        logger.warning("Task not found for removal: %s", task_id)
        return False

    def clear(self) -> None:
        self._tasks = []

    def _find_functional_duplicate(
        self, selector: str, comment: str, *, exclude: Task | None = None
    ) -> Task | None:
        key = (selector, comment.strip())
        for task in self._tasks:
            if task is not exclude and task.is_open and task.functional_key() == key:
                return task
        return None

    def _check_open_key(self, selector: str, comment: str, *, exclude: Task) -> None:
        other = self._find_functional_duplicate(selector, comment, exclude=exclude)
        if other is not None:
            raise ValidationError(
                f"Task {other.id} is already open for selector {selector!r} with the same comment"
            )

    def _merge(self, task: Task, data: Mapping[str, Any]) -> None:
        # Everything is resolved first: a rejected merge must leave the task untouched.
        updates: dict[str, Any] = {}
        for key in ("title", "comment", "selector"):
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                updates[key] = value
        if data.get("boundingRect"):
            updates["bounding_rect"] = BoundingRect.from_any(data["boundingRect"])
        if data.get("screenshotPath"):
            updates["screenshot_path"] = str(data["screenshotPath"])
        if data.get("status"):
            updates["status"] = TaskStatus.parse(data["status"])

        if updates.get("status", task.status) is not TaskStatus.DONE:
            self._check_open_key(
                updates.get("selector", task.selector),
                updates.get("comment", task.comment),
                exclude=task,
            )

        for attr, value in updates.items():
            setattr(task, attr, value)
        task.last_modified = self._clock()

    # ---- file I/O ----

    async def load_from_file(self) -> list[Task]:
        """
        Replace the in-memory list with the content of the JSON file.

        Missing or blank file -> empty list. Unparseable or invalid content
        raises CorruptDataError and leaves memory untouched.
        """
        files = self._require_files()
        try:
            raw = await files.read_text(self._file_name)
        except FileNotFoundError:
            logger.info("Task file %s not found, starting with empty task list", self._file_name)
            self._tasks = []
            return []
        except OSError as exc:
            raise PersistenceError(f"Failed to read {self._file_name}: {exc}") from exc

        if not raw.strip():
            self._tasks = []
            return []

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CorruptDataError(f"{self._file_name} is not valid JSON: {exc}") from exc

        if not isinstance(data, list):
            raise CorruptDataError(f"{self._file_name} must contain a JSON array of tasks")

        loaded: list[Task] = []
        seen: set[str] = set()
        for index, entry in enumerate(data):
            try:
                task = Task.from_dict(entry)
            except ValidationError as exc:
                raise CorruptDataError(f"{self._file_name} entry #{index}: {exc}") from exc
            if task.id in seen:
                raise CorruptDataError(f"{self._file_name} contains duplicate task id {task.id}")
            seen.add(task.id)
            loaded.append(task)

        self._tasks = loaded
        logger.info("Loaded %d tasks from %s", len(loaded), self._file_name)
        return self.get_all()

    def serialize(self) -> str:
        for task in self._tasks:
            task.validate()
        payload = [task.to_dict() for task in self.get_all_chronological()]
        return json.dumps(payload, ensure_ascii=False, indent=2) + "\n"

    async def save_to_file(self) -> None:
        files = self._require_files()
        started = time.perf_counter()
        async with self._save_lock:
            text = self.serialize()
            try:
                await files.write_text(self._file_name, text)
            except OSError as exc:
                raise PersistenceError(f"Failed to save tasks: {exc}") from exc
        logger.debug("Saved %d tasks to %s", len(self._tasks), self._file_name)
        self._notify(time.perf_counter() - started)

    async def add_task_and_save(self, data: Mapping[str, Any]) -> Task:
        task = self.add_task(data)
        await self.save_to_file()
        return task

    async def update_status_and_save(self, task_id: str, status: TaskStatus | str) -> Task | None:
        task = self.update_status(task_id, status)
        if task is not None:
            await self.save_to_file()
        return task

    async def remove_task_and_save(self, task_id: str) -> bool:
        removed = self.remove_task(task_id)
        if removed:
            await self.save_to_file()
        return removed

    async def create_backup(self) -> str | None:
        """Best-effort snapshot next to tasks.json. Returns the backup name, or None."""
        if self._files is None:
            return None
        stamp = datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-")
        name = PurePath(self._file_name)
        backup_name = f"{name.stem}.backup.{stamp}{name.suffix}"
        try:
            await self._files.write_text(backup_name, self.serialize())
        except (OSError, ValidationError):
            logger.exception("Failed to create task backup %s", backup_name)
            return None
        logger.info("Backup created: %s", backup_name)
        return backup_name

    def _notify(self, duration: float) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier(self.get_all_chronological(), duration)
        except Exception:
            logger.exception("Change notifier failed after save")


def _required_text(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Task must have title, comment, and selector (missing {key})")
    return value
