# src/annotask/tasks/task_api.py

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from ..core.state import AppState
from ..errors import PersistenceError
from .task_models import Task, TaskStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class CaptureResult:
    task: Task
    duration: float


def annotation_to_task_data(annotation: Mapping[str, Any]) -> dict[str, Any]:
    """
    Convert a capture-layer annotation into TaskStore input.

    Capture shape: elementLabel, content, target, boundingRect{x, y, width, height},
    screenshot (truthy when an image was saved under screenshots/<id>.png).
    """
    rect = annotation.get("boundingRect") or {}
    data: dict[str, Any] = {
        "title": annotation.get("elementLabel") or "UI Element Task",
        "comment": annotation.get("content"),
        "selector": annotation.get("target"),
        "boundingRect": {
            "x": rect.get("x", 0),
            "y": rect.get("y", 0),
            "w": rect.get("w", rect.get("width", 0)),
            "h": rect.get("h", rect.get("height", 0)),
        },
        "screenshotPath": "",
    }
    if annotation.get("screenshot") and annotation.get("id"):
        data["screenshotPath"] = f"./screenshots/{annotation['id']}.png"
    return data


async def capture_annotation(state: AppState, annotation: Mapping[str, Any]) -> CaptureResult:
    """
    Intake pipeline used by the page overlay:
    annotation -> add_task_and_save -> markdown rebuild (chronological view).
    """
    if not state.is_ready():
        raise PersistenceError("No project directory connected")

    started = time.perf_counter()
    task = await state.task_store.add_task_and_save(annotation_to_task_data(annotation))
    await state.markdown.rebuild(state.task_store.get_all_chronological())
    duration = time.perf_counter() - started

    logger.info("Captured task id=%s in %.1fms", task.id, duration * 1000)
    return CaptureResult(task=task, duration=duration)


async def set_task_status(state: AppState, task_id: str, status: TaskStatus | str) -> Task | None:
    task = await state.task_store.update_status_and_save(task_id, status)
    if task is not None:
        await state.markdown.rebuild(state.task_store.get_all_chronological())
    return task


async def mark_task_done(state: AppState, task_id: str) -> Task | None:
    return await set_task_status(state, task_id, TaskStatus.DONE)


async def remove_task(state: AppState, task_id: str) -> bool:
    removed = await state.task_store.remove_task_and_save(task_id)
    if removed:
        await state.markdown.rebuild(state.task_store.get_all_chronological())
    return removed


async def start_to_do_tasks(state: AppState) -> list[Task]:
    """Hand every open "to-do" task to the agent: they all become "doing"."""
    store = state.task_store
    started: list[Task] = []
    for task in store.get_all_chronological():
        if task.status is TaskStatus.TO_DO:
            store.update_status(task.id, TaskStatus.DOING)
            started.append(task)

    if started:
        await store.save_to_file()
        await state.markdown.rebuild(store.get_all_chronological())
    logger.info("Marked %d tasks as doing", len(started))
    return started


async def refresh_from_disk(state: AppState) -> list[Task]:
    """React to an external change of tasks.json: re-read, then re-render."""
    await state.task_store.load_from_file()
    tasks = state.task_store.get_all_chronological()
    await state.markdown.rebuild(tasks)
    return tasks
