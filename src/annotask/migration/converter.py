# src/annotask/migration/converter.py

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from ..tasks.task_models import BoundingRect, Task, TaskStatus, new_task_id
from .legacy_parsers import LegacyAnnotation, LegacySource, extract_element_label

logger = logging.getLogger(__name__)

# Sources are merged in this order; later ones can only enhance or add.
_SOURCE_ORDER = {LegacySource.STREAM: 0, LegacySource.SUMMARY: 1, LegacySource.DETAILED: 2}

DEFAULT_SELECTOR = "body"
DEFAULT_TITLE = "UI Element"
DEFAULT_COMMENT = "Migrated task"


def _original_id(task: Task) -> str | None:
    data = task.extra.get("migrationData")
    if isinstance(data, dict):
        return data.get("originalId")
    return None


def _find_match(converted: list[Task], ann: LegacyAnnotation) -> Task | None:
    for task in converted:
        if ann.comment and task.comment == ann.comment:
            return task
        if ann.title and task.title == ann.title:
            return task
        if ann.original_id and _original_id(task) == ann.original_id:
            return task
    return None


def _enhance(task: Task, ann: LegacyAnnotation, used_ids: set[str], carried: set[str]) -> None:
    """Fold the richer detailed-markdown data into a task created from another source."""
    if ann.selector:
        task.selector = ann.selector
    if ann.created is not None:
        task.timestamp = ann.created
    status = TaskStatus.from_legacy(ann.status)
    if status is not None:
        task.status = status
    if ann.original_id and task.id not in carried and ann.original_id not in used_ids:
        used_ids.discard(task.id)
        task.id = ann.original_id
        used_ids.add(task.id)
        carried.add(task.id)
    migration_data = task.extra.setdefault("migrationData", {})
    if ann.original_id:
        migration_data.setdefault("originalId", ann.original_id)
    task.extra["source"] = "migration-enhanced"


def _create(
    ann: LegacyAnnotation,
    *,
    now: int,
    used_ids: set[str],
    carried: set[str],
    id_factory: Callable[[], str],
) -> Task:
    if ann.original_id and ann.original_id not in used_ids:
        task_id = ann.original_id
        carried.add(task_id)
    else:
        task_id = id_factory()
        while task_id in used_ids:
            task_id = id_factory()
    used_ids.add(task_id)

    selector = ann.selector or DEFAULT_SELECTOR
    migration_data: dict[str, Any] = {"originalId": ann.original_id, "originalNumber": ann.number, **ann.meta}

    task = Task(
        id=task_id,
        title=ann.title or extract_element_label(ann.selector) or DEFAULT_TITLE,
        comment=ann.comment or ann.title or DEFAULT_COMMENT,
        selector=selector,
        status=TaskStatus.from_legacy(ann.status, TaskStatus.TO_DO) or TaskStatus.TO_DO,
        timestamp=ann.created if ann.created is not None else now,
        bounding_rect=BoundingRect.from_any(ann.bounding_rect),
        last_modified=now,
        extra={
            "source": f"migration-{ann.source.value}",
            "migrationData": {k: v for k, v in migration_data.items() if v is not None},
        },
    )
    if ann.has_screenshot:
        task.screenshot_path = f"./screenshots/{task.id}.png"
    return task


def convert_annotations(
    annotations: Iterable[LegacyAnnotation],
    *,
    now: int,
    reserved_ids: Iterable[str] = (),
    open_keys: Iterable[tuple[str, str]] = (),
    id_factory: Callable[[], str] = new_task_id,
) -> list[Task]:
    """
    Merge legacy records from every format into canonical tasks.

    - stream records each become a task
    - summary/detailed records matching an existing task by comment, title
      or original id do not duplicate it; detailed ones enhance it
    - a legacy id is carried over when it is not already taken (by the store
      or by an earlier record); otherwise a fresh id is generated
    - an open task whose (selector, comment) key is already open in the
      store (open_keys) or earlier in this batch is dropped, so re-running
      over files that were migrated before adds nothing

    Returns tasks newest-first.
    """
    used_ids = set(reserved_ids)
    carried: set[str] = set()
    converted: list[Task] = []

    ordered = sorted(annotations, key=lambda a: _SOURCE_ORDER[a.source])
    for ann in ordered:
        match = None if ann.source is LegacySource.STREAM else _find_match(converted, ann)

        if match is not None:
            if ann.source is LegacySource.DETAILED:
                _enhance(match, ann, used_ids, carried)
            continue

        converted.append(_create(ann, now=now, used_ids=used_ids, carried=carried, id_factory=id_factory))

    # Enhancement can change selector and status, so duplicates are settled last.
    taken = set(open_keys)
    unique: list[Task] = []
    for task in converted:
        if task.is_open:
            key = task.functional_key()
            if key in taken:
                logger.info("Skipping legacy task %s: already open for selector %s", task.id, task.selector)
                continue
            taken.add(key)
        unique.append(task)

    unique.sort(key=lambda t: t.timestamp, reverse=True)
    logger.info("Converted %d legacy records into %d tasks", len(ordered), len(unique))
    return unique
