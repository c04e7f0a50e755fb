# src/annotask/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- builds the file capability for the project directory,
- wires TaskStore / MarkdownGenerator / LegacyMigrator into AppState,
- runs the startup sequence (optional migration, then load + render).
"""

from __future__ import annotations

import logging

from ..config import get_settings
from ..core.ports import ChangeNotifier
from ..core.state import AppState
from ..migration.migrator import LegacyMigrator, MigrationResult
from ..storage.project_dir import ProjectDirectory
from ..tasks.markdown import MarkdownGenerator
from ..tasks.task_store import TaskStore

logger = logging.getLogger(__name__)


def create_initial_state(*, settings=None, notifier: ChangeNotifier | None = None) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    files = ProjectDirectory(settings.project_dir)
    task_store = TaskStore(files, file_name=settings.tasks_file, notifier=notifier)
    markdown = MarkdownGenerator(
        files,
        file_name=settings.markdown_file,
        source_name=settings.tasks_file,
        comment_max_length=settings.comment_max_length,
        notifier=notifier,
    )
    migrator = LegacyMigrator(files, task_store, markdown)

    return AppState(
        settings=settings,
        files=files,
        task_store=task_store,
        markdown=markdown,
        migrator=migrator,
    )


async def startup(state: AppState) -> MigrationResult | None:
    """
    Bring the project directory up to date:
    - migrate legacy files when enabled,
    - load tasks.json (CorruptDataError propagates: never overwrite unreadable data),
    - re-render tasks.md from the loaded tasks.
    """
    result: MigrationResult | None = None
    if getattr(state.settings, "auto_migrate", True):
        result = await state.migrator.perform_migration()
        if result.success and result.tasks_converted:
            logger.info(
                "Migration complete: converted %d tasks, archived %d files",
                result.tasks_converted,
                result.files_archived,
            )
        elif not result.success:
            logger.error("Migration failed: %s", "; ".join(result.errors) or "unknown error")

    tasks = await state.task_store.load_from_file()
    await state.markdown.rebuild(state.task_store.get_all_chronological())
    logger.info("Project ready: %s (%d tasks)", state.files, len(tasks))
    return result
