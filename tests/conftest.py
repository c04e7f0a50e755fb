# tests/conftest.py

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest

from annotask.core.state import AppState
from annotask.migration.migrator import LegacyMigrator
from annotask.tasks.markdown import MarkdownGenerator
from annotask.tasks.task_store import TaskStore

from .fakes import MemoryProjectFiles, RecordingNotifier, SteppingClock

FIXED_LOCAL = datetime(2024, 5, 1, 12, 0, 0)
FIXED_UTC = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with AppState and bootstrap.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="annotask-test",
        log_level="DEBUG",
        log_dir=tmp_path / "logs",
        project_dir=tmp_path / ".moat",
        tasks_file="tasks.json",
        markdown_file="tasks.md",
        comment_max_length=60,
        auto_migrate=True,
        console_enabled=False,
    )


@pytest.fixture()
def files() -> MemoryProjectFiles:
    return MemoryProjectFiles()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def clock() -> SteppingClock:
    return SteppingClock()


@pytest.fixture()
def store(files: MemoryProjectFiles, notifier: RecordingNotifier, clock: SteppingClock) -> TaskStore:
    return TaskStore(files, notifier=notifier, clock=clock)


@pytest.fixture()
def markdown(files: MemoryProjectFiles) -> MarkdownGenerator:
    return MarkdownGenerator(files, clock=lambda: FIXED_LOCAL)


@pytest.fixture()
def migrator(files: MemoryProjectFiles, store: TaskStore, markdown: MarkdownGenerator, clock: SteppingClock) -> LegacyMigrator:
    return LegacyMigrator(files, store, markdown, clock=clock, utc_now=lambda: FIXED_UTC)


@pytest.fixture()
def state(
    settings: SimpleNamespace,
    files: MemoryProjectFiles,
    store: TaskStore,
    markdown: MarkdownGenerator,
    migrator: LegacyMigrator,
) -> AppState:
    """AppState wired over the in-memory project directory."""
    return AppState(settings=settings, files=files, task_store=store, markdown=markdown, migrator=migrator)
