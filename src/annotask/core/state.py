# src/annotask/core/state.py

from __future__ import annotations

from dataclasses import dataclass

from ..migration.migrator import LegacyMigrator
from ..tasks.markdown import MarkdownGenerator
from ..tasks.task_store import TaskStore
from .ports import ProjectFiles


@dataclass
class AppState:
    """Everything one project session needs; built once by cli.bootstrap."""

    settings: object

    files: ProjectFiles
    task_store: TaskStore
    markdown: MarkdownGenerator
    migrator: LegacyMigrator

    def is_ready(self) -> bool:
        return self.task_store.is_ready() and self.markdown.is_ready()
