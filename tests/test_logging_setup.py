# tests/test_logging_setup.py

from __future__ import annotations

import logging

import pytest

from annotask.logging_setup import _ConsoleNoiseFilter


def _record(name: str, level: int) -> logging.LogRecord:
    return logging.LogRecord(name, level, __file__, 1, "msg", None, None)


@pytest.mark.parametrize(
    ("name", "level", "shown"),
    [
        ("annotask.tasks.task_store", logging.DEBUG, True),
        ("annotask.storage.project_dir", logging.DEBUG, False),
        ("annotask.storage.project_dir", logging.INFO, True),
        ("annotask.migration.legacy_parsers", logging.INFO, False),
        ("annotask.migration.legacy_parsers", logging.WARNING, True),
        ("py.warnings", logging.WARNING, False),
        ("urllib3", logging.WARNING, False),
        ("urllib3", logging.ERROR, True),
    ],
)
def test_console_filter(name: str, level: int, shown: bool) -> None:
    assert _ConsoleNoiseFilter().filter(_record(name, level)) is shown
