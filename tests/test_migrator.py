# tests/test_migrator.py

from __future__ import annotations

import asyncio
import json

import pytest

from annotask.migration.migrator import (
    LEGACY_STREAM_NAME,
    LEGACY_SUMMARY_NAME,
    LegacyMigrator,
    MigrationPhase,
)
from annotask.tasks.markdown import MarkdownGenerator
from annotask.tasks.task_models import TaskStatus
from annotask.tasks.task_store import TaskStore

from .conftest import FIXED_UTC
from .fakes import MemoryProjectFiles

STAMP = "2024-05-01T12-00-00"

STREAM = (
    json.dumps({"annotation": {"id": "a1", "content": "make this blue", "target": "#btn",
                               "elementLabel": "Btn", "timestamp": 1000}})
    + "\n"
    + json.dumps({"type": "user_message", "id": "a2", "content": "bigger font", "target": "h1",
                  "timestamp": 2000, "status": "completed"})
    + "\n"
)

SUMMARY = '# Tasks\n\n1. [ ] Nav – "hide the nav"\n'

EXISTING = (
    json.dumps(
        [{"id": "old", "title": "Old", "comment": "already here", "selector": "#old",
          "status": "doing", "timestamp": 500}],
        indent=2,
    )
    + "\n"
)


def _tasks_json(files: MemoryProjectFiles) -> list[dict]:
    return json.loads(files.files["tasks.json"])


@pytest.mark.asyncio
async def test_migrates_stream_file(files: MemoryProjectFiles, migrator: LegacyMigrator, store: TaskStore) -> None:
    files.files[LEGACY_STREAM_NAME] = STREAM

    result = await migrator.perform_migration()

    assert result.success is True
    assert result.tasks_converted == 2
    assert result.files_archived == 1
    assert result.errors == []
    assert migrator.phase is MigrationPhase.SUCCEEDED

    data = _tasks_json(files)
    assert len(data) == 2
    assert [t["id"] for t in data] == ["a1", "a2"]
    assert data[1]["status"] == "done"

    assert LEGACY_STREAM_NAME not in files.files
    assert files.files[f"{LEGACY_STREAM_NAME}.backup-{STAMP}"] == STREAM
    assert '1. [ ] Btn – "make this blue"' in files.files["tasks.md"]
    assert store.count() == 2

    body = result.to_dict()
    assert body["tasksConverted"] == 2
    assert body["filesArchived"] == 1
    assert body["validation"]["success"] is True


@pytest.mark.asyncio
async def test_existing_tasks_are_conserved(files: MemoryProjectFiles, migrator: LegacyMigrator) -> None:
    files.files["tasks.json"] = EXISTING
    files.files[LEGACY_STREAM_NAME] = STREAM
    files.files[LEGACY_SUMMARY_NAME] = SUMMARY

    result = await migrator.perform_migration()

    assert result.success is True
    assert result.tasks_converted == 3
    assert result.files_archived == 2
    ids = {t["id"] for t in _tasks_json(files)}
    assert len(ids) == 4
    assert {"old", "a1", "a2"} <= ids
    assert LEGACY_SUMMARY_NAME not in files.files


@pytest.mark.asyncio
async def test_legacy_id_colliding_with_store_gets_fresh_id(
    files: MemoryProjectFiles, migrator: LegacyMigrator
) -> None:
    files.files["tasks.json"] = EXISTING
    files.files[LEGACY_STREAM_NAME] = json.dumps({"id": "old", "content": "new text", "target": "#new"}) + "\n"

    result = await migrator.perform_migration()

    assert result.success is True
    data = _tasks_json(files)
    assert len(data) == 2
    migrated = next(t for t in data if t["comment"] == "new text")
    assert migrated["id"] != "old"
    assert migrated["migrationData"]["originalId"] == "old"


@pytest.mark.asyncio
async def test_failure_after_backup_rolls_back_byte_exact(
    files: MemoryProjectFiles, migrator: LegacyMigrator, store: TaskStore
) -> None:
    files.files["tasks.json"] = EXISTING
    files.files[LEGACY_STREAM_NAME] = STREAM
    files.fail_writes.add("tasks.md")
    before = dict(files.files)

    result = await migrator.perform_migration()

    assert result.success is False
    assert result.rolled_back is True
    assert any("Failed to write new format files" in e for e in result.errors)
    assert migrator.phase is MigrationPhase.ROLLED_BACK
    assert files.files == before
    assert [t.id for t in store.get_all()] == ["old"]


@pytest.mark.asyncio
async def test_rollback_removes_canonical_files_that_did_not_exist(
    files: MemoryProjectFiles, migrator: LegacyMigrator
) -> None:
    files.files[LEGACY_STREAM_NAME] = STREAM
    files.fail_writes.add("tasks.md")

    result = await migrator.perform_migration()

    assert result.rolled_back is True
    assert set(files.files) == {LEGACY_STREAM_NAME}
    assert files.files[LEGACY_STREAM_NAME] == STREAM


@pytest.mark.asyncio
async def test_no_legacy_files_is_a_no_op(files: MemoryProjectFiles, migrator: LegacyMigrator) -> None:
    files.files["tasks.json"] = EXISTING

    result = await migrator.perform_migration()

    assert result.success is True
    assert result.tasks_converted == 0
    assert result.legacy_files == []
    assert files.writes == []
    assert await migrator.migration_needed() is False


@pytest.mark.asyncio
async def test_partial_backup_failure_keeps_unbacked_file(
    files: MemoryProjectFiles, migrator: LegacyMigrator
) -> None:
    files.files[LEGACY_STREAM_NAME] = STREAM
    files.files[LEGACY_SUMMARY_NAME] = SUMMARY
    files.fail_writes.add(f"{LEGACY_SUMMARY_NAME}.backup-{STAMP}")

    result = await migrator.perform_migration()

    assert result.success is True
    assert result.files_archived == 1
    assert LEGACY_STREAM_NAME not in files.files
    assert files.files[LEGACY_SUMMARY_NAME] == SUMMARY
    assert any(f"Error archiving {LEGACY_SUMMARY_NAME}" in w for w in result.warnings)
    assert any(f"Keeping {LEGACY_SUMMARY_NAME}" in w for w in result.warnings)


@pytest.mark.asyncio
async def test_backup_name_collision_gets_suffix(files: MemoryProjectFiles, migrator: LegacyMigrator) -> None:
    files.files[LEGACY_STREAM_NAME] = STREAM
    files.files[f"{LEGACY_STREAM_NAME}.backup-{STAMP}"] = "older backup"

    result = await migrator.perform_migration()

    assert result.success is True
    assert files.files[f"{LEGACY_STREAM_NAME}.backup-{STAMP}"] == "older backup"
    assert files.files[f"{LEGACY_STREAM_NAME}.backup-{STAMP}-1"] == STREAM


@pytest.mark.asyncio
async def test_nothing_convertible_fails_without_touching_files(
    files: MemoryProjectFiles, migrator: LegacyMigrator
) -> None:
    files.files[LEGACY_STREAM_NAME] = "{broken\n"

    result = await migrator.perform_migration()

    assert result.success is False
    assert result.rolled_back is False
    assert "No valid task data found in legacy files" in result.errors
    assert any("invalid JSON" in w for w in result.warnings)
    assert migrator.phase is MigrationPhase.FAILED
    assert set(files.files) == {LEGACY_STREAM_NAME}


@pytest.mark.asyncio
async def test_unreadable_legacy_file_aborts_before_backup(
    files: MemoryProjectFiles, migrator: LegacyMigrator
) -> None:
    files.files[LEGACY_STREAM_NAME] = STREAM
    files.fail_reads.add(LEGACY_STREAM_NAME)

    result = await migrator.perform_migration()

    assert result.success is False
    assert any("Could not read" in e for e in result.errors)
    assert set(files.files) == {LEGACY_STREAM_NAME}


@pytest.mark.asyncio
async def test_corrupt_store_aborts_migration(files: MemoryProjectFiles, migrator: LegacyMigrator) -> None:
    files.files["tasks.json"] = "{not json"
    files.files[LEGACY_STREAM_NAME] = STREAM

    result = await migrator.perform_migration()

    assert result.success is False
    assert any("Cannot load existing tasks" in e for e in result.errors)
    assert files.files["tasks.json"] == "{not json"
    assert files.files[LEGACY_STREAM_NAME] == STREAM


@pytest.mark.asyncio
async def test_repeated_stream_line_becomes_one_task(files: MemoryProjectFiles, migrator: LegacyMigrator) -> None:
    line = STREAM.splitlines(keepends=True)[0]
    files.files[LEGACY_STREAM_NAME] = line + line

    result = await migrator.perform_migration()

    assert result.success is True
    assert result.tasks_converted == 1
    assert [t["id"] for t in _tasks_json(files)] == ["a1"]


@pytest.mark.asyncio
async def test_rerun_after_failed_cleanup_imports_nothing_twice(
    files: MemoryProjectFiles, migrator: LegacyMigrator
) -> None:
    files.files[LEGACY_STREAM_NAME] = STREAM
    files.files[LEGACY_SUMMARY_NAME] = SUMMARY
    files.fail_deletes.add(LEGACY_SUMMARY_NAME)

    first = await migrator.perform_migration()

    assert first.success is True
    assert first.tasks_converted == 3
    assert any(f"Could not remove {LEGACY_SUMMARY_NAME}" in w for w in first.warnings)
    assert files.files[LEGACY_SUMMARY_NAME] == SUMMARY

    files.fail_deletes.clear()
    second = await migrator.perform_migration()

    assert second.success is True
    assert second.tasks_converted == 0
    assert len(_tasks_json(files)) == 3
    assert LEGACY_SUMMARY_NAME not in files.files
    assert files.files[f"{LEGACY_SUMMARY_NAME}.backup-{STAMP}-1"] == SUMMARY
    assert second.validation is not None and second.validation.success is True


class _TruncatingFiles(MemoryProjectFiles):
    """Empties tasks.json as soon as the markdown lands, so validation sees a short array."""

    async def write_text(self, name: str, text: str) -> None:
        await super().write_text(name, text)
        if name == "tasks.md":
            self.files["tasks.json"] = "[]\n"


@pytest.mark.asyncio
async def test_validation_failure_rolls_back_byte_exact() -> None:
    files = _TruncatingFiles({"tasks.json": EXISTING, LEGACY_STREAM_NAME: STREAM})
    before = dict(files.files)
    store = TaskStore(files)
    migrator = LegacyMigrator(files, store, MarkdownGenerator(files), utc_now=lambda: FIXED_UTC)

    result = await migrator.perform_migration()

    assert result.success is False
    assert result.rolled_back is True
    assert any("Migration validation failed" in e for e in result.errors)
    assert result.validation is not None and result.validation.success is False
    assert migrator.phase is MigrationPhase.ROLLED_BACK
    assert files.files == before


class _CancellingFiles(MemoryProjectFiles):
    async def write_text(self, name: str, text: str) -> None:
        if name == "tasks.md":
            raise asyncio.CancelledError()
        await super().write_text(name, text)


@pytest.mark.asyncio
async def test_cancellation_rolls_back_then_propagates() -> None:
    files = _CancellingFiles({LEGACY_STREAM_NAME: STREAM})
    store = TaskStore(files)
    migrator = LegacyMigrator(files, store, MarkdownGenerator(files), utc_now=lambda: FIXED_UTC)

    with pytest.raises(asyncio.CancelledError):
        await migrator.perform_migration()

    assert set(files.files) == {LEGACY_STREAM_NAME}
    assert migrator.record.result is not None
    assert migrator.record.result.rolled_back is True


@pytest.mark.asyncio
async def test_manual_rollback_after_success(files: MemoryProjectFiles, migrator: LegacyMigrator) -> None:
    files.files[LEGACY_STREAM_NAME] = STREAM
    assert (await migrator.perform_migration()).success

    rollback = await migrator.rollback_migration()

    assert rollback.success is True
    assert rollback.restored_count == 1
    assert set(files.files) == {LEGACY_STREAM_NAME}


@pytest.mark.asyncio
async def test_detailed_name_equal_to_canonical_markdown_is_not_legacy(files: MemoryProjectFiles) -> None:
    store = TaskStore(files)
    markdown = MarkdownGenerator(files, file_name="moat-tasks.md")
    migrator = LegacyMigrator(files, store, markdown)
    files.files["moat-tasks.md"] = "# Annotation Tasks\n"
    files.files["moat-tasks-detailed.md"] = "## Task 1: Btn\n\n### Request\nbigger\n"

    found = await migrator.detect_legacy_files()

    assert [f.name for f in found] == ["moat-tasks-detailed.md"]


@pytest.mark.asyncio
async def test_status_and_report(files: MemoryProjectFiles, migrator: LegacyMigrator) -> None:
    files.files[LEGACY_SUMMARY_NAME] = SUMMARY

    status = await migrator.get_migration_status()
    assert status == {
        "hasLegacyFiles": True,
        "hasNewFormat": False,
        "legacyFileCount": 1,
        "legacyFiles": [LEGACY_SUMMARY_NAME],
        "needsMigration": True,
    }

    await migrator.perform_migration()
    report = migrator.get_migration_report()

    assert report["phase"] == "succeeded"
    assert report["result"]["tasksConverted"] == 1
    assert report["backupFiles"][0]["original"] == LEGACY_SUMMARY_NAME
    assert any("Migration completed successfully" in e["message"] for e in report["log"])


@pytest.mark.asyncio
async def test_validate_migration_flags_short_markdown_and_missing_tasks(
    files: MemoryProjectFiles, migrator: LegacyMigrator, store: TaskStore
) -> None:
    files.files["tasks.json"] = EXISTING
    files.files["tasks.md"] = "# short\n"
    await store.load_from_file()

    report = await migrator.validate_migration(store.get_all(), expected_count=2)

    assert report.success is False
    assert report.total_tasks == 1
    assert report.valid_tasks == 1
    assert any("count mismatch" in e for e in report.errors)
    assert any("unusually short" in e for e in report.errors)


@pytest.mark.asyncio
async def test_migrated_status_alias_is_canonical(files: MemoryProjectFiles, migrator: LegacyMigrator, store: TaskStore) -> None:
    files.files[LEGACY_STREAM_NAME] = json.dumps({"content": "c", "target": "#t", "status": "in-progress"}) + "\n"

    await migrator.perform_migration()

    (task,) = store.get_all()
    assert task.status is TaskStatus.DOING
    assert _tasks_json(files)[0]["status"] == "doing"
