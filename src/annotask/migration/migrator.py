# src/annotask/migration/migrator.py

"""
Legacy file migrator.

One attempt walks:
  detecting -> parsing -> converting -> backing_up -> writing -> validating
  -> cleaning_up -> succeeded

Any failure from backing_up onward triggers rollback_migration(): backups are
copied back over the legacy names and the canonical files are restored to
what they were before the attempt (deleted if they did not exist).

Public entry points never raise: they return a MigrationResult /
RollbackResult. Cancellation is the one exception: the migrator rolls back,
then lets asyncio.CancelledError propagate.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from ..core.ports import ProjectFiles
from ..errors import AnnotaskError, MigrationError
from ..tasks.markdown import MarkdownGenerator
from ..tasks.task_models import Task, missing_required_fields, now_ms
from ..tasks.task_store import TaskStore
from .converter import convert_annotations
from .legacy_parsers import LegacyAnnotation, LegacySource, ParseResult, parse_legacy

logger = logging.getLogger(__name__)

LEGACY_STREAM_NAME = ".moat-stream.jsonl"
LEGACY_SUMMARY_NAME = "moat-tasks-summary.md"
LEGACY_DETAILED_NAMES: tuple[str, ...] = ("moat-tasks.md", "moat-tasks-detailed.md")

MIN_MARKDOWN_SIZE = 50
MIN_VALID_RATIO = 0.9

_LOG_LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


class MigrationPhase(StrEnum):
    IDLE = "idle"
    DETECTING = "detecting"
    PARSING = "parsing"
    CONVERTING = "converting"
    BACKING_UP = "backing_up"
    WRITING = "writing"
    VALIDATING = "validating"
    CLEANING_UP = "cleaning_up"
    SUCCEEDED = "succeeded"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(slots=True, frozen=True)
class LegacyFile:
    name: str
    source: LegacySource


@dataclass(slots=True)
class BackupEntry:
    original: str
    backup: str
    size: int
    handle: ProjectFiles = field(repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {"original": self.original, "backup": self.backup, "size": self.size}


@dataclass(slots=True, frozen=True)
class LogEntry:
    timestamp: str
    level: str
    message: str


@dataclass(slots=True)
class ValidationReport:
    success: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    total_tasks: int = 0
    valid_tasks: int = 0
    missing_ids: list[str] = field(default_factory=list)
    markdown_size: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "stats": {
                "totalTasks": self.total_tasks,
                "validTasks": self.valid_tasks,
                "missingTasks": len(self.missing_ids),
                "markdownSize": self.markdown_size,
            },
        }


@dataclass(slots=True)
class MigrationResult:
    success: bool = False
    tasks_converted: int = 0
    files_archived: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    started_at: str = field(default_factory=_utc_iso)
    finished_at: str | None = None
    legacy_files: list[str] = field(default_factory=list)
    rolled_back: bool = False
    validation: ValidationReport | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "tasksConverted": self.tasks_converted,
            "filesArchived": self.files_archived,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "startTime": self.started_at,
            "endTime": self.finished_at,
            "legacyFiles": list(self.legacy_files),
            "rolledBack": self.rolled_back,
            "validation": self.validation.to_dict() if self.validation else None,
        }


@dataclass(slots=True)
class RollbackResult:
    success: bool
    restored_count: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class MigrationRecord:
    """Per-attempt bookkeeping; kept after the attempt so rollback can run later."""

    log: list[LogEntry] = field(default_factory=list)
    backups: list[BackupEntry] = field(default_factory=list)
    # canonical file name -> content before the attempt (None: did not exist)
    canonical_snapshots: dict[str, str | None] = field(default_factory=dict)
    result: MigrationResult | None = None

    def add(self, level: str, message: str) -> None:
        self.log.append(LogEntry(timestamp=_utc_iso(), level=level, message=message))
        logger.log(_LOG_LEVELS.get(level, logging.INFO), "Migration: %s", message)

    def info(self, message: str) -> None:
        self.add("info", message)

    def warning(self, message: str) -> None:
        self.add("warning", message)

    def error(self, message: str) -> None:
        self.add("error", message)

    def messages(self, level: str) -> list[str]:
        return [e.message for e in self.log if e.level == level]


class LegacyMigrator:
    def __init__(
        self,
        files: ProjectFiles,
        task_store: TaskStore,
        markdown: MarkdownGenerator,
        *,
        clock: Callable[[], int] = now_ms,
        utc_now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._files = files
        self._store = task_store
        self._markdown = markdown
        self._clock = clock
        self._utc_now = utc_now
        self._lock = asyncio.Lock()
        self.phase = MigrationPhase.IDLE
        self.record = MigrationRecord()

    @property
    def canonical_names(self) -> tuple[str, str]:
        return (self._store.file_name, self._markdown.file_name)

    # ---- detecting ----

    async def _exists(self, name: str) -> bool:
        try:
            return await self._files.exists(name)
        except (OSError, ValueError) as exc:
            self.record.warning(f"Could not check {name}: {exc}")
            return False

    async def detect_legacy_files(self) -> list[LegacyFile]:
        found: list[LegacyFile] = []

        if await self._exists(LEGACY_STREAM_NAME):
            found.append(LegacyFile(LEGACY_STREAM_NAME, LegacySource.STREAM))
        if await self._exists(LEGACY_SUMMARY_NAME):
            found.append(LegacyFile(LEGACY_SUMMARY_NAME, LegacySource.SUMMARY))
        for name in LEGACY_DETAILED_NAMES:
            if name in self.canonical_names:
                continue
            if await self._exists(name):
                found.append(LegacyFile(name, LegacySource.DETAILED))
                break

        self.record.info(
            f"Legacy file detection complete. Found {len(found)} legacy files"
            + (f": {', '.join(f.name for f in found)}" if found else "")
        )
        return found

    # ---- parsing / converting ----

    async def parse_legacy_files(self, legacy_files: list[LegacyFile]) -> list[ParseResult]:
        results: list[ParseResult] = []
        for lf in legacy_files:
            try:
                content = await self._files.read_text(lf.name)
            except (OSError, UnicodeDecodeError) as exc:
                # Unreadable input must not be deleted later as if it had been migrated.
                raise MigrationError(f"Could not read {lf.name}: {exc}") from exc

            parsed = parse_legacy(lf.source, content)
            for issue in parsed.issues:
                self.record.warning(f"{lf.name} {issue}")
            self.record.info(f"Parsed {len(parsed.annotations)} records from {lf.name}")
            results.append(parsed)
        return results

    def convert_to_tasks(self, parsed: list[ParseResult]) -> list[Task]:
        """Convert against the loaded store: its ids stay reserved and its open tasks are not duplicated."""
        annotations: list[LegacyAnnotation] = [a for r in parsed for a in r.annotations]
        existing = self._store.get_all()
        tasks = convert_annotations(
            annotations,
            now=self._clock(),
            reserved_ids={t.id for t in existing},
            open_keys={t.functional_key() for t in existing if t.is_open},
        )
        self.record.info(f"Converted {len(tasks)} tasks to the current schema")
        return tasks

    # ---- backing up ----

    def _backup_stamp(self) -> str:
        return self._utc_now().strftime("%Y-%m-%dT%H-%M-%S")

    async def _free_backup_name(self, original: str, stamp: str) -> str:
        candidate = f"{original}.backup-{stamp}"
        n = 1
        while await self._files.exists(candidate):
            candidate = f"{original}.backup-{stamp}-{n}"
            n += 1
        return candidate

    async def archive_legacy_files(self, legacy_files: list[LegacyFile]) -> list[BackupEntry]:
        """Copy every legacy file to `<name>.backup-<timestamp>`; failures are logged and skipped."""
        stamp = self._backup_stamp()
        backups: list[BackupEntry] = []

        for lf in legacy_files:
            try:
                content = await self._files.read_text(lf.name)
                backup_name = await self._free_backup_name(lf.name, stamp)
                await self._files.write_text(backup_name, content)
            except (OSError, UnicodeDecodeError) as exc:
                self.record.warning(f"Error archiving {lf.name}: {exc}")
                continue

            entry = BackupEntry(original=lf.name, backup=backup_name, size=len(content), handle=self._files)
            backups.append(entry)
            self.record.backups.append(entry)
            self.record.info(f"Archived {lf.name} -> {backup_name}")

        self.record.info(f"Archived {len(backups)} of {len(legacy_files)} legacy files")
        return backups

    # ---- writing ----

    async def _snapshot_canonical(self) -> None:
        for name in self.canonical_names:
            try:
                self.record.canonical_snapshots[name] = await self._files.read_text(name)
            except FileNotFoundError:
                self.record.canonical_snapshots[name] = None
            except (OSError, UnicodeDecodeError) as exc:
                raise MigrationError(f"Could not snapshot {name} before writing: {exc}") from exc

    async def write_new_format_files(self, tasks: list[Task]) -> None:
        await self._snapshot_canonical()
        try:
            for task in sorted(tasks, key=lambda t: t.timestamp):
                self._store.put_task(task)
            await self._store.save_to_file()
            await self._markdown.rebuild(self._store.get_all_chronological())
        except AnnotaskError as exc:
            raise MigrationError(f"Failed to write new format files: {exc}") from exc
        self.record.info(f"Saved {len(tasks)} tasks to {self._store.file_name} and {self._markdown.file_name}")

    # ---- validating ----

    async def validate_migration(self, converted: list[Task], *, expected_count: int) -> ValidationReport:
        report = ValidationReport(success=False)
        json_name, md_name = self.canonical_names

        try:
            parsed = json.loads(await self._files.read_text(json_name))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            report.errors.append(f"Validation error: cannot read {json_name}: {exc}")
            return report

        if not isinstance(parsed, list):
            report.errors.append(f"{json_name} does not contain a valid task array")
            return report

        report.total_tasks = len(parsed)
        if len(parsed) != expected_count:
            report.errors.append(f"Task count mismatch: expected {expected_count}, got {len(parsed)}")

        written_ids: set[str] = set()
        for entry in parsed:
            if not isinstance(entry, dict):
                report.warnings.append("Non-object entry in task array")
                continue
            written_ids.add(str(entry.get("id")))
            missing = missing_required_fields(entry)
            if missing:
                report.warnings.append(f"Task {entry.get('id') or 'unknown'} missing fields: {', '.join(missing)}")
            else:
                report.valid_tasks += 1

        if report.total_tasks and report.valid_tasks < report.total_tasks * MIN_VALID_RATIO:
            report.errors.append(
                f"Too many invalid tasks: only {report.valid_tasks}/{report.total_tasks} are valid"
            )

        report.missing_ids = [t.id for t in converted if t.id not in written_ids]
        if report.missing_ids:
            report.errors.append(f"Missing tasks after migration: {', '.join(report.missing_ids)}")

        try:
            markdown = await self._files.read_text(md_name)
        except (OSError, UnicodeDecodeError) as exc:
            report.errors.append(f"Validation error: cannot read {md_name}: {exc}")
            return report

        report.markdown_size = len(markdown)
        if report.markdown_size < MIN_MARKDOWN_SIZE:
            report.errors.append(f"{md_name} is unusually short ({report.markdown_size} chars)")

        report.success = not report.errors
        return report

    # ---- cleaning up ----

    async def cleanup_legacy_files(self, legacy_files: list[LegacyFile]) -> None:
        backed_up = {b.original for b in self.record.backups}
        for lf in legacy_files:
            if lf.name not in backed_up:
                self.record.warning(f"Keeping {lf.name}: no backup was created for it")
                continue
            try:
                await self._files.delete(lf.name)
                self.record.info(f"Removed original file: {lf.name}")
            except OSError as exc:
                self.record.warning(f"Could not remove {lf.name}: {exc}")

    # ---- rollback ----

    async def rollback_migration(self) -> RollbackResult:
        """
        Undo the last attempt: restore legacy files from their backups, then put
        the canonical files back the way they were. Never raises.
        """
        self.phase = MigrationPhase.ROLLING_BACK
        result = RollbackResult(success=True)

        for entry in list(self.record.backups):
            try:
                content = await entry.handle.read_text(entry.backup)
                await entry.handle.write_text(entry.original, content)
                await entry.handle.delete(entry.backup)
            except (OSError, UnicodeDecodeError) as exc:
                msg = f"Error restoring {entry.original}: {exc}"
                result.errors.append(msg)
                self.record.error(msg)
                continue
            self.record.backups.remove(entry)
            result.restored_count += 1
            self.record.info(f"Restored {entry.original} from backup")

        for name, snapshot in list(self.record.canonical_snapshots.items()):
            try:
                if snapshot is None:
                    await self._files.delete(name)
                else:
                    await self._files.write_text(name, snapshot)
            except OSError as exc:
                msg = f"Error restoring {name}: {exc}"
                result.errors.append(msg)
                self.record.error(msg)
                continue
            del self.record.canonical_snapshots[name]

        try:
            await self._store.load_from_file()
        except AnnotaskError as exc:
            self._store.clear()
            self.record.warning(f"Task store reload after rollback failed: {exc}")

        result.success = not result.errors
        self.phase = MigrationPhase.ROLLED_BACK if result.success else MigrationPhase.FAILED
        self.record.info(f"Rollback completed. Restored {result.restored_count} files")
        return result

    # ---- full run ----

    async def perform_migration(self) -> MigrationResult:
        async with self._lock:
            return await self._perform()

    async def _perform(self) -> MigrationResult:
        self.record = MigrationRecord()
        result = MigrationResult()
        self.record.result = result
        destructive = False

        try:
            self.phase = MigrationPhase.DETECTING
            legacy_files = await self.detect_legacy_files()
            result.legacy_files = [lf.name for lf in legacy_files]
            if not legacy_files:
                self.record.info("No legacy files found. Migration not needed.")
                self.phase = MigrationPhase.SUCCEEDED
                result.success = True
                return result

            self.phase = MigrationPhase.PARSING
            parsed = await self.parse_legacy_files(legacy_files)

            self.phase = MigrationPhase.CONVERTING
            try:
                await self._store.load_from_file()
            except AnnotaskError as exc:
                raise MigrationError(f"Cannot load existing tasks: {exc}") from exc
            if not any(r.annotations for r in parsed):
                raise MigrationError("No valid task data found in legacy files")
            existing_count = self._store.count()
            tasks = self.convert_to_tasks(parsed)
            if not tasks:
                # Everything is already in the store (e.g. a re-run after a failed cleanup):
                # still archive and remove the leftovers.
                self.record.info("All legacy tasks are already present in the task store")
            result.tasks_converted = len(tasks)

            self.phase = MigrationPhase.BACKING_UP
            destructive = True
            backups = await self.archive_legacy_files(legacy_files)
            result.files_archived = len(backups)

            self.phase = MigrationPhase.WRITING
            await self.write_new_format_files(tasks)

            self.phase = MigrationPhase.VALIDATING
            report = await self.validate_migration(tasks, expected_count=existing_count + len(tasks))
            result.validation = report
            if not report.success:
                raise MigrationError(f"Migration validation failed: {'; '.join(report.errors)}")

            self.phase = MigrationPhase.CLEANING_UP
            await self.cleanup_legacy_files(legacy_files)

            self.phase = MigrationPhase.SUCCEEDED
            result.success = True
            self.record.info(
                f"Migration completed successfully! Converted {len(tasks)} tasks, archived {len(backups)} files"
            )

        except asyncio.CancelledError:
            self.record.error("Migration cancelled")
            if destructive:
                await self._auto_rollback(result)
            raise

        except Exception as exc:
            if not isinstance(exc, MigrationError):
                logger.exception("Unexpected error during migration")
            result.errors.append(str(exc))
            self.record.error(f"Migration failed: {exc}")
            if destructive:
                await self._auto_rollback(result)
            else:
                self.phase = MigrationPhase.FAILED

        finally:
            result.finished_at = _utc_iso()
            result.warnings = self.record.messages("warning")

        return result

    async def _auto_rollback(self, result: MigrationResult) -> None:
        try:
            rollback = await self.rollback_migration()
        except Exception as exc:
            logger.exception("Rollback crashed")
            result.errors.append(f"Rollback failed: {exc}")
            self.phase = MigrationPhase.FAILED
            return
        result.rolled_back = rollback.success
        result.errors.extend(f"Rollback failed: {e}" for e in rollback.errors)
        if rollback.success:
            self.record.info("Rollback completed after migration failure")

    # ---- status helpers ----

    async def get_migration_status(self) -> dict[str, Any]:
        legacy = await self.detect_legacy_files()
        json_name, md_name = self.canonical_names
        has_new_format = await self._exists(json_name) and await self._exists(md_name)
        return {
            "hasLegacyFiles": bool(legacy),
            "hasNewFormat": has_new_format,
            "legacyFileCount": len(legacy),
            "legacyFiles": [lf.name for lf in legacy],
            "needsMigration": bool(legacy),
        }

    async def migration_needed(self) -> bool:
        return bool(await self.detect_legacy_files())

    def get_migration_report(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "log": [{"timestamp": e.timestamp, "level": e.level, "message": e.message} for e in self.record.log],
            "backupFiles": [b.to_dict() for b in self.record.backups],
            "result": self.record.result.to_dict() if self.record.result else None,
            "timestamp": _utc_iso(),
        }
