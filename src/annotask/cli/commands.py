# src/annotask/cli/commands.py

from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from ..core.state import AppState
from ..errors import AnnotaskError
from ..tasks import task_api
from ..tasks.task_models import Task

CommandEmitter = Callable[[str], None]
CommandHandler = Callable[[AppState, list[str], CommandEmitter | None], Awaitable[str]]

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Slash-command registry used by the console connector (/help, /list, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    async def handle(
        self,
        state: AppState,
        line: str,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            return await handler(state, args, emit)
        except AnnotaskError as exc:
            logger.info("Command /%s failed: %s", name, exc)
            return f"Error: {exc}"

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


def _ts_local(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _format_task(task: Task) -> str:
    return f"{task.id[:8]}  [{task.status.value}]  {task.title} - {task.comment}  ({_ts_local(task.timestamp)})"


def resolve_task(state: AppState, prefix: str) -> Task | str:
    """Find a task by full id or unique id prefix; returns an error message otherwise."""
    exact = state.task_store.get_task(prefix)
    if exact is not None:
        return exact
    matches = [t for t in state.task_store.get_all() if t.id.startswith(prefix)]
    if not matches:
        return f"No task matches id {prefix!r}."
    if len(matches) > 1:
        return f"Id prefix {prefix!r} is ambiguous ({len(matches)} tasks)."
    return matches[0]


async def cmd_help(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    return registry.build_help()


async def cmd_list(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /list         -> every task, newest first
    /list doing   -> only tasks with the given status
    """
    tasks = state.task_store.get_all()
    if args:
        wanted = args[0].lower()
        tasks = [t for t in tasks if t.status.value == wanted]
    if not tasks:
        return "No tasks."
    return "\n".join(_format_task(t) for t in tasks)


async def cmd_stats(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    stats = state.task_store.get_stats()
    return (
        "Tasks:\n"
        f"  Total: {stats['total']}\n"
        f"  To Do: {stats['to-do']}\n"
        f"  Doing: {stats['doing']}\n"
        f"  Done:  {stats['done']}"
    )


async def cmd_add(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """/add <selector> <title> | <comment>"""
    usage = "Usage: /add <selector> <title> | <comment>"
    if len(args) < 2:
        return usage
    selector, rest = args[0], " ".join(args[1:])
    title, sep, comment = rest.partition("|")
    if not sep or not title.strip() or not comment.strip():
        return usage

    result = await task_api.capture_annotation(
        state,
        {"elementLabel": title.strip(), "content": comment.strip(), "target": selector},
    )
    return f"Saved task {result.task.id[:8]} ({result.duration * 1000:.1f}ms)."


async def cmd_status(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """/status <id-prefix> <to-do|doing|done>"""
    if len(args) != 2:
        return "Usage: /status <id> <to-do|doing|done>"
    found = resolve_task(state, args[0])
    if isinstance(found, str):
        return found
    task = await task_api.set_task_status(state, found.id, args[1])
    return f"Task {found.id[:8]} is now {task.status.value}." if task else f"Task {found.id[:8]} disappeared."


async def cmd_done(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if len(args) != 1:
        return "Usage: /done <id>"
    return await cmd_status(state, [args[0], "done"], emit)


async def cmd_rm(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if len(args) != 1:
        return "Usage: /rm <id>"
    found = resolve_task(state, args[0])
    if isinstance(found, str):
        return found
    removed = await task_api.remove_task(state, found.id)
    return f"Removed task {found.id[:8]}." if removed else f"Task {found.id[:8]} was already gone."


async def cmd_start(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    started = await task_api.start_to_do_tasks(state)
    if not started:
        return "No to-do tasks."
    return f"Marked {len(started)} tasks as doing."


async def cmd_reload(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    tasks = await task_api.refresh_from_disk(state)
    return f"Reloaded {len(tasks)} tasks and rebuilt {state.markdown.file_name}."


async def cmd_backup(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    name = await state.task_store.create_backup()
    return f"Backup written: {name}" if name else "Backup failed (see log)."


async def cmd_migrate(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /migrate         -> run migration of legacy files
    /migrate status  -> show what would be migrated
    /migrate report  -> dump the log of the last attempt
    """
    sub = args[0].lower() if args else "run"

    if sub == "status":
        status = await state.migrator.get_migration_status()
        files = ", ".join(status["legacyFiles"]) or "none"
        return (
            "Migration status:\n"
            f"  Legacy files: {files}\n"
            f"  New format present: {'yes' if status['hasNewFormat'] else 'no'}\n"
            f"  Needs migration: {'yes' if status['needsMigration'] else 'no'}"
        )

    if sub == "report":
        return json.dumps(state.migrator.get_migration_report(), indent=2, ensure_ascii=False)

    if sub != "run":
        return "Usage: /migrate | /migrate status | /migrate report"

    if emit:
        with contextlib.suppress(Exception):
            emit("[MIGRATION] Running...")

    result = await state.migrator.perform_migration()
    if not result.success:
        lines = ["Migration failed" + (" (rolled back)." if result.rolled_back else ".")]
        lines += [f"  - {e}" for e in result.errors]
        return "\n".join(lines)
    if not result.legacy_files:
        return "No legacy files found. Migration not needed."
    lines = [f"Migrated {result.tasks_converted} tasks, archived {result.files_archived} files."]
    lines += [f"  warning: {w}" for w in result.warnings]
    return "\n".join(lines)


async def cmd_rollback(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    result = await state.migrator.rollback_migration()
    if result.success:
        return f"Rollback complete. Restored {result.restored_count} files."
    return "Rollback finished with errors:\n" + "\n".join(f"  - {e}" for e in result.errors)


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("list", cmd_list, help_text="List tasks: /list [to-do|doing|done].", aliases=["ls"])
registry.register("stats", cmd_stats, help_text="Show task counts per status.")
registry.register("add", cmd_add, help_text="Add a task: /add <selector> <title> | <comment>.")
registry.register("status", cmd_status, help_text="Set status: /status <id> <to-do|doing|done>.")
registry.register("done", cmd_done, help_text="Mark a task done: /done <id>.")
registry.register("rm", cmd_rm, help_text="Remove a task: /rm <id>.")
registry.register("start", cmd_start, help_text="Move every to-do task to doing.")
registry.register("reload", cmd_reload, help_text="Re-read tasks.json and rebuild tasks.md.", aliases=["rebuild"])
registry.register("backup", cmd_backup, help_text="Write a timestamped copy of tasks.json.")
registry.register("migrate", cmd_migrate, help_text="Legacy migration: /migrate [status|report].")
registry.register("rollback", cmd_rollback, help_text="Undo the last migration attempt.")
