# src/annotask/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- Components never read it globally: bootstrap injects the values they need.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "ANNOTASK"

load_dotenv(override=False)


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str
    log_dir: Path

    # ---- Project directory (root of the file capability) ----
    project_dir: Path
    tasks_file: str
    markdown_file: str

    # ---- Rendering ----
    comment_max_length: int

    # ---- Switches ----
    auto_migrate: bool
    console_enabled: bool

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "annotask").strip() or "annotask"
        log_level = _env(_k("LOG_LEVEL"), "INFO")
        log_dir = _env_path(_k("LOG_DIR"), Path(".local/annotask"))

        project_dir = _env_path(_k("PROJECT_DIR"), Path(".moat"))
        tasks_file = _env(_k("TASKS_FILE"), "tasks.json").strip() or "tasks.json"
        markdown_file = _env(_k("MARKDOWN_FILE"), "tasks.md").strip() or "tasks.md"

        # Anything below the ellipsis width would truncate every comment to "...".
        comment_max_length = max(8, _env_int(_k("COMMENT_MAX_LENGTH"), 60))

        auto_migrate = _env_bool(_k("AUTO_MIGRATE"), True)
        console_enabled = _env_bool(_k("CONSOLE_ENABLED"), True)

        return Settings(
            app_name=app_name,
            log_level=log_level,
            log_dir=log_dir,
            project_dir=project_dir,
            tasks_file=tasks_file,
            markdown_file=markdown_file,
            comment_max_length=comment_max_length,
            auto_migrate=auto_migrate,
            console_enabled=console_enabled,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
