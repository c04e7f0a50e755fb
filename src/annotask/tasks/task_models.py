# src/annotask/tasks/task_models.py

from __future__ import annotations

import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from ..errors import ValidationError

REQUIRED_FIELDS: tuple[str, ...] = ("id", "title", "comment", "selector", "status", "timestamp")

# Keys owned by Task itself; anything else found in stored JSON is kept in Task.extra.
_KNOWN_KEYS = frozenset(
    {
        "id",
        "title",
        "comment",
        "selector",
        "boundingRect",
        "screenshotPath",
        "status",
        "timestamp",
        "lastModified",
    }
)


class TaskStatus(StrEnum):
    """
    Task lifecycle status.

    Older layers of the capture pipeline used other words for the same three
    states; from_legacy() maps them (see _LEGACY_ALIASES). There is no fourth
    state: "failed" and friends are not representable.
    """

    TO_DO = "to-do"
    DOING = "doing"
    DONE = "done"

    @classmethod
    def parse(cls, raw: Any) -> TaskStatus:
        """Strict: only the three canonical values (or members) are accepted."""
        if isinstance(raw, TaskStatus):
            return raw
        try:
            return cls(str(raw))
        except ValueError:
            allowed = ", ".join(s.value for s in cls)
            raise ValidationError(f"Invalid task status: {raw!r}. Must be one of: {allowed}") from None

    @classmethod
    def from_legacy(cls, raw: Any, default: TaskStatus | None = None) -> TaskStatus | None:
        if isinstance(raw, TaskStatus):
            return raw
        if raw is None:
            return default
        key = " ".join(str(raw).strip().lower().split())
        return _LEGACY_ALIASES.get(key, default)


_LEGACY_ALIASES: dict[str, TaskStatus] = {
    # to-do
    "to-do": TaskStatus.TO_DO,
    "to do": TaskStatus.TO_DO,
    "todo": TaskStatus.TO_DO,
    "pending": TaskStatus.TO_DO,
    "in queue": TaskStatus.TO_DO,
    "queued": TaskStatus.TO_DO,
    "open": TaskStatus.TO_DO,
    # doing
    "doing": TaskStatus.DOING,
    "in-progress": TaskStatus.DOING,
    "in_progress": TaskStatus.DOING,
    "in progress": TaskStatus.DOING,
    "sent": TaskStatus.DOING,
    "started": TaskStatus.DOING,
    # done
    "done": TaskStatus.DONE,
    "completed": TaskStatus.DONE,
    "complete": TaskStatus.DONE,
    "resolved": TaskStatus.DONE,
    "closed": TaskStatus.DONE,
}


class Readiness(StrEnum):
    READY = "ready"
    NOT_READY = "not_ready"


def now_ms() -> int:
    return int(time.time() * 1000)


def new_task_id() -> str:
    return str(uuid.uuid4())


def to_epoch_ms(raw: Any) -> int | None:
    """Accept epoch milliseconds (int/float/digit string) or an ISO-8601 string."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return int(raw)
    s = str(raw).strip()
    if not s:
        return None
    if s.lstrip("-").isdigit():
        return int(s)
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _num(raw: Any) -> float:
    # Keep ints as ints so a load/save round-trip does not rewrite "10" as "10.0".
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return raw
    try:
        return float(raw)
    except (TypeError, ValueError):
        return 0


@dataclass(slots=True)
class BoundingRect:
    x: float = 0
    y: float = 0
    w: float = 0
    h: float = 0

    @classmethod
    def from_any(cls, raw: Any) -> BoundingRect:
        """Accept {x, y, w, h} or the capture layer's {x, y, width, height}."""
        if isinstance(raw, BoundingRect):
            return raw
        if not isinstance(raw, Mapping):
            return cls()
        return cls(
            x=_num(raw.get("x", 0)),
            y=_num(raw.get("y", 0)),
            w=_num(raw.get("w", raw.get("width", 0))),
            h=_num(raw.get("h", raw.get("height", 0))),
        )

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}


@dataclass(slots=True)
class Task:
    id: str
    title: str
    comment: str
    selector: str
    status: TaskStatus
    timestamp: int

    bounding_rect: BoundingRect = field(default_factory=BoundingRect)
    screenshot_path: str = ""
    last_modified: int | None = None

    # Unknown keys from stored JSON (processedBy, codeChanges, source, ...).
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.status is not TaskStatus.DONE

    def functional_key(self) -> tuple[str, str]:
        """(selector, trimmed comment): at most one open task may hold a given key."""
        return (self.selector, self.comment.strip())

    def validate(self) -> None:
        for name in ("id", "title", "comment", "selector"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"Task missing required field: {name}")
        if not isinstance(self.status, TaskStatus):
            raise ValidationError(f"Invalid task status: {self.status!r}")
        if not isinstance(self.timestamp, int) or isinstance(self.timestamp, bool):
            raise ValidationError(f"Task {self.id} has invalid timestamp: {self.timestamp!r}")

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "comment": self.comment,
            "selector": self.selector,
            "boundingRect": self.bounding_rect.to_dict(),
            "screenshotPath": self.screenshot_path,
            "status": self.status.value,
            "timestamp": self.timestamp,
        }
        if self.last_modified is not None:
            out["lastModified"] = self.last_modified
        for key, value in self.extra.items():
            out.setdefault(key, value)
        return out

    @classmethod
    def from_dict(cls, raw: Any) -> Task:
        """
        Build a Task from its stored JSON shape.

        Status aliases from older writers are normalized; anything else that
        is missing or malformed raises ValidationError.
        """
        if not isinstance(raw, Mapping):
            raise ValidationError(f"Task entry must be an object, got {type(raw).__name__}")

        missing = missing_required_fields(raw)
        if missing:
            raise ValidationError(f"Task missing required field: {missing[0]} (id={raw.get('id')!r})")

        # parse() only runs for unknown words, and raises with the canonical message.
        status = TaskStatus.from_legacy(raw["status"]) or TaskStatus.parse(raw["status"])

        timestamp = to_epoch_ms(raw["timestamp"])
        if timestamp is None:
            raise ValidationError(f"Task {raw['id']!r} has invalid timestamp: {raw['timestamp']!r}")

        task = cls(
            id=str(raw["id"]),
            title=str(raw["title"]),
            comment=str(raw["comment"]),
            selector=str(raw["selector"]),
            status=status,
            timestamp=timestamp,
            bounding_rect=BoundingRect.from_any(raw.get("boundingRect")),
            screenshot_path=str(raw.get("screenshotPath") or ""),
            last_modified=to_epoch_ms(raw.get("lastModified")),
            extra={k: v for k, v in raw.items() if k not in _KNOWN_KEYS},
        )
        task.validate()
        return task


def missing_required_fields(raw: Mapping[str, Any]) -> list[str]:
    """Names of required fields that are absent or blank in a stored task object."""
    missing: list[str] = []
    for name in REQUIRED_FIELDS:
        value = raw.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
    return missing
