# src/annotask/migration/legacy_parsers.py

"""
Tolerant parsers for the three legacy on-disk formats.

All parsers are pure (text in, ParseResult out) and never raise on bad input:
an unusable line or section becomes a ParseIssue and parsing carries on.

Formats:
- stream:   one JSON object per line (.moat-stream.jsonl)
- summary:  numbered checkbox list, `1. [x] Title - "description"`,
            with a fallback for the older `1. Title - "description" - done`
- detailed: one `## ...` section per task with `### Request` and
            `- **Key**: value` lines
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from ..tasks.task_models import to_epoch_ms

logger = logging.getLogger(__name__)


class LegacySource(StrEnum):
    STREAM = "jsonl"
    SUMMARY = "summary"
    DETAILED = "detailed"


@dataclass(slots=True)
class LegacyAnnotation:
    """One task-shaped record recovered from any legacy format."""

    source: LegacySource
    title: str | None = None
    comment: str | None = None
    selector: str | None = None
    status: str | None = None
    created: int | None = None
    original_id: str | None = None
    bounding_rect: Mapping[str, Any] | None = None
    has_screenshot: bool = False
    number: int | None = None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ParseIssue:
    location: str
    message: str

    def __str__(self) -> str:
        return f"{self.location}: {self.message}"


@dataclass(slots=True)
class ParseResult:
    source: LegacySource
    annotations: list[LegacyAnnotation] = field(default_factory=list)
    issues: list[ParseIssue] = field(default_factory=list)


def _text(raw: Any) -> str | None:
    if raw is None:
        return None
    s = str(raw).strip()
    return s or None


# ---- stream (.jsonl) ----


def _extract_stream_annotation(line_data: Mapping[str, Any]) -> Mapping[str, Any] | None:
    nested = line_data.get("annotation")
    if isinstance(nested, Mapping):
        return nested
    if line_data.get("type") == "user_message":
        return line_data
    if line_data.get("content") and line_data.get("target"):
        return line_data
    return None


def parse_stream(content: str) -> ParseResult:
    result = ParseResult(source=LegacySource.STREAM)

    for lineno, line in enumerate(content.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            line_data = json.loads(line)
        except json.JSONDecodeError as exc:
            result.issues.append(ParseIssue(f"line {lineno}", f"invalid JSON ({exc.msg})"))
            continue
        if not isinstance(line_data, Mapping):
            result.issues.append(ParseIssue(f"line {lineno}", "not a JSON object"))
            continue

        ann = _extract_stream_annotation(line_data)
        if ann is None:
            result.issues.append(ParseIssue(f"line {lineno}", "no annotation found"))
            continue

        formatting = line_data.get("formatting")
        meta = {
            "originalType": ann.get("type"),
            "pageUrl": ann.get("pageUrl"),
            "sessionId": ann.get("sessionId"),
            "targetFile": formatting.get("targetFile") if isinstance(formatting, Mapping) else None,
        }
        rect = ann.get("boundingRect")

        result.annotations.append(
            LegacyAnnotation(
                source=LegacySource.STREAM,
                title=_text(ann.get("elementLabel")),
                comment=_text(ann.get("content")) or _text(ann.get("description")),
                selector=_text(ann.get("target")),
                status=_text(ann.get("status")),
                created=to_epoch_ms(ann.get("timestamp")),
                original_id=_text(ann.get("id")),
                bounding_rect=rect if isinstance(rect, Mapping) else None,
                has_screenshot=bool(ann.get("screenshot")),
                meta={k: v for k, v in meta.items() if v is not None},
            )
        )

    logger.debug("Parsed %d stream annotations (%d issues)", len(result.annotations), len(result.issues))
    return result


# ---- summary markdown ----

_SUMMARY_CHECKBOX_RE = re.compile(r'^\s*(\d+)\.\s*\[([xX ])\]\s*(.+?)\s*[-–]\s*"(.+?)"\s*$')
_SUMMARY_OLD_RE = re.compile(
    r'^\s*(\d+)\.\s*(.+?)\s*-\s*"(.+?)"\s*-\s*(pending|completed|done)\s*$',
    re.IGNORECASE,
)
_NUMBERED_LINE_RE = re.compile(r"^\s*\d+\.\s+\S")


def parse_summary(content: str) -> ParseResult:
    result = ParseResult(source=LegacySource.SUMMARY)
    lines = content.splitlines()

    unmatched: list[int] = []
    for lineno, line in enumerate(lines, start=1):
        m = _SUMMARY_CHECKBOX_RE.match(line)
        if m is None:
            if _NUMBERED_LINE_RE.match(line):
                unmatched.append(lineno)
            continue
        number, checked, title, description = m.groups()
        result.annotations.append(
            LegacyAnnotation(
                source=LegacySource.SUMMARY,
                title=title.strip(),
                comment=description.strip(),
                status="done" if checked.lower() == "x" else "to-do",
                number=int(number),
            )
        )

    if not result.annotations:
        # Older writers had no checkbox and a trailing status word instead.
        unmatched = []
        for lineno, line in enumerate(lines, start=1):
            m = _SUMMARY_OLD_RE.match(line)
            if m is None:
                if _NUMBERED_LINE_RE.match(line):
                    unmatched.append(lineno)
                continue
            number, title, description, status = m.groups()
            result.annotations.append(
                LegacyAnnotation(
                    source=LegacySource.SUMMARY,
                    title=title.strip(),
                    comment=description.strip(),
                    status=status.lower(),
                    number=int(number),
                )
            )

    for lineno in unmatched:
        result.issues.append(ParseIssue(f"line {lineno}", "numbered item not in a known summary format"))

    logger.debug("Parsed %d summary tasks (%d issues)", len(result.annotations), len(result.issues))
    return result


# ---- detailed markdown ----

_SECTION_RE = re.compile(r"^##\s+(.+?)\s*$", re.MULTILINE)
_HEADER_PREFIX_RE = re.compile(r"^[^\w]*(?:Task\s*\d+\s*:\s*)?", re.UNICODE)
_TASK_HEADER_HINT_RE = re.compile(r"📋|\bTask\s*\d+\s*:")
_REQUEST_QUOTED_RE = re.compile(r'###\s*Request\s*\n\s*"(.+?)"', re.DOTALL)
_REQUEST_PLAIN_RE = re.compile(r"###\s*Request\s*\n\s*(\S[^\n]*)")
_ELEMENT_RE = re.compile(r"-\s*\*\*Element\*\*:\s*`(.+?)`")
_STATUS_RE = re.compile(r"^\s*-\s*\*\*Status\*\*:\s*(.+?)\s*$", re.MULTILINE)
_CREATED_RE = re.compile(r"^\s*-\s*\*\*Created\*\*:\s*(.+?)\s*$", re.MULTILINE)
_ID_RE = re.compile(r"-\s*\*\*ID\*\*:\s*`(.+?)`")
_LEADING_SYMBOLS_RE = re.compile(r"^[^\w]+", re.UNICODE)


def _split_sections(content: str) -> list[tuple[str, str]]:
    matches = list(_SECTION_RE.finditer(content))
    sections: list[tuple[str, str]] = []
    for i, m in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(content)
        sections.append((m.group(1), content[m.end() : end]))
    return sections


def parse_detailed(content: str) -> ParseResult:
    result = ParseResult(source=LegacySource.DETAILED)

    for index, (header, body) in enumerate(_split_sections(content), start=1):
        request = _REQUEST_QUOTED_RE.search(body) or _REQUEST_PLAIN_RE.search(body)
        element = _ELEMENT_RE.search(body)
        status = _STATUS_RE.search(body)
        created = _CREATED_RE.search(body)
        task_id = _ID_RE.search(body)

        has_fields = any(m is not None for m in (request, element, status, created, task_id))
        if not has_fields and not _TASK_HEADER_HINT_RE.search(header):
            # Plain prose section (notes, summary, ...): not a task.
            continue

        ann = LegacyAnnotation(source=LegacySource.DETAILED, number=index)
        ann.title = _text(_HEADER_PREFIX_RE.sub("", header))
        if request:
            ann.comment = _text(request.group(1))
        if element:
            ann.selector = _text(element.group(1))
        if status:
            ann.status = _text(_LEADING_SYMBOLS_RE.sub("", status.group(1)))
        if created:
            ann.created = to_epoch_ms(created.group(1))
            if ann.created is None:
                result.issues.append(
                    ParseIssue(f"section {index}", f"unreadable Created value {created.group(1)!r}")
                )
        if task_id:
            ann.original_id = _text(task_id.group(1))

        result.annotations.append(ann)

    logger.debug("Parsed %d detailed tasks (%d issues)", len(result.annotations), len(result.issues))
    return result


PARSERS = {
    LegacySource.STREAM: parse_stream,
    LegacySource.SUMMARY: parse_summary,
    LegacySource.DETAILED: parse_detailed,
}


def parse_legacy(source: LegacySource, content: str) -> ParseResult:
    return PARSERS[source](content)


def extract_element_label(selector: str | None) -> str | None:
    """Short human label for a CSS selector: #id, .class, <tag>, or the truncated selector."""
    if not selector:
        return None

    if "#" in selector:
        m = re.search(r"#([^.\s\[#]+)", selector)
        if m:
            return f"#{m.group(1)}"

    if "." in selector:
        m = re.search(r"\.([^#\s\[.]+)", selector)
        if m:
            return f".{m.group(1)}"

    m = re.match(r"^([a-zA-Z]+)", selector)
    if m:
        return f"<{m.group(1)}>"

    return selector[:20] + "..." if len(selector) > 20 else selector
