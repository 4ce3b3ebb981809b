"""Status block embedded in a pull request description.

The block is a region delimited by two HTML comment marker lines. The helpers
here are the only code that edits that region: every write goes through
``upsert`` or ``remove`` so a description never carries more than one block,
and text outside the markers is left byte-for-byte intact.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import re

from prloop.models import StatusBlock
from prloop.observability import log_warning_event


STATUS_BLOCK_START = "<!-- prloop-status-start -->"
STATUS_BLOCK_END = "<!-- prloop-status-end -->"
STATUS_LINE_PREFIX = "> **Status:** "

_BANNER_LINES = (
    "> **🤖 Agent iteration in progress**",
    "> ",
    "> This PR is being iterated on by an automated agent.",
    "> It is not ready for human review yet.",
)
_MARKER_LINE_PATTERN = re.compile(
    rf"^[ \t]*({re.escape(STATUS_BLOCK_START)}|{re.escape(STATUS_BLOCK_END)})[ \t]*(?=\r?$)",
    re.MULTILINE,
)
_SEPARATOR = "\n\n"
# Editors on the web save descriptions with CRLF line endings.
_TRAILING_SEPARATOR = re.compile(r"(?:\r\n\r\n|\n\n)\Z")
_LEADING_LINE_BREAKS = re.compile(r"\A(?:\r?\n){1,2}")
_LEADING_LINE_BREAK = re.compile(r"\A\r?\n")

LOGGER = logging.getLogger("prloop.status_block")


class StateInvariantError(RuntimeError):
    """The description holds a malformed or duplicated status block."""

    def __init__(
        self, message: str, *, region_count: int, stray_marker_offsets: tuple[int, ...]
    ) -> None:
        super().__init__(message)
        self.region_count = region_count
        self.stray_marker_offsets = stray_marker_offsets


@dataclass(frozen=True)
class _Scan:
    regions: tuple[tuple[int, int], ...]
    stray_marker_offsets: tuple[int, ...]


def _scan(description: str) -> _Scan:
    regions: list[tuple[int, int]] = []
    stray: list[int] = []
    open_start: int | None = None
    for match in _MARKER_LINE_PATTERN.finditer(description):
        if match.group(1) == STATUS_BLOCK_START:
            if open_start is not None:
                stray.append(open_start)
            open_start = match.start()
            continue
        if open_start is None:
            stray.append(match.start())
            continue
        regions.append((open_start, match.end()))
        open_start = None
    if open_start is not None:
        stray.append(open_start)
    return _Scan(regions=tuple(regions), stray_marker_offsets=tuple(sorted(stray)))


def _cut(text: str, start: int, end: int) -> str:
    before = text[:start]
    after = text[end:]
    separator = _TRAILING_SEPARATOR.search(before)
    if separator is not None:
        before = before[: separator.start()]
    elif not before:
        after = _LEADING_LINE_BREAKS.sub("", after, count=1)
    elif before.endswith("\n"):
        after = _LEADING_LINE_BREAK.sub("", after, count=1)
    return before + after


def render(status_message: str | None = None) -> str:
    lines = [STATUS_BLOCK_START, *_BANNER_LINES]
    message = _single_line(status_message)
    if message:
        lines.append("> ")
        lines.append(f"{STATUS_LINE_PREFIX}{message}")
    lines.append(STATUS_BLOCK_END)
    return "\n".join(lines)


def remove(description: str) -> str:
    scan = _scan(description)
    text = description
    for start, end in reversed(scan.regions):
        text = _cut(text, start, end)
    return text


def upsert(description: str, block: str) -> str:
    base = remove(description)
    if not base:
        return block
    return f"{base}{_SEPARATOR}{block}"


def update_status(description: str, status_message: str | None) -> str:
    return upsert(description, render(status_message))


def has_status_block(description: str) -> bool:
    return bool(_scan(description).regions)


def parse_status_block(description: str) -> StatusBlock | None:
    scan = _scan(description)
    if scan.stray_marker_offsets or len(scan.regions) > 1:
        raise StateInvariantError(
            "Status block is malformed: "
            f"{len(scan.regions)} region(s), {len(scan.stray_marker_offsets)} stray marker(s)",
            region_count=len(scan.regions),
            stray_marker_offsets=scan.stray_marker_offsets,
        )
    if not scan.regions:
        return None
    start, end = scan.regions[0]
    message: str | None = None
    for line in description[start:end].splitlines():
        stripped = line.strip()
        if stripped.startswith(STATUS_LINE_PREFIX.strip()):
            message = stripped[len(STATUS_LINE_PREFIX.strip()) :].strip() or None
    return StatusBlock(status_message=message)


def current_status_block(description: str) -> StatusBlock | None:
    try:
        return parse_status_block(description)
    except StateInvariantError as exc:
        log_warning_event(
            LOGGER,
            "status_block_malformed",
            region_count=exc.region_count,
            stray_marker_count=len(exc.stray_marker_offsets),
        )
        return None


def _single_line(message: str | None) -> str | None:
    if message is None:
        return None
    collapsed = " ".join(message.split())
    return collapsed or None
