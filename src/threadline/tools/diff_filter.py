"""Unified diff reduction helpers.

A git diff is a sequence of file sections. Each section starts with a
``diff --git a/<old> b/<new>`` header, continues with metadata lines
(``index``, ``---``, ``+++``, rename/mode lines) and then zero or more
hunks introduced by ``@@ -start,count +start,count @@``.

Two independent reductions are provided:

* :func:`restrict_diff` keeps whole file sections whose new-side path is in
  an allowlist and drops everything else, including sections whose header
  cannot be parsed.
* :func:`shrink_context` trims unchanged context inside every hunk to a
  window around the changed lines and re-emits consistent hunk headers.

File headers are always retained by :func:`shrink_context`, even when a
section has no hunks left (binary files, pure renames, mode changes), so
:func:`extract_files` reports the same files before and after shrinking.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

FILE_HEADER = re.compile(r'^diff --git "?a/(?P<old>.+?)"? "?b/(?P<new>.+?)"?$')
HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@(?P<heading>.*)$"
)


@dataclass(slots=True)
class FileSection:
    """One ``diff --git`` section split into its raw lines."""

    path: Optional[str]
    lines: List[str]

    @property
    def text(self) -> str:
        return "".join(self.lines)


@dataclass(slots=True)
class DiffStats:
    """Added/removed line counts for a diff."""

    added: int = 0
    removed: int = 0

    @property
    def total(self) -> int:
        return self.added + self.removed


def parse_file_header(line: str) -> Optional[str]:
    """Return the new-side path from a ``diff --git`` header line."""
    match = FILE_HEADER.match(line.rstrip("\r\n"))
    if match is None:
        return None
    return match.group("new")


def split_sections(diff: str) -> List[FileSection]:
    """Split ``diff`` into file sections, discarding any preamble."""
    sections: List[FileSection] = []
    current: Optional[FileSection] = None
    for line in diff.splitlines(keepends=True):
        if line.startswith("diff --git ") or line.startswith("diff --cc ") or line.startswith("diff --combined "):
            current = FileSection(path=parse_file_header(line), lines=[line])
            sections.append(current)
            continue
        if current is not None:
            current.lines.append(line)
    return sections


def extract_files(diff: str) -> List[str]:
    """Return the new-side paths named by file headers, deduplicated in order."""
    seen: dict[str, None] = {}
    for section in split_sections(diff):
        if section.path is not None:
            seen.setdefault(section.path, None)
    return list(seen)


def restrict_diff(diff: str, allowlist: Iterable[str]) -> str:
    """Return only the file sections of ``diff`` whose path is in ``allowlist``."""
    if not diff or not diff.strip():
        return ""
    allowed = {path.strip() for path in allowlist if path and path.strip()}
    if not allowed:
        return ""
    kept = [
        section.text
        for section in split_sections(diff)
        if section.path is not None and section.path in allowed
    ]
    return "".join(kept)


def shrink_context(diff: str, context_lines: int) -> str:
    """Trim unchanged lines in each hunk to ``context_lines`` around changes."""
    if context_lines < 0:
        raise ValueError("context_lines must be non-negative")
    if not diff or not diff.strip():
        return ""

    output: List[str] = []
    for section in split_sections(diff):
        output.extend(_shrink_section(section.lines, context_lines))
    return "".join(output)


def diff_stats(diff: str) -> DiffStats:
    """Count added and removed lines inside hunks.

    Hunk bodies are bounded by the line counts of their ``@@`` header, so a
    removed line reading ``-- note`` (rendered ``--- note``) is still counted
    while the ``---``/``+++`` file headers are not.
    """
    stats = DiffStats()
    old_left = new_left = 0
    for line in diff.splitlines():
        if old_left <= 0 and new_left <= 0:
            match = HUNK_HEADER.match(line)
            if match is not None:
                old_left = _count(match.group("old_count"))
                new_left = _count(match.group("new_count"))
            continue
        marker = line[:1]
        if marker == "+":
            stats.added += 1
            new_left -= 1
        elif marker == "-":
            stats.removed += 1
            old_left -= 1
        elif marker == "\\":
            continue
        else:
            old_left -= 1
            new_left -= 1
    return stats


# ---------------------------------------------------------------------------
# hunk rewriting


@dataclass(slots=True)
class _HunkLine:
    kind: str
    text: str
    old_pos: int
    new_pos: int
    trailers: List[str]


def _shrink_section(lines: Sequence[str], context_lines: int) -> List[str]:
    header: List[str] = []
    index = 0
    while index < len(lines) and HUNK_HEADER.match(lines[index].rstrip("\r\n")) is None:
        header.append(lines[index])
        index += 1

    output = list(header)
    while index < len(lines):
        match = HUNK_HEADER.match(lines[index].rstrip("\r\n"))
        if match is None:
            # Stray text between hunks is not part of any hunk body.
            index += 1
            continue
        body: List[str] = []
        index += 1
        while index < len(lines) and HUNK_HEADER.match(lines[index].rstrip("\r\n")) is None:
            body.append(lines[index])
            index += 1
        output.extend(_shrink_hunk(match, body, context_lines))
    return output


def _shrink_hunk(match: "re.Match[str]", body: Sequence[str], context_lines: int) -> List[str]:
    old_count = _count(match.group("old_count"))
    new_count = _count(match.group("new_count"))
    old_pos = int(match.group("old_start"))
    new_pos = int(match.group("new_start"))
    if old_count == 0:
        old_pos += 1
    if new_count == 0:
        new_pos += 1

    entries: List[_HunkLine] = []
    for raw in body:
        marker = raw[:1]
        if marker == "\\":
            if entries:
                entries[-1].trailers.append(raw)
            continue
        if marker == "+":
            entries.append(_HunkLine("+", raw, old_pos, new_pos, []))
            new_pos += 1
        elif marker == "-":
            entries.append(_HunkLine("-", raw, old_pos, new_pos, []))
            old_pos += 1
        else:
            entries.append(_HunkLine(" ", raw, old_pos, new_pos, []))
            old_pos += 1
            new_pos += 1

    changed = [position for position, entry in enumerate(entries) if entry.kind != " "]
    if not changed:
        return []

    keep = [False] * len(entries)
    for position in changed:
        low = max(position - context_lines, 0)
        high = min(position + context_lines, len(entries) - 1)
        for candidate in range(low, high + 1):
            keep[candidate] = True

    output: List[str] = []
    heading = match.group("heading")
    run: List[_HunkLine] = []
    for position, entry in enumerate(entries):
        if keep[position]:
            run.append(entry)
            continue
        if run:
            output.extend(_emit_hunk(run, heading))
            heading = ""
            run = []
    if run:
        output.extend(_emit_hunk(run, heading))
    return output


def _emit_hunk(run: Sequence[_HunkLine], heading: str) -> List[str]:
    old_count = sum(1 for entry in run if entry.kind != "+")
    new_count = sum(1 for entry in run if entry.kind != "-")
    old_start = run[0].old_pos if old_count else run[0].old_pos - 1
    new_start = run[0].new_pos if new_count else run[0].new_pos - 1
    header = f"@@ -{_range(old_start, old_count)} +{_range(new_start, new_count)} @@{heading}\n"
    lines = [header]
    for entry in run:
        lines.append(entry.text)
        lines.extend(entry.trailers)
    if lines[-1] and not lines[-1].endswith("\n"):
        lines[-1] = lines[-1] + "\n"
    return lines


def _count(value: Optional[str]) -> int:
    # An omitted hunk count means one line.
    return int(value) if value is not None else 1


def _range(start: int, count: int) -> str:
    if count == 1:
        return str(start)
    return f"{start},{count}"


__all__ = [
    "DiffStats",
    "FileSection",
    "diff_stats",
    "extract_files",
    "parse_file_header",
    "restrict_diff",
    "shrink_context",
    "split_sections",
]
