"""Glob matching used to decide which changed files a rule cares about."""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Iterable, List, Pattern, Sequence

# ``**`` is consumed before ``*`` so the two never overlap.
_TOKEN = re.compile(r"\*\*|\*|\?")


@lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> Pattern[str]:
    """Translate a glob into a regex anchored to the whole path.

    ``**`` matches any run of characters including ``/``, ``*`` matches any
    run without ``/`` and ``?`` matches exactly one character. Everything else
    is matched literally.
    """
    parts: List[str] = []
    position = 0
    for token in _TOKEN.finditer(pattern):
        parts.append(re.escape(pattern[position : token.start()]))
        if token.group(0) == "**":
            parts.append(".*")
        elif token.group(0) == "*":
            parts.append("[^/]*")
        else:
            parts.append(".")
        position = token.end()
    parts.append(re.escape(pattern[position:]))
    return re.compile("^" + "".join(parts) + "$")


def matches_pattern(path: str, pattern: str) -> bool:
    """Return ``True`` when ``path`` matches the glob ``pattern``."""
    return compile_pattern(pattern).match(path) is not None


def relevant_files(changed_files: Iterable[str], patterns: Sequence[str]) -> List[str]:
    """Return the changed files matching any of ``patterns`` in input order."""
    compiled = [compile_pattern(pattern) for pattern in patterns]
    return [
        path
        for path in changed_files
        if any(regex.match(path) is not None for regex in compiled)
    ]


__all__ = ["compile_pattern", "matches_pattern", "relevant_files"]
