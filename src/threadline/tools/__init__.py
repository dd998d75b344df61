"""Git, glob and diff helpers used by the check pipeline."""

from .diff_filter import DiffStats, diff_stats, extract_files, restrict_diff, shrink_context
from .patterns import matches_pattern, relevant_files
from .vcs import GitError, GitRepository

__all__ = [
    "DiffStats",
    "GitError",
    "GitRepository",
    "diff_stats",
    "extract_files",
    "matches_pattern",
    "relevant_files",
    "restrict_diff",
    "shrink_context",
]
