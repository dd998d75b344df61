"""Minimal git helpers
The helpers below provide just enough structure to read the pending change
set of a repository: staged and unstaged diffs, branch ranges, single
commits, and the identifying metadata of ``HEAD``.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Sequence

import subprocess

# Unchanged context requested from git; trimming happens later per rule.
DEFAULT_DIFF_CONTEXT = 200


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def initialise(cls, root: Path | str) -> "GitRepository":
        """Initialise a new git repository at ``root`` with an initial commit."""

        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)

        def _run(args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
            return _execute(path, args, check=check)

        _run(["init"])

        def _ensure_config(key: str, value: str) -> None:
            probe = _run(["config", "--get", key], check=False)
            if probe.returncode != 0 or not probe.stdout.strip():
                _run(["config", key, value])

        _ensure_config("user.email", "threadline@example.com")
        _ensure_config("user.name", "Threadline")

        _run(["add", "."])
        _run(["commit", "--allow-empty", "-m", "Initial commit"])

        return cls(path)

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        return _execute(self.root, args, check=check)

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    # -------------------------------------------------------------- branches
    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""

        result = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    def head(self) -> str | None:
        """Return the commit SHA of ``HEAD`` or ``None`` for an unborn branch."""

        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def remote_url(self, remote: str = "origin") -> str | None:
        """Return the configured URL for ``remote`` when one exists."""

        result = self._run_git(["remote", "get-url", remote], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    # ------------------------------------------------------------- repo status
    def staged_paths(self) -> List[str]:
        """Return paths with changes recorded in the index."""

        result = self._run_git(["diff", "--cached", "--name-only", "-z"], check=True)
        return [entry for entry in result.stdout.split("\0") if entry]

    def unstaged_paths(self) -> List[str]:
        """Return tracked paths with working tree modifications."""

        result = self._run_git(["diff", "--name-only", "-z"], check=True)
        return [entry for entry in result.stdout.split("\0") if entry]

    # ----------------------------------------------------------- diff helpers
    def diff(self, *args: str, context: int = DEFAULT_DIFF_CONTEXT) -> str:
        """Return ``git diff`` output for ``args`` with ``context`` lines."""

        command: List[str] = ["diff", "--no-color", "--no-ext-diff", f"-U{context}", *args]
        result = self._run_git(command, check=True)
        return result.stdout

    def commit_diff(self, sha: str, *, context: int = DEFAULT_DIFF_CONTEXT) -> str:
        """Return the patch introduced by ``sha`` relative to its first parent.

        Merge commits are diffed against their first parent, so a clean merge
        still reports everything it brought in. A root commit has no parent
        and is shown against the empty tree.
        """

        parent = self._run_git(["rev-parse", "--verify", "--quiet", f"{sha}^1"], check=False)
        if parent.returncode == 0 and parent.stdout.strip():
            return self.diff(parent.stdout.strip(), sha, context=context)
        command = ["show", "--no-color", "--no-ext-diff", "--format=", f"-U{context}", sha]
        result = self._run_git(command, check=True)
        return result.stdout

    def commit_message(self, sha: str) -> str | None:
        """Return the full message of ``sha`` or ``None`` when unavailable."""

        result = self._run_git(["show", "-s", "--format=%B", sha], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None


def _execute(cwd: Path, args: Sequence[str], *, check: bool) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=False,
            check=False,
        )
    except FileNotFoundError as error:
        raise GitError("git executable not found on PATH") from error
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(f"git {' '.join(args)} failed: {message}")
    return result


__all__ = ["DEFAULT_DIFF_CONTEXT", "GitError", "GitRepository"]
