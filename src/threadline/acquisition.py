"""Produce the diff under review for the environment a check runs in.

Every :class:`~threadline.environment.Environment` maps to exactly one
strategy. Strategies never call each other: when the variables a platform
is expected to supply are missing the run fails with a message naming them.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional

from .environment import DISPLAY_NAMES, Environment
from .schema import DiffBundle
from .tools.diff_filter import extract_files
from .tools.vcs import DEFAULT_DIFF_CONTEXT, GitError, GitRepository

LOGGER = logging.getLogger(__name__)

DEFAULT_BRANCH = "main"

DiffStrategy = Callable[[GitRepository, Mapping[str, str]], str]


class DiffAcquisitionError(RuntimeError):
    """Raised when the diff for the current environment cannot be produced."""


@dataclass(slots=True)
class ReviewMetadata:
    """Identifying details of the change, used for audit records and reports."""

    commit_sha: Optional[str] = None
    commit_message: Optional[str] = None
    pr_title: Optional[str] = None
    branch_name: Optional[str] = None
    repo_name: Optional[str] = None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {
            "commit_sha": self.commit_sha,
            "commit_message": self.commit_message,
            "pr_title": self.pr_title,
            "branch_name": self.branch_name,
            "repo_name": self.repo_name,
        }


def acquire_diff(
    environment: Environment,
    repo_root: Path | str,
    env: Optional[Mapping[str, str]] = None,
) -> DiffBundle:
    """Return the unified diff and changed files for ``environment``."""
    source = os.environ if env is None else env
    try:
        repo = GitRepository(repo_root)
    except GitError as error:
        raise DiffAcquisitionError(
            f"Not a git repository: {repo_root}. Threadline requires a git repository."
        ) from error

    strategy = _STRATEGIES[environment]
    try:
        diff = strategy(repo, source)
    except GitError as error:
        raise DiffAcquisitionError(
            f"Failed to read the {DISPLAY_NAMES[environment]} diff: {error}"
        ) from error

    bundle = DiffBundle(diff=diff, files=tuple(extract_files(diff)))
    LOGGER.info(
        "Acquired %s diff: %d file(s), %d character(s)",
        environment.value,
        len(bundle.files),
        len(bundle.diff),
    )
    return bundle


def collect_metadata(
    environment: Environment,
    repo: GitRepository,
    env: Optional[Mapping[str, str]] = None,
) -> ReviewMetadata:
    """Gather commit/branch details for ``environment``; never raises."""
    source = os.environ if env is None else env
    metadata = ReviewMetadata()
    try:
        if environment is Environment.GITHUB:
            metadata.commit_sha = _var(source, "GITHUB_HEAD_SHA") or _var(source, "GITHUB_SHA")
            metadata.pr_title = _var(source, "PR_TITLE")
            metadata.branch_name = _var(source, "GITHUB_HEAD_REF") or _var(source, "GITHUB_REF_NAME")
        elif environment is Environment.GITLAB:
            metadata.commit_sha = _var(source, "CI_COMMIT_SHA")
            metadata.pr_title = _var(source, "CI_MERGE_REQUEST_TITLE")
            metadata.branch_name = _var(source, "CI_MERGE_REQUEST_SOURCE_BRANCH_NAME") or _var(
                source, "CI_COMMIT_REF_NAME"
            )
        elif environment is Environment.VERCEL:
            metadata.commit_sha = _var(source, "VERCEL_GIT_COMMIT_SHA")
            metadata.branch_name = _var(source, "VERCEL_GIT_COMMIT_REF")
        else:
            metadata.commit_sha = repo.head()
            metadata.branch_name = repo.current_branch()

        if metadata.commit_sha:
            metadata.commit_message = repo.commit_message(metadata.commit_sha)
        metadata.repo_name = repo.remote_url()
    except GitError as error:
        LOGGER.warning("Unable to collect review metadata: %s", error)
    return metadata


# ---------------------------------------------------------------- strategies
def _local_diff(repo: GitRepository, env: Mapping[str, str]) -> str:
    if repo.staged_paths():
        LOGGER.debug("Using staged changes")
        return repo.diff("--cached", context=DEFAULT_DIFF_CONTEXT)
    if repo.unstaged_paths():
        LOGGER.debug("No staged changes; using unstaged changes")
        return repo.diff(context=DEFAULT_DIFF_CONTEXT)
    return ""


def _github_diff(repo: GitRepository, env: Mapping[str, str]) -> str:
    if _var(env, "GITHUB_EVENT_NAME") == "pull_request":
        base_ref = _require(env, "GITHUB_BASE_REF", "GitHub pull request")
        head_ref = _require(env, "GITHUB_HEAD_REF", "GitHub pull request")
        return repo.diff(f"origin/{base_ref}...origin/{head_ref}")

    ref_name = _var(env, "GITHUB_REF_NAME")
    if ref_name:
        return repo.diff(f"origin/{DEFAULT_BRANCH}...origin/{ref_name}")

    raise DiffAcquisitionError(
        "GitHub Actions environment detected but no valid context found. "
        'Expected GITHUB_EVENT_NAME="pull_request" (with GITHUB_BASE_REF/GITHUB_HEAD_REF) '
        "or GITHUB_REF_NAME for branch context."
    )


def _gitlab_diff(repo: GitRepository, env: Mapping[str, str]) -> str:
    if _var(env, "CI_MERGE_REQUEST_IID"):
        target = _require(env, "CI_MERGE_REQUEST_TARGET_BRANCH_NAME", "GitLab merge request")
        source_branch = _require(env, "CI_MERGE_REQUEST_SOURCE_BRANCH_NAME", "GitLab merge request")
        return repo.diff(f"origin/{target}...origin/{source_branch}")

    ref_name = _var(env, "CI_COMMIT_REF_NAME")
    if ref_name:
        return repo.diff(f"origin/{DEFAULT_BRANCH}...origin/{ref_name}")

    raise DiffAcquisitionError(
        "GitLab CI environment detected but no valid context found. "
        "Expected CI_MERGE_REQUEST_IID (with CI_MERGE_REQUEST_TARGET_BRANCH_NAME/"
        "CI_MERGE_REQUEST_SOURCE_BRANCH_NAME) or CI_COMMIT_REF_NAME for branch context."
    )


def _vercel_diff(repo: GitRepository, env: Mapping[str, str]) -> str:
    sha = _require(env, "VERCEL_GIT_COMMIT_SHA", "Vercel")
    return repo.commit_diff(sha, context=DEFAULT_DIFF_CONTEXT)


def _unsupported(environment: Environment) -> DiffStrategy:
    def _strategy(repo: GitRepository, env: Mapping[str, str]) -> str:
        raise DiffAcquisitionError(
            f"{DISPLAY_NAMES[environment]} is recognised but not supported yet. "
            "Run threadline locally or from GitHub Actions, GitLab CI or Vercel."
        )

    return _strategy


_STRATEGIES: Dict[Environment, DiffStrategy] = {
    Environment.LOCAL: _local_diff,
    Environment.GITHUB: _github_diff,
    Environment.GITLAB: _gitlab_diff,
    Environment.VERCEL: _vercel_diff,
    Environment.AZURE_DEVOPS: _unsupported(Environment.AZURE_DEVOPS),
    Environment.BITBUCKET: _unsupported(Environment.BITBUCKET),
}

_UNHANDLED = set(Environment) - set(_STRATEGIES)
if _UNHANDLED:
    raise RuntimeError(
        "No diff strategy registered for: " + ", ".join(sorted(item.value for item in _UNHANDLED))
    )


def _var(env: Mapping[str, str], key: str) -> Optional[str]:
    value = env.get(key)
    if value is None:
        return None
    value = value.strip()
    if not value or value.startswith("$"):
        return None
    return value


def _require(env: Mapping[str, str], key: str, context: str) -> str:
    value = _var(env, key)
    if value is None:
        raise DiffAcquisitionError(
            f"{context} context detected but {key} is missing. "
            "This variable should be provided automatically by the platform."
        )
    return value


__all__ = [
    "DEFAULT_BRANCH",
    "DiffAcquisitionError",
    "ReviewMetadata",
    "acquire_diff",
    "collect_metadata",
]
