"""Classify the hosting environment a check is running in."""

from __future__ import annotations

import os
from enum import Enum
from typing import Mapping, Optional


class Environment(str, Enum):
    """Hosting platforms that determine how the diff is computed."""

    GITHUB = "github"
    GITLAB = "gitlab"
    VERCEL = "vercel"
    LOCAL = "local"
    AZURE_DEVOPS = "azure-devops"
    BITBUCKET = "bitbucket"


# Platforms recognised by the resolver but without a diff strategy yet.
RESERVED_ENVIRONMENTS = frozenset({Environment.AZURE_DEVOPS, Environment.BITBUCKET})

DISPLAY_NAMES: dict[Environment, str] = {
    Environment.GITHUB: "GitHub Actions",
    Environment.GITLAB: "GitLab CI",
    Environment.VERCEL: "Vercel",
    Environment.LOCAL: "Local",
    Environment.AZURE_DEVOPS: "Azure DevOps",
    Environment.BITBUCKET: "Bitbucket Pipelines",
}

# Checked in order; the first platform whose marker variable is set wins.
_MARKERS: tuple[tuple[Environment, str], ...] = (
    (Environment.VERCEL, "VERCEL"),
    (Environment.GITHUB, "GITHUB_ACTIONS"),
    (Environment.GITLAB, "GITLAB_CI"),
    (Environment.AZURE_DEVOPS, "TF_BUILD"),
    (Environment.BITBUCKET, "BITBUCKET_BUILD_NUMBER"),
)


def resolve_environment(env: Optional[Mapping[str, str]] = None) -> Environment:
    """Return the environment described by ``env`` (defaults to ``os.environ``).

    Resolution is total: anything that does not look like a known CI
    platform resolves to :attr:`Environment.LOCAL`.
    """
    source = os.environ if env is None else env
    for environment, marker in _MARKERS:
        value = source.get(marker)
        if value and value.strip() and not value.startswith("$"):
            return environment
    return Environment.LOCAL


__all__ = ["DISPLAY_NAMES", "Environment", "RESERVED_ENVIRONMENTS", "resolve_environment"]
