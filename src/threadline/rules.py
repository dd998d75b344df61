"""Load and validate threadline rule files.

A rule file is Markdown with a leading YAML front-matter block::

    ---
    id: error-handling
    version: 1.0.0
    patterns:
      - "src/**/*.py"
    context_files:
      - docs/errors.md
    ---
    Free-text guidance the model judges the change against.

Invalid files are skipped with a warning; the remaining rules still run.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .config import DEFAULT_RULES_DIR
from .schema import RuleDefinition

LOGGER = logging.getLogger(__name__)

RULE_SUFFIX = ".md"
VERSION_PATTERN = re.compile(r"^\d+\.\d+\.\d+")
FRONT_MATTER = re.compile(r"\A---[ \t]*\r?\n(?P<meta>.*?)\r?\n---[ \t]*(?:\r?\n(?P<body>.*))?\Z", re.DOTALL)
REQUIRED_FIELDS = ("id", "version", "patterns")

RULE_TEMPLATE = """---
id: example-threadline
version: 1.0.0
patterns:
  - "**/*.py"
context_files: []
---

# Example Threadline

Describe your coding standard or convention here.

This threadline checks every Python file (`**/*.py`) touched by a change
against the guidelines below.

## Guidelines

- Add your first guideline here
- Add your second guideline here
- Add examples or patterns to follow
"""


class NoRulesFoundError(RuntimeError):
    """Raised when the rules directory is missing or holds no rule files."""


@dataclass(slots=True)
class RuleValidationResult:
    """Outcome of validating a single rule file."""

    path: Path
    rule: Optional[RuleDefinition] = None
    errors: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return self.rule is not None and not self.errors


@dataclass(slots=True)
class RuleLoadReport:
    """Valid rules plus the files that were skipped and why."""

    rules: List[RuleDefinition] = field(default_factory=list)
    skipped: List[RuleValidationResult] = field(default_factory=list)


def rule_files(repo_root: Path, rules_dir: str = DEFAULT_RULES_DIR) -> List[Path]:
    """Return candidate rule files sorted by name."""
    directory = Path(repo_root) / rules_dir
    if not directory.is_dir():
        raise NoRulesFoundError(
            f"No {rules_dir}/ directory found in {repo_root}. "
            "Run `threadline init` to create your first threadline."
        )
    candidates = sorted(
        (path for path in directory.iterdir() if path.is_file() and path.suffix == RULE_SUFFIX),
        key=lambda item: item.name,
    )
    if not candidates:
        raise NoRulesFoundError(
            f"No threadline files found in {rules_dir}/. Run `threadline init` to create a template."
        )
    return candidates


def load_rule_report(repo_root: Path, rules_dir: str = DEFAULT_RULES_DIR) -> RuleLoadReport:
    """Validate every candidate file and collect valid and skipped entries."""
    root = Path(repo_root).resolve()
    report = RuleLoadReport()
    seen_ids: Dict[str, str] = {}
    for path in rule_files(root, rules_dir):
        result = validate_rule_file(path, root)
        if result.valid and result.rule is not None:
            previous = seen_ids.get(result.rule.id)
            if previous is not None:
                result.errors.append(f"Duplicate threadline id '{result.rule.id}' (already defined in {previous})")
                result.rule = None
            else:
                seen_ids[result.rule.id] = result.rule.source_path
                report.rules.append(result.rule)
                continue
        LOGGER.warning("Skipping %s: %s", path.name, "; ".join(result.errors))
        report.skipped.append(result)
    return report


def load_rules(repo_root: Path, rules_dir: str = DEFAULT_RULES_DIR) -> List[RuleDefinition]:
    """Return the valid rules under ``repo_root``; may be empty."""
    return load_rule_report(repo_root, rules_dir).rules


def validate_rule_file(path: Path, repo_root: Path) -> RuleValidationResult:
    """Parse ``path`` and report every problem found with it."""
    result = RuleValidationResult(path=path)
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as error:
        result.errors.append(f"Failed to read threadline file: {error}")
        return result

    match = FRONT_MATTER.match(content)
    if match is None:
        result.errors.append("Missing YAML front matter. Threadline files must start with ---")
        return result

    try:
        meta = yaml.safe_load(match.group("meta")) or {}
    except yaml.YAMLError as error:
        result.errors.append(f"Failed to parse front matter: {error}")
        return result
    if not isinstance(meta, dict):
        result.errors.append("Front matter must be a mapping of keys to values")
        return result

    body = (match.group("body") or "").strip()
    errors = result.errors

    for name in REQUIRED_FIELDS:
        if meta.get(name) in (None, "", []):
            errors.append(f"Missing required field: {name}")

    rule_id = _scalar(meta.get("id"))
    version = _scalar(meta.get("version"))
    if version and not VERSION_PATTERN.match(version):
        errors.append("version must be in semver format (e.g., 1.0.0)")

    patterns = meta.get("patterns")
    if patterns is not None and not isinstance(patterns, list):
        errors.append("patterns must be a list")
    elif isinstance(patterns, list) and any(not isinstance(item, str) or not item.strip() for item in patterns):
        errors.append("patterns must contain only non-empty strings")

    context_files = meta.get("context_files")
    context_content: Dict[str, str] = {}
    if context_files is not None and not isinstance(context_files, list):
        errors.append("context_files must be a list")
    elif isinstance(context_files, list):
        for entry in context_files:
            if not isinstance(entry, str) or not entry.strip():
                errors.append("context_files must contain only non-empty strings")
                continue
            text, problem = _read_context_file(repo_root, entry.strip())
            if problem:
                errors.append(problem)
            elif text is not None:
                context_content[entry.strip()] = text

    if not body:
        errors.append("Threadline body cannot be empty")

    if errors:
        return result

    try:
        source_path = path.resolve().relative_to(repo_root.resolve()).as_posix()
    except ValueError:
        source_path = path.as_posix()

    result.rule = RuleDefinition(
        id=rule_id or "",
        version=version or "",
        patterns=tuple(item.strip() for item in patterns or []),
        body=body,
        source_path=source_path,
        context_files=tuple(context_content),
        context_content=context_content,
    )
    return result


def init_rules_dir(repo_root: Path, rules_dir: str = DEFAULT_RULES_DIR) -> tuple[Path, bool]:
    """Write the example rule; returns ``(path, created)`` and never overwrites."""
    directory = Path(repo_root) / rules_dir
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / "example.md"
    if target.exists():
        return target, False
    target.write_text(RULE_TEMPLATE, encoding="utf-8")
    return target, True


def _scalar(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (list, dict)):
        return None
    text = str(value).strip()
    return text or None


def _read_context_file(repo_root: Path, relative: str) -> tuple[Optional[str], Optional[str]]:
    root = repo_root.resolve()
    candidate = (root / relative).resolve()
    try:
        candidate.relative_to(root)
    except ValueError:
        return None, f"Context file outside repository: {relative}"
    if not candidate.is_file():
        return None, f"Context file not found: {relative}"
    try:
        return candidate.read_text(encoding="utf-8", errors="replace"), None
    except OSError as error:
        return None, f"Context file unreadable: {relative} ({error})"


__all__ = [
    "NoRulesFoundError",
    "RULE_TEMPLATE",
    "RuleLoadReport",
    "RuleValidationResult",
    "init_rules_dir",
    "load_rule_report",
    "load_rules",
    "rule_files",
    "validate_rule_file",
]
