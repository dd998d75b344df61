"""Audit collaborators that persist a finished check run."""

from __future__ import annotations

import hashlib
import json
import logging
import re
import uuid
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Sequence

from .acquisition import ReviewMetadata
from .environment import Environment
from .schema import CheckOutcome, DiffBundle, RuleDefinition
from .tools.diff_filter import diff_stats

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class CheckRequest:
    """Inputs of one check run as seen by audit collaborators."""

    rules: Sequence[RuleDefinition]
    bundle: DiffBundle
    environment: Optional[Environment] = None
    metadata: Optional[ReviewMetadata] = None
    check_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


class AuditSink(Protocol):
    """Receives every completed :class:`CheckOutcome`; failures are the sink's own."""

    def record(self, request: CheckRequest, outcome: CheckOutcome) -> Any:
        ...


def context_stats(rules: Sequence[RuleDefinition]) -> Dict[str, int]:
    """Count the context files attached across ``rules`` and their total lines."""
    files = 0
    lines = 0
    for rule in rules:
        for content in rule.context_content.values():
            files += 1
            lines += len(content.splitlines())
    return {"files": files, "lines": lines}


def build_audit_entry(request: CheckRequest, outcome: CheckOutcome) -> Dict[str, Any]:
    """Render the JSON document describing one check run."""
    stats = diff_stats(request.bundle.diff)
    return {
        "check_id": request.check_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": request.environment.value if request.environment else None,
        "metadata": _json_safe(request.metadata) if request.metadata else None,
        "diff_stats": {
            "added": stats.added,
            "removed": stats.removed,
            "total": stats.total,
            "files": len(request.bundle.files),
        },
        "context_stats": context_stats(request.rules),
        "threadlines": [
            {
                "id": rule.id,
                "version": rule.version,
                "patterns": list(rule.patterns),
                "source_path": rule.source_path,
                "context_files": list(rule.context_files),
            }
            for rule in request.rules
        ],
        "outcome": outcome.model_dump(mode="json"),
    }


class JsonAuditSink:
    """Write one JSON document per check run under ``logs_root``."""

    def __init__(self, logs_root: Path | str) -> None:
        self.logs_root = Path(logs_root)

    def record(self, request: CheckRequest, outcome: CheckOutcome) -> Path:
        self.logs_root.mkdir(parents=True, exist_ok=True)
        entry = build_audit_entry(request, outcome)
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        filename = f"check__{timestamp}__{_slug(request.check_id, fallback='check')}.json"
        path = self.logs_root / filename
        path.write_text(json.dumps(entry, indent=2, sort_keys=True), encoding="utf-8")
        LOGGER.debug("Wrote audit record %s", path)
        return path


def _json_safe(value: Any) -> Any:
    """Coerce complex objects into JSON-serialisable representations."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if is_dataclass(value):
        return _json_safe(asdict(value))
    if hasattr(value, "model_dump"):
        return _json_safe(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(key): _json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(item) for item in value]
    return str(value)


def _slug(value: str, *, fallback: str = "item", max_length: int = 80) -> str:
    """Normalise identifiers for use in log filenames."""
    cleaned = re.sub(r"[^A-Za-z0-9]+", "-", value).strip("-")
    slug = cleaned or fallback
    if len(slug) <= max_length:
        return slug
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix_length = max(max_length - len(digest) - 1, 1)
    prefix = slug[:prefix_length].rstrip("-") or slug[:prefix_length]
    return f"{prefix}-{digest}"


__all__ = [
    "AuditSink",
    "CheckRequest",
    "JsonAuditSink",
    "build_audit_entry",
    "context_stats",
]
