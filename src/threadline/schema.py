"""Typed records produced and consumed by the threadline check pipeline."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class FrozenRecord(BaseModel):
    """Immutable record shared read-only between concurrent evaluations."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class RuleStatus(str, Enum):
    """Closed set of verdicts a rule evaluation can end in."""

    COMPLIANT = "compliant"
    ATTENTION = "attention"
    NOT_RELEVANT = "not_relevant"
    ERROR = "error"


MODEL_STATUSES = frozenset(
    {RuleStatus.COMPLIANT.value, RuleStatus.ATTENTION.value, RuleStatus.NOT_RELEVANT.value}
)


class ErrorKind(str, Enum):
    """Classification attached to ``error`` outcomes."""

    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    RESPONSE_FORMAT = "response_format"
    INVALID_STATUS = "invalid_status"
    RETRY_EXHAUSTED = "retry_exhausted"
    CONFIGURATION = "configuration"
    UNEXPECTED = "unexpected"


class RuleDefinition(FrozenRecord):
    """A single threadline parsed from a rule file."""

    id: str
    version: str
    patterns: Tuple[str, ...]
    body: str
    source_path: str
    context_files: Tuple[str, ...] = ()
    context_content: Dict[str, str] = Field(default_factory=dict)


class DiffBundle(FrozenRecord):
    """Unified diff for a change plus the files it touches."""

    diff: str = ""
    files: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.diff.strip()


class RuleError(RecordModel):
    """Structured upstream failure attached to an ``error`` outcome."""

    message: str
    kind: ErrorKind = ErrorKind.UNEXPECTED
    raw_response: Optional[Any] = None


class TokenUsage(RecordModel):
    """Token accounting reported by the model provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class LLMCallMetrics(RecordModel):
    """Timing and token metrics captured around one model call."""

    started_at: datetime
    finished_at: datetime
    response_time_ms: int
    tokens: Optional[TokenUsage] = None
    status: str = "success"
    error_message: Optional[str] = None


class RuleOutcome(RecordModel):
    """Result of evaluating one rule against the change."""

    rule_id: str
    status: RuleStatus
    reasoning: Optional[str] = None
    file_references: List[str] = Field(default_factory=list)
    relevant_files: List[str] = Field(default_factory=list)
    filtered_diff: str = ""
    files_in_filtered_diff: List[str] = Field(default_factory=list)
    error: Optional[RuleError] = None
    metrics: Optional[LLMCallMetrics] = None
    model: Optional[str] = None

    @property
    def timed_out(self) -> bool:
        return (
            self.status is RuleStatus.ERROR
            and self.error is not None
            and self.error.kind is ErrorKind.TIMEOUT
        )


class CheckSummary(RecordModel):
    """Counts describing how each rule slot resolved."""

    total: int = 0
    completed: int = 0
    timed_out: int = 0
    errors: int = 0


class CheckOutcome(RecordModel):
    """Aggregate result of one check run."""

    outcomes: List[RuleOutcome] = Field(default_factory=list)
    summary: CheckSummary = Field(default_factory=CheckSummary)
    model: str
    message: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)

    def by_status(self, status: RuleStatus) -> List[RuleOutcome]:
        """Return outcomes with ``status`` preserving rule order."""
        return [outcome for outcome in self.outcomes if outcome.status is status]

    @property
    def needs_attention(self) -> bool:
        return any(outcome.status is RuleStatus.ATTENTION for outcome in self.outcomes)


__all__ = [
    "CheckOutcome",
    "CheckSummary",
    "DiffBundle",
    "ErrorKind",
    "FrozenRecord",
    "LLMCallMetrics",
    "MODEL_STATUSES",
    "RecordModel",
    "RuleDefinition",
    "RuleError",
    "RuleOutcome",
    "RuleStatus",
    "TokenUsage",
    "utc_now",
]
