"""Evaluate a single threadline against the change under review."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .config import DEFAULT_CONTEXT_LINES
from .models import (
    LLMCancelledError,
    LLMClient,
    LLMClientError,
    LLMRequest,
    LLMResponseFormatError,
    LLMRetryError,
    LLMTransportError,
)
from .prompts import SYSTEM_PROMPT, build_rule_prompt
from .schema import (
    DiffBundle,
    ErrorKind,
    LLMCallMetrics,
    MODEL_STATUSES,
    RuleDefinition,
    RuleError,
    RuleOutcome,
    RuleStatus,
    TokenUsage,
    utc_now,
)
from .tools.diff_filter import extract_files, restrict_diff, shrink_context
from .tools.patterns import relevant_files

LOGGER = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.1


@dataclass(slots=True)
class RuleVerdict:
    """Structured answer requested from the model for one rule."""

    status: str
    reasoning: str = ""
    file_references: List[str] = field(default_factory=list)


@dataclass(slots=True)
class PreparedRule:
    """Relevance and diff reductions computed for one rule."""

    relevant_files: List[str]
    filtered_diff: str = ""
    files_in_filtered_diff: List[str] = field(default_factory=list)
    reduced_diff: str = ""

    @property
    def relevant(self) -> bool:
        return bool(self.relevant_files)


def prepare_rule(rule: RuleDefinition, bundle: DiffBundle, *, context_lines: int) -> PreparedRule:
    """Match the rule's patterns and derive the diffs sent to the model."""
    matched = relevant_files(bundle.files, rule.patterns)
    if not matched:
        return PreparedRule(relevant_files=[])
    filtered = restrict_diff(bundle.diff, matched)
    return PreparedRule(
        relevant_files=matched,
        filtered_diff=filtered,
        files_in_filtered_diff=extract_files(filtered),
        reduced_diff=shrink_context(filtered, context_lines),
    )


def not_relevant_outcome(rule: RuleDefinition) -> RuleOutcome:
    """Outcome for a rule whose patterns matched none of the changed files."""
    return RuleOutcome(
        rule_id=rule.id,
        status=RuleStatus.NOT_RELEVANT,
        reasoning=f"No files match threadline patterns: {', '.join(rule.patterns)}",
    )


def evaluate_rule(
    rule: RuleDefinition,
    bundle: DiffBundle,
    client: LLMClient,
    *,
    context_lines: int = DEFAULT_CONTEXT_LINES,
    temperature: float = DEFAULT_TEMPERATURE,
    cancel: Optional[threading.Event] = None,
) -> RuleOutcome:
    """Judge ``bundle`` against ``rule``; failures come back as ``error`` outcomes.

    Rules whose patterns match none of the changed files are answered
    without calling ``client``.
    """
    try:
        prepared = prepare_rule(rule, bundle, context_lines=context_lines)
    except Exception as error:  # pragma: no cover
        LOGGER.exception("Failed to prepare threadline %s", rule.id)
        return RuleOutcome(
            rule_id=rule.id,
            status=RuleStatus.ERROR,
            reasoning=f"Error: {error}",
            error=RuleError(message=str(error), kind=ErrorKind.UNEXPECTED),
        )

    if not prepared.relevant:
        LOGGER.info("%s: no files matched patterns %s", rule.id, ", ".join(rule.patterns))
        return not_relevant_outcome(rule)

    LOGGER.info(
        "%s: %d relevant file(s), %d file(s) in filtered diff",
        rule.id,
        len(prepared.relevant_files),
        len(prepared.files_in_filtered_diff),
    )

    request = LLMRequest(
        prompt=build_rule_prompt(rule, prepared.reduced_diff, prepared.files_in_filtered_diff),
        response_model=RuleVerdict,
        system_prompt=SYSTEM_PROMPT,
        metadata={"rule_id": rule.id, "rule_version": rule.version},
        temperature=temperature,
    )

    started_at = utc_now()
    started = time.perf_counter()
    try:
        result = client.invoke_structured(request, cancel=cancel)
    except Exception as error:
        finished_at = utc_now()
        kind, raw = _classify_error(error)
        if kind is ErrorKind.UNEXPECTED:
            LOGGER.exception("Unexpected failure evaluating %s", rule.id)
        else:
            LOGGER.warning("%s: model call failed (%s): %s", rule.id, kind.value, error)
        return RuleOutcome(
            rule_id=rule.id,
            status=RuleStatus.ERROR,
            reasoning=f"Error: {error}",
            relevant_files=prepared.relevant_files,
            filtered_diff=prepared.filtered_diff,
            files_in_filtered_diff=prepared.files_in_filtered_diff,
            error=RuleError(message=str(error) or type(error).__name__, kind=kind, raw_response=raw),
            metrics=LLMCallMetrics(
                started_at=started_at,
                finished_at=finished_at,
                response_time_ms=_elapsed_ms(started),
                status="timeout" if kind is ErrorKind.TIMEOUT else "error",
                error_message=str(error) or None,
            ),
        )

    metrics = LLMCallMetrics(
        started_at=started_at,
        finished_at=utc_now(),
        response_time_ms=_elapsed_ms(started),
        tokens=_token_usage(result.usage),
    )
    verdict: RuleVerdict = result.value
    status = (verdict.status or "").strip().lower()
    if status not in MODEL_STATUSES:
        LOGGER.warning("%s: model returned unknown status %r", rule.id, verdict.status)
        message = f"Model returned invalid status: {verdict.status!r}"
        return RuleOutcome(
            rule_id=rule.id,
            status=RuleStatus.ERROR,
            reasoning=f"Error: {message}",
            relevant_files=prepared.relevant_files,
            filtered_diff=prepared.filtered_diff,
            files_in_filtered_diff=prepared.files_in_filtered_diff,
            error=RuleError(message=message, kind=ErrorKind.INVALID_STATUS, raw_response=result.data),
            metrics=metrics,
            model=result.model,
        )

    references = _validated_references(rule, verdict.file_references, prepared.reduced_diff)
    if status == RuleStatus.ATTENTION.value and not references:
        LOGGER.error(
            "%s: model returned 'attention' without file references; reporting none",
            rule.id,
        )

    return RuleOutcome(
        rule_id=rule.id,
        status=RuleStatus(status),
        reasoning=verdict.reasoning or None,
        file_references=references,
        relevant_files=prepared.relevant_files,
        filtered_diff=prepared.filtered_diff,
        files_in_filtered_diff=prepared.files_in_filtered_diff,
        metrics=metrics,
        model=result.model,
    )


def _validated_references(rule: RuleDefinition, references: List[str], reduced_diff: str) -> List[str]:
    """Keep only references to files that were actually sent to the model."""
    allowed = set(extract_files(reduced_diff))
    kept: List[str] = []
    for reference in references:
        if not isinstance(reference, str):
            continue
        path = reference.strip()
        if path in allowed and path not in kept:
            kept.append(path)
    if len(kept) != len(references):
        LOGGER.warning(
            "%s: model gave %d file reference(s), %d match the files it was shown",
            rule.id,
            len(references),
            len(kept),
        )
    return kept


def _classify_error(error: Exception) -> tuple[ErrorKind, Any]:
    if isinstance(error, LLMCancelledError):
        return ErrorKind.TIMEOUT, None
    if isinstance(error, LLMTransportError):
        return ErrorKind.TRANSPORT, error.body
    if isinstance(error, LLMResponseFormatError):
        return ErrorKind.RESPONSE_FORMAT, error.raw
    if isinstance(error, LLMRetryError):
        last = error.last_error
        if isinstance(last, LLMTransportError):
            return ErrorKind.TRANSPORT, last.body
        if isinstance(last, LLMResponseFormatError):
            return ErrorKind.RESPONSE_FORMAT, last.raw
        if isinstance(last, ValidationError):
            return ErrorKind.RESPONSE_FORMAT, _error_detail(last)
        return ErrorKind.RETRY_EXHAUSTED, _error_detail(last)
    if isinstance(error, LLMClientError):
        return ErrorKind.RETRY_EXHAUSTED, None
    return ErrorKind.UNEXPECTED, None


def _error_detail(error: Optional[Exception]) -> Optional[Dict[str, str]]:
    if error is None:
        return None
    return {"type": type(error).__name__, "message": str(error)[:500]}


def _token_usage(usage: Optional[Dict[str, int]]) -> Optional[TokenUsage]:
    if not usage:
        return None
    return TokenUsage(
        prompt_tokens=int(usage.get("prompt_tokens") or 0),
        completion_tokens=int(usage.get("completion_tokens") or 0),
        total_tokens=int(usage.get("total_tokens") or 0),
    )


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


__all__ = [
    "DEFAULT_TEMPERATURE",
    "PreparedRule",
    "RuleVerdict",
    "evaluate_rule",
    "not_relevant_outcome",
    "prepare_rule",
]
