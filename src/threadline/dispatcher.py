"""Fan rule evaluations out concurrently and aggregate their outcomes.

Each rule owns a single result slot. The evaluation thread and a per-rule
timer race to fill it; whichever resolves the slot first wins and the other
side becomes a no-op. A timed-out evaluation is signalled through its cancel
event and is never waited on again.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence

from .audit import AuditSink, CheckRequest
from .config import DEFAULT_CONTEXT_LINES, DEFAULT_RULE_TIMEOUT
from .evaluator import DEFAULT_TEMPERATURE, evaluate_rule
from .models import LLMClient
from .schema import (
    CheckOutcome,
    CheckSummary,
    DiffBundle,
    ErrorKind,
    LLMCallMetrics,
    RuleDefinition,
    RuleError,
    RuleOutcome,
    RuleStatus,
    utc_now,
)
from .tools.patterns import relevant_files

LOGGER = logging.getLogger(__name__)

NO_CHANGES_REASONING = "No code changes detected"
NO_CHANGES_MESSAGE = "No code changes detected. Diff contains zero lines added or removed."
NO_RULES_MESSAGE = "No valid threadlines to check."
NO_SUCCESS_SUFFIX = "(no successful responses)"


class _OutcomeSlot:
    """Single-assignment holder for one rule's outcome."""

    __slots__ = ("rule", "files", "cancel", "started_at", "timer", "_lock", "_done", "_outcome")

    def __init__(self, rule: RuleDefinition, files: Sequence[str]) -> None:
        self.rule = rule
        self.files = files
        self.cancel = threading.Event()
        self.started_at = utc_now()
        self.timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._outcome: Optional[RuleOutcome] = None

    def resolve(self, outcome: RuleOutcome) -> bool:
        """Store ``outcome`` unless the slot is already filled; report whether it was stored."""
        with self._lock:
            if self._outcome is not None:
                return False
            self._outcome = outcome
        self._done.set()
        return True

    def wait(self) -> RuleOutcome:
        self._done.wait()
        assert self._outcome is not None
        return self._outcome


class CheckRunner:
    """Evaluate a rule set against one diff with a uniform per-rule timeout.

    The injected ``client`` is shared by every evaluation and stays owned by
    the caller; the runner never closes it.
    """

    def __init__(
        self,
        client: LLMClient,
        *,
        timeout: float = DEFAULT_RULE_TIMEOUT,
        context_lines: int = DEFAULT_CONTEXT_LINES,
        temperature: float = DEFAULT_TEMPERATURE,
        max_workers: Optional[int] = None,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        if context_lines < 0:
            raise ValueError("context_lines must be non-negative")
        if max_workers is not None and max_workers <= 0:
            raise ValueError("max_workers must be positive")
        self._client = client
        self._timeout = timeout
        self._context_lines = context_lines
        self._temperature = temperature
        self._max_workers = max_workers

    @property
    def timeout(self) -> float:
        return self._timeout

    def run(self, rules: Sequence[RuleDefinition], bundle: DiffBundle) -> CheckOutcome:
        """Return one outcome per rule, in the order ``rules`` were given."""
        rules = list(rules)
        requested_model = self._client.model
        if not rules:
            return CheckOutcome(model=requested_model, message=NO_RULES_MESSAGE)

        if bundle.is_empty:
            LOGGER.info("Empty diff; marking %d threadline(s) not relevant", len(rules))
            outcomes = [
                RuleOutcome(
                    rule_id=rule.id,
                    status=RuleStatus.NOT_RELEVANT,
                    reasoning=NO_CHANGES_REASONING,
                )
                for rule in rules
            ]
            return CheckOutcome(
                outcomes=outcomes,
                summary=summarise(outcomes),
                model=requested_model,
                message=NO_CHANGES_MESSAGE,
            )

        outcomes = self._dispatch(rules, bundle)
        return CheckOutcome(
            outcomes=outcomes,
            summary=summarise(outcomes),
            model=reported_model(outcomes, requested_model),
        )

    def _dispatch(self, rules: List[RuleDefinition], bundle: DiffBundle) -> List[RuleOutcome]:
        slots = [_OutcomeSlot(rule, bundle.files) for rule in rules]
        workers = self._max_workers or len(slots)
        LOGGER.info(
            "Evaluating %d threadline(s) with %d worker(s), %.0fs timeout each",
            len(slots),
            workers,
            self._timeout,
        )
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="threadline-rule")
        try:
            for slot in slots:
                slot.timer = threading.Timer(self._timeout, self._expire, args=(slot,))
                slot.timer.daemon = True
                slot.timer.start()
                executor.submit(self._evaluate, slot, bundle)
            return [slot.wait() for slot in slots]
        finally:
            for slot in slots:
                if slot.timer is not None:
                    slot.timer.cancel()
            executor.shutdown(wait=False, cancel_futures=True)

    def _evaluate(self, slot: _OutcomeSlot, bundle: DiffBundle) -> None:
        if slot.cancel.is_set():
            return
        try:
            outcome = evaluate_rule(
                slot.rule,
                bundle,
                self._client,
                context_lines=self._context_lines,
                temperature=self._temperature,
                cancel=slot.cancel,
            )
        except Exception as error:  # pragma: no cover - evaluate_rule reports its own failures
            LOGGER.exception("Evaluation of %s raised", slot.rule.id)
            outcome = RuleOutcome(
                rule_id=slot.rule.id,
                status=RuleStatus.ERROR,
                reasoning=f"Error: {error}",
                error=RuleError(message=str(error), kind=ErrorKind.UNEXPECTED),
            )
        if slot.resolve(outcome):
            if slot.timer is not None:
                slot.timer.cancel()
            LOGGER.info("%s: %s", slot.rule.id, outcome.status.value)
        else:
            LOGGER.debug("%s: result arrived after timeout; discarded", slot.rule.id)

    def _expire(self, slot: _OutcomeSlot) -> None:
        outcome = self._timeout_outcome(slot)
        if slot.resolve(outcome):
            slot.cancel.set()
            LOGGER.warning("%s: timed out after %ss", slot.rule.id, _seconds(self._timeout))

    def _timeout_outcome(self, slot: _OutcomeSlot) -> RuleOutcome:
        message = f"Request timed out after {_seconds(self._timeout)}s"
        finished_at = utc_now()
        elapsed = int((finished_at - slot.started_at).total_seconds() * 1000)
        return RuleOutcome(
            rule_id=slot.rule.id,
            status=RuleStatus.ERROR,
            reasoning=message,
            relevant_files=relevant_files(slot.files, slot.rule.patterns),
            error=RuleError(message=message, kind=ErrorKind.TIMEOUT),
            metrics=LLMCallMetrics(
                started_at=slot.started_at,
                finished_at=finished_at,
                response_time_ms=elapsed,
                status="timeout",
                error_message=message,
            ),
        )


def run_check(
    rules: Sequence[RuleDefinition],
    bundle: DiffBundle,
    client: LLMClient,
    *,
    timeout: float = DEFAULT_RULE_TIMEOUT,
    context_lines: int = DEFAULT_CONTEXT_LINES,
    temperature: float = DEFAULT_TEMPERATURE,
    max_workers: Optional[int] = None,
    audit: Optional[AuditSink] = None,
    request: Optional[CheckRequest] = None,
) -> CheckOutcome:
    """Run the check pipeline and hand the finished outcome to ``audit``."""
    runner = CheckRunner(
        client,
        timeout=timeout,
        context_lines=context_lines,
        temperature=temperature,
        max_workers=max_workers,
    )
    outcome = runner.run(rules, bundle)
    if audit is not None:
        record = request or CheckRequest(rules=list(rules), bundle=bundle)
        try:
            audit.record(record, outcome)
        except Exception:
            LOGGER.exception("Audit sink failed; check outcome is unaffected")
    return outcome


def summarise(outcomes: Sequence[RuleOutcome]) -> CheckSummary:
    """Count completed, timed-out and errored outcomes."""
    summary = CheckSummary(total=len(outcomes))
    for outcome in outcomes:
        if outcome.status is not RuleStatus.ERROR:
            summary.completed += 1
        elif outcome.timed_out:
            summary.timed_out += 1
        else:
            summary.errors += 1
    return summary


def reported_model(outcomes: Sequence[RuleOutcome], requested: str) -> str:
    """Model of the first successful call, else the requested model annotated."""
    for outcome in outcomes:
        if outcome.status is not RuleStatus.ERROR and outcome.model:
            return outcome.model
    if any(outcome.metrics is not None for outcome in outcomes):
        return f"{requested} {NO_SUCCESS_SUFFIX}"
    return requested


def _seconds(value: float) -> str:
    return f"{value:g}"


__all__ = [
    "CheckRunner",
    "NO_CHANGES_MESSAGE",
    "NO_CHANGES_REASONING",
    "run_check",
    "reported_model",
    "summarise",
]
