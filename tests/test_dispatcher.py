from __future__ import annotations

import socket
import threading
import time
from typing import Any, Dict, List

import pytest

from conftest import StubClient, file_diff, make_bundle, make_rule
from threadline.audit import CheckRequest
from threadline.config import CheckSettings, build_client
from threadline.dispatcher import NO_CHANGES_MESSAGE, CheckRunner, run_check
from threadline.models import LLMTransportError
from threadline.schema import CheckOutcome, DiffBundle, ErrorKind, RuleStatus


def _rule_id(payload: Dict[str, Any]) -> str:
    return payload["metadata"]["rule_id"]


@pytest.fixture()
def release() -> threading.Event:
    event = threading.Event()
    yield event
    event.set()


def _bundle() -> DiffBundle:
    return make_bundle(
        file_diff("src/a.py", ["x = 1"]),
        file_diff("db/q.sql", ["select 1;"]),
        file_diff("web/app.ts", ["let y = 2;"]),
    )


def test_outcomes_follow_rule_order_not_completion_order() -> None:
    delays = {"slow": 0.3, "medium": 0.15, "fast": 0.0}

    def responder(payload: Dict[str, Any]) -> Dict[str, Any]:
        time.sleep(delays[_rule_id(payload)])
        return {"status": "compliant", "reasoning": _rule_id(payload), "file_references": []}

    client = StubClient(responder)
    rules = [make_rule("slow", ["src/*.py"]), make_rule("medium", ["db/*.sql"]), make_rule("fast", ["web/*.ts"])]

    outcome = CheckRunner(client, timeout=5).run(rules, _bundle())

    assert [item.rule_id for item in outcome.outcomes] == ["slow", "medium", "fast"]
    assert [item.reasoning for item in outcome.outcomes] == ["slow", "medium", "fast"]
    assert outcome.summary.completed == 3


def test_one_outcome_per_rule_and_not_relevant_costs_nothing() -> None:
    client = StubClient()
    rules = [make_rule("py", ["src/*.py"]), make_rule("go", ["**/*.go"]), make_rule("sql", ["**/*.sql"])]

    outcome = CheckRunner(client, timeout=5).run(rules, _bundle())

    assert len(outcome.outcomes) == len(rules)
    statuses = {item.rule_id: item.status for item in outcome.outcomes}
    assert statuses == {
        "py": RuleStatus.COMPLIANT,
        "go": RuleStatus.NOT_RELEVANT,
        "sql": RuleStatus.COMPLIANT,
    }
    assert sorted(_rule_id(call) for call in client.calls) == ["py", "sql"]


def test_empty_diff_short_circuits_without_calls() -> None:
    client = StubClient()
    rules = [make_rule("a", ["**"]), make_rule("b", ["*.py"])]

    outcome = CheckRunner(client, timeout=5).run(rules, DiffBundle(diff="", files=()))

    assert client.call_count == 0
    assert all(item.status is RuleStatus.NOT_RELEVANT for item in outcome.outcomes)
    assert all(item.reasoning == "No code changes detected" for item in outcome.outcomes)
    assert outcome.summary.completed == outcome.summary.total == 2
    assert outcome.message == NO_CHANGES_MESSAGE
    assert outcome.model == "stub-model"


def test_timeout_yields_error_for_that_rule_only(release: threading.Event) -> None:
    def responder(payload: Dict[str, Any]) -> Dict[str, Any]:
        if _rule_id(payload) == "hang":
            release.wait(10)
        return {"status": "compliant", "reasoning": "ok", "file_references": []}

    client = StubClient(responder)
    rules = [make_rule("hang", ["src/*.py"]), make_rule("quick", ["db/*.sql"])]

    started = time.monotonic()
    outcome = CheckRunner(client, timeout=0.5).run(rules, _bundle())
    elapsed = time.monotonic() - started

    hang, quick = outcome.outcomes
    assert hang.status is RuleStatus.ERROR
    assert hang.error is not None and hang.error.kind is ErrorKind.TIMEOUT
    assert hang.reasoning == "Request timed out after 0.5s"
    assert hang.relevant_files == ["src/a.py"]
    assert hang.metrics is not None and hang.metrics.status == "timeout"
    assert quick.status is RuleStatus.COMPLIANT
    assert outcome.summary.model_dump() == {"total": 2, "completed": 1, "timed_out": 1, "errors": 0}
    assert elapsed >= 0.5
    assert outcome.model == "stub-model-2024"


def test_late_result_does_not_replace_timeout(release: threading.Event) -> None:
    finished = threading.Event()

    def responder(payload: Dict[str, Any]) -> Dict[str, Any]:
        release.wait(10)
        finished.set()
        return {"status": "attention", "reasoning": "late", "file_references": ["src/a.py"]}

    client = StubClient(responder)
    outcome = CheckRunner(client, timeout=0.2).run([make_rule("r", ["src/*.py"])], _bundle())

    release.set()
    assert finished.wait(5)
    time.sleep(0.05)

    assert outcome.outcomes[0].status is RuleStatus.ERROR
    assert outcome.outcomes[0].timed_out
    assert not outcome.needs_attention


def test_queued_rule_times_out_without_being_called(release: threading.Event) -> None:
    def responder(payload: Dict[str, Any]) -> Dict[str, Any]:
        release.wait(10)
        return {"status": "compliant", "reasoning": "ok", "file_references": []}

    client = StubClient(responder)
    rules = [make_rule("first", ["src/*.py"]), make_rule("queued", ["db/*.sql"])]

    outcome = CheckRunner(client, timeout=0.3, max_workers=1).run(rules, _bundle())

    assert [item.timed_out for item in outcome.outcomes] == [True, True]
    assert [_rule_id(call) for call in client.calls] == ["first"]
    assert outcome.summary.timed_out == 2


def test_all_failures_annotate_requested_model() -> None:
    def responder(_: Dict[str, Any]) -> Dict[str, Any]:
        raise LLMTransportError("HTTP 503", status_code=503)

    client = StubClient(responder)
    rules = [make_rule("a", ["src/*.py"]), make_rule("b", ["db/*.sql"])]

    outcome = CheckRunner(client, timeout=5).run(rules, _bundle())

    assert outcome.summary.errors == 2
    assert outcome.summary.completed == 0
    assert outcome.model == "stub-model (no successful responses)"


def test_model_is_requested_model_when_nothing_was_called() -> None:
    client = StubClient()

    outcome = CheckRunner(client, timeout=5).run([make_rule("go", ["**/*.go"])], _bundle())

    assert outcome.model == "stub-model"
    assert outcome.summary.completed == 1


def test_no_rules_returns_empty_outcome() -> None:
    outcome = CheckRunner(StubClient(), timeout=5).run([], _bundle())

    assert outcome.outcomes == []
    assert outcome.summary.total == 0


def test_runner_rejects_invalid_limits() -> None:
    with pytest.raises(ValueError):
        CheckRunner(StubClient(), timeout=0)
    with pytest.raises(ValueError):
        CheckRunner(StubClient(), max_workers=0)


class _RecordingSink:
    def __init__(self) -> None:
        self.records: List[CheckOutcome] = []

    def record(self, request: CheckRequest, outcome: CheckOutcome) -> None:
        self.records.append(outcome)


class _FailingSink:
    def record(self, request: CheckRequest, outcome: CheckOutcome) -> None:
        raise OSError("disk full")


def test_run_check_hands_outcome_to_audit_sink() -> None:
    sink = _RecordingSink()

    outcome = run_check([make_rule("py", ["src/*.py"])], _bundle(), StubClient(), timeout=5, audit=sink)

    assert sink.records == [outcome]


def test_audit_failure_does_not_alter_outcome() -> None:
    rules = [make_rule("py", ["src/*.py"])]
    expected = run_check(rules, _bundle(), StubClient(), timeout=5)

    outcome = run_check(rules, _bundle(), StubClient(), timeout=5, audit=_FailingSink())

    assert outcome.summary == expected.summary
    assert [item.status for item in outcome.outcomes] == [RuleStatus.COMPLIANT]


def test_abandoned_http_call_ends_with_its_rule() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
        # Accepts connections but never answers.
        server.bind(("127.0.0.1", 0))
        server.listen()
        port = server.getsockname()[1]
        settings = CheckSettings(
            model="gpt-4o-mini",
            base_url=f"http://127.0.0.1:{port}/v1/responses",
            request_timeout=30.0,
            rule_timeout=0.5,
            max_attempts=1,
        )
        client = build_client(settings, api_key="sk-test")

        started = time.monotonic()
        outcome = CheckRunner(client, timeout=settings.rule_timeout).run([make_rule("py", ["src/*.py"])], _bundle())
        workers = [thread for thread in threading.enumerate() if thread.name.startswith("threadline-rule")]
        for worker in workers:
            worker.join(5)

        assert outcome.outcomes[0].status is RuleStatus.ERROR
        assert not any(worker.is_alive() for worker in workers)
        assert time.monotonic() - started < 5
