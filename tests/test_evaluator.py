from __future__ import annotations

from typing import Any, Dict

from conftest import StubClient, file_diff, make_bundle, make_rule
from threadline.evaluator import evaluate_rule, prepare_rule
from threadline.models import LLMTransportError
from threadline.prompts import SYSTEM_PROMPT
from threadline.schema import ErrorKind, RuleDefinition, RuleStatus


def test_unmatched_rule_is_not_relevant_without_model_call() -> None:
    client = StubClient()
    rule = make_rule("r1", ["**/*.sql"])
    bundle = make_bundle(file_diff("app.ts", ["const x = 1;"]))

    outcome = evaluate_rule(rule, bundle, client)

    assert outcome.status is RuleStatus.NOT_RELEVANT
    assert "**/*.sql" in (outcome.reasoning or "")
    assert outcome.relevant_files == []
    assert outcome.files_in_filtered_diff == []
    assert outcome.filtered_diff == ""
    assert client.call_count == 0


def test_prompt_contains_only_relevant_files_and_context() -> None:
    client = StubClient()
    rule = RuleDefinition(
        id="sql-style",
        version="1.0.0",
        patterns=("**/*.sql",),
        body="Uppercase SQL keywords.",
        source_path="threadlines/sql.md",
        context_files=("docs/sql.md",),
        context_content={"docs/sql.md": "Keywords are uppercase."},
    )
    bundle = make_bundle(
        file_diff("db/q.sql", ["select 1;"]),
        file_diff("app/main.py", ["print('hi')"]),
    )

    outcome = evaluate_rule(rule, bundle, client, temperature=0.1)

    assert outcome.status is RuleStatus.COMPLIANT
    assert outcome.relevant_files == ["db/q.sql"]
    assert outcome.files_in_filtered_diff == ["db/q.sql"]
    assert "app/main.py" not in outcome.filtered_diff
    payload = client.calls[0]
    system_text = payload["input"][0]["content"][0]["text"]
    user_text = payload["input"][1]["content"][0]["text"]
    assert system_text == SYSTEM_PROMPT
    assert "focused EXCLUSIVELY on: sql-style" in user_text
    assert "Uppercase SQL keywords." in user_text
    assert "--- docs/sql.md ---\nKeywords are uppercase." in user_text
    assert "+select 1;" in user_text
    assert "print('hi')" not in user_text
    assert payload["metadata"]["rule_id"] == "sql-style"


def test_file_references_outside_the_diff_are_dropped() -> None:
    def responder(_: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "status": "attention",
            "reasoning": "Violations found.",
            "file_references": ["src/a.py", "src/invented.py", "README.md"],
        }

    client = StubClient(responder)
    bundle = make_bundle(file_diff("src/a.py", ["x = 1"]), file_diff("README.md", ["docs"]))

    outcome = evaluate_rule(make_rule("r", ["src/*.py"]), bundle, client)

    assert outcome.status is RuleStatus.ATTENTION
    assert outcome.file_references == ["src/a.py"]


def test_attention_without_references_is_accepted_empty() -> None:
    client = StubClient(lambda _: {"status": "attention", "reasoning": "Something is off."})
    bundle = make_bundle(file_diff("src/a.py", ["x = 1"]))

    outcome = evaluate_rule(make_rule("r", ["src/*.py"]), bundle, client)

    assert outcome.status is RuleStatus.ATTENTION
    assert outcome.file_references == []
    assert outcome.error is None


def test_unknown_status_becomes_error_outcome() -> None:
    client = StubClient(lambda _: {"status": "maybe", "reasoning": "unsure", "file_references": []})
    bundle = make_bundle(file_diff("src/a.py", ["x = 1"]))

    outcome = evaluate_rule(make_rule("r", ["src/*.py"]), bundle, client)

    assert outcome.status is RuleStatus.ERROR
    assert outcome.error is not None
    assert outcome.error.kind is ErrorKind.INVALID_STATUS
    assert outcome.error.raw_response["status"] == "maybe"
    assert outcome.relevant_files == ["src/a.py"]


def test_transport_failure_becomes_error_outcome() -> None:
    def responder(_: Dict[str, Any]) -> Dict[str, Any]:
        raise LLMTransportError("HTTP 500: upstream", status_code=500, body={"error": "boom"})

    client = StubClient(responder)
    bundle = make_bundle(file_diff("src/a.py", ["x = 1"]))

    outcome = evaluate_rule(make_rule("r", ["src/*.py"]), bundle, client)

    assert outcome.status is RuleStatus.ERROR
    assert outcome.error is not None
    assert outcome.error.kind is ErrorKind.TRANSPORT
    assert outcome.error.raw_response == {"error": "boom"}
    assert outcome.metrics is not None
    assert outcome.metrics.status == "error"
    assert outcome.model is None


def test_malformed_response_becomes_error_outcome() -> None:
    client = StubClient(lambda _: "I think it is fine")
    bundle = make_bundle(file_diff("src/a.py", ["x = 1"]))

    outcome = evaluate_rule(make_rule("r", ["src/*.py"]), bundle, client)

    assert outcome.status is RuleStatus.ERROR
    assert outcome.error is not None
    assert outcome.error.kind is ErrorKind.RESPONSE_FORMAT
    assert outcome.error.raw_response == "I think it is fine"


def test_success_records_metrics_and_model() -> None:
    client = StubClient()
    bundle = make_bundle(file_diff("src/a.py", ["x = 1"]))

    outcome = evaluate_rule(make_rule("r", ["src/*.py"]), bundle, client)

    assert outcome.model == "stub-model-2024"
    assert outcome.metrics is not None
    assert outcome.metrics.status == "success"
    assert outcome.metrics.tokens is not None
    assert outcome.metrics.tokens.total_tokens == 15
    assert outcome.metrics.finished_at >= outcome.metrics.started_at


def test_prepare_rule_shrinks_what_the_model_sees() -> None:
    lines = [
        "diff --git a/src/a.py b/src/a.py\n",
        "--- a/src/a.py\n",
        "+++ b/src/a.py\n",
        "@@ -1,30 +1,31 @@\n",
    ]
    lines.extend(f" line {number}\n" for number in range(15))
    lines.append("+inserted\n")
    lines.extend(f" line {number}\n" for number in range(15, 30))
    diff = "".join(lines)
    bundle = make_bundle(diff, file_diff("docs/x.md", ["doc"]))

    prepared = prepare_rule(make_rule("r", ["src/*.py"]), bundle, context_lines=2)

    assert prepared.filtered_diff == diff
    assert prepared.files_in_filtered_diff == ["src/a.py"]
    assert "@@ -14,4 +14,5 @@\n" in prepared.reduced_diff
    assert " line 12\n" not in prepared.reduced_diff
    assert " line 13\n" in prepared.reduced_diff and " line 16\n" in prepared.reduced_diff
    assert " line 17\n" not in prepared.reduced_diff
