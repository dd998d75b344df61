from __future__ import annotations

import json
from pathlib import Path

from conftest import file_diff, make_bundle, make_rule
from threadline.acquisition import ReviewMetadata
from threadline.audit import CheckRequest, JsonAuditSink, context_stats
from threadline.environment import Environment
from threadline.schema import CheckOutcome, CheckSummary, RuleDefinition, RuleOutcome, RuleStatus


def _outcome() -> CheckOutcome:
    return CheckOutcome(
        outcomes=[
            RuleOutcome(
                rule_id="py",
                status=RuleStatus.ATTENTION,
                reasoning="Missing docstring.",
                file_references=["src/a.py"],
                relevant_files=["src/a.py"],
            )
        ],
        summary=CheckSummary(total=1, completed=1),
        model="gpt-4o-mini-2024-07-18",
    )


def test_context_stats_counts_files_and_lines() -> None:
    rule = RuleDefinition(
        id="r",
        version="1.0.0",
        patterns=("**",),
        body="b",
        source_path="threadlines/r.md",
        context_files=("a.md", "b.md"),
        context_content={"a.md": "one\ntwo\n", "b.md": "three"},
    )

    assert context_stats([rule, make_rule("plain", ["*"])]) == {"files": 2, "lines": 3}


def test_json_sink_writes_one_document_per_run(tmp_path: Path) -> None:
    bundle = make_bundle(file_diff("src/a.py", ["x = 1", "y = 2"], ["z = 0"]))
    request = CheckRequest(
        rules=[make_rule("py", ["src/*.py"])],
        bundle=bundle,
        environment=Environment.GITHUB,
        metadata=ReviewMetadata(commit_sha="abc123", branch_name="feature"),
        check_id="run-1",
    )
    sink = JsonAuditSink(tmp_path / "logs")

    path = sink.record(request, _outcome())

    assert path.parent == tmp_path / "logs"
    assert path.name.startswith("check__") and path.name.endswith("__run-1.json")
    entry = json.loads(path.read_text(encoding="utf-8"))
    assert entry["environment"] == "github"
    assert entry["metadata"]["commit_sha"] == "abc123"
    assert entry["diff_stats"] == {"added": 2, "removed": 1, "total": 3, "files": 1}
    assert entry["threadlines"][0]["id"] == "py"
    assert entry["outcome"]["outcomes"][0]["status"] == "attention"
    assert entry["outcome"]["model"] == "gpt-4o-mini-2024-07-18"
