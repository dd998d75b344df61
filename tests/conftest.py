from __future__ import annotations

import json
import sys
import textwrap
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from threadline.models.llm_client import LLMClient, RawCompletion  # noqa: E402
from threadline.schema import DiffBundle, RuleDefinition  # noqa: E402
from threadline.tools.diff_filter import extract_files  # noqa: E402

_ENV_KEYS = (
    "VERCEL",
    "GITHUB_ACTIONS",
    "GITLAB_CI",
    "TF_BUILD",
    "BITBUCKET_BUILD_NUMBER",
    "GITHUB_EVENT_NAME",
    "GITHUB_BASE_REF",
    "GITHUB_HEAD_REF",
    "GITHUB_REF_NAME",
    "CI_MERGE_REQUEST_IID",
    "CI_COMMIT_REF_NAME",
    "VERCEL_GIT_COMMIT_SHA",
    "OPENAI_API_KEY",
    "OPENAI_MODEL",
    "THREADLINE_MODEL",
    "THREADLINE_TIMEOUT",
)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep CI markers of the machine running the tests out of the pipeline."""
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def make_rule(rule_id: str, patterns: List[str], body: str = "Follow the guideline.") -> RuleDefinition:
    return RuleDefinition(
        id=rule_id,
        version="1.0.0",
        patterns=tuple(patterns),
        body=body,
        source_path=f"threadlines/{rule_id}.md",
    )


def file_diff(path: str, added: List[str], removed: Optional[List[str]] = None) -> str:
    """Render a minimal single-hunk diff section for ``path``."""
    removed = removed or []
    lines = [
        f"diff --git a/{path} b/{path}\n",
        "index 1111111..2222222 100644\n",
        f"--- a/{path}\n",
        f"+++ b/{path}\n",
        f"@@ -1,{len(removed)} +1,{len(added)} @@\n",
    ]
    lines.extend(f"-{line}\n" for line in removed)
    lines.extend(f"+{line}\n" for line in added)
    return "".join(lines)


def make_bundle(*sections: str) -> DiffBundle:
    diff = "".join(sections)
    return DiffBundle(diff=diff, files=tuple(extract_files(diff)))


class StubClient(LLMClient):
    """In-process client answering from a callable and counting calls."""

    def __init__(
        self,
        responder: Optional[Callable[[Dict[str, Any]], Any]] = None,
        *,
        model: str = "stub-model",
        reported_model: Optional[str] = "stub-model-2024",
        max_attempts: int = 1,
    ) -> None:
        super().__init__(model, max_attempts=max_attempts, retry_delay=0.0)
        self._responder = responder or (lambda _: {"status": "compliant", "reasoning": "ok", "file_references": []})
        self._reported_model = reported_model
        self._lock = threading.Lock()
        self.calls: List[Dict[str, Any]] = []

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def _raw_invoke(self, payload: Dict[str, Any]) -> RawCompletion:
        with self._lock:
            self.calls.append(payload)
        answer = self._responder(payload)
        text = answer if isinstance(answer, str) else json.dumps(answer)
        return RawCompletion(
            text=text,
            model=self._reported_model,
            usage={"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
        )


@pytest.fixture()
def stub_client() -> StubClient:
    return StubClient()


def write_rule_file(
    repo_root: Path,
    name: str,
    *,
    rule_id: str,
    patterns: str = '  - "**/*.py"',
    version: str = "1.0.0",
    body: str = "Keep functions small.",
    extra: str = "",
) -> Path:
    directory = repo_root / "threadlines"
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    content = f"---\nid: {rule_id}\nversion: {version}\npatterns:\n{patterns}\n{extra}---\n{body}\n"
    path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture()
def git_repo(tmp_path: Path):
    """Create a small committed repository to diff against."""
    from threadline.tools.vcs import GitRepository

    repo_root = tmp_path / "repo"
    repo_root.mkdir()
    (repo_root / "app").mkdir()
    (repo_root / "app" / "main.py").write_text(
        textwrap.dedent(
            """
            def greet(name):
                return f"hello {name}"
            """
        ).lstrip(),
        encoding="utf-8",
    )
    (repo_root / "README.md").write_text("# Demo\n", encoding="utf-8")
    return GitRepository.initialise(repo_root)
