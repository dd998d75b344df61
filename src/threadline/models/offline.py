"""Offline client that answers every rule without touching the network."""

from __future__ import annotations

import json
from typing import Any, Dict

from .llm_client import LLMClient, RawCompletion

__all__ = ["OfflineClient", "is_offline_model"]


def is_offline_model(name: str) -> bool:
    """Return ``True`` for model names that select the offline client."""
    key = name.strip().lower()
    return key == "offline" or key.endswith("-offline")


class OfflineClient(LLMClient):
    """Local stub that synthesizes deterministic verdicts for demos and tests."""

    def __init__(self, model: str = "offline") -> None:
        super().__init__(model, max_attempts=1)

    def _raw_invoke(self, payload: Dict[str, Any]) -> RawCompletion:
        metadata = payload.get("metadata") or {}
        rule_id = metadata.get("rule_id", "rule")
        response = {
            "status": "compliant",
            "reasoning": f"Offline client: no model consulted for {rule_id}.",
            "file_references": [],
        }
        return RawCompletion(
            text=json.dumps(response),
            model=self.model,
            usage={"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
        )
