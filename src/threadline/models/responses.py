"""Production client that speaks the OpenAI JSON Responses API."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Dict, Optional

from .llm_client import LLMClient, LLMResponseFormatError, LLMTransportError, RawCompletion

__all__ = ["DEFAULT_MODEL", "ResponsesClient"]

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"

Transport = Callable[[Dict[str, Any]], str]


class ResponsesClient(LLMClient):
    """Thin adapter around the OpenAI JSON Responses API."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1/responses",
        model: str = DEFAULT_MODEL,
        transport: Optional[Transport] = None,
        timeout: float = 60.0,
        max_attempts: int = 2,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(model=model, max_attempts=max_attempts, retry_delay=retry_delay)
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport or self._http_transport

        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")

    @property
    def timeout(self) -> float:
        """Socket timeout applied to each HTTP request."""
        return self._timeout

    def _raw_invoke(self, payload: Dict[str, Any]) -> RawCompletion:
        """Send the request over the configured transport."""
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except Exception as error:  # pragma: no cover
            raise LLMTransportError(f"Transport rejected the request: {error}") from error

        completion = self._extract_completion(raw_response)
        if completion is None:
            raise LLMResponseFormatError(
                "Responses API answer did not contain JSON output text.",
                raw=raw_response,
            )
        return completion

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        """Default HTTP transport that targets the OpenAI Responses API."""
        import urllib.error
        import urllib.request

        if os.getenv("THREADLINE_DEBUG_PAYLOAD"):
            LOGGER.debug("Responses API request payload:\n%s", json.dumps(payload, indent=2, sort_keys=True))

        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            self._base_url,
            data=data,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
                "User-Agent": "threadline/0.1",
            },
            method="POST",
        )

        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
                status = getattr(response, "status", 200)
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError("Responses API request timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(
                f"HTTP {error.code}: {_error_summary(message)}",
                status_code=error.code,
                body=_maybe_json(message),
            ) from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach Responses API endpoint: {error.reason}") from error

        if status >= 400:
            raise LLMTransportError(f"Unexpected HTTP status {status}", status_code=status)

        return raw.decode("utf-8")

    def _extract_completion(self, raw_response: str) -> Optional[RawCompletion]:
        """Extract the JSON text, model name and token usage from a response body."""
        if not raw_response:
            return None

        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError:
            return RawCompletion(text=raw_response)

        if not isinstance(data, dict):
            return RawCompletion(text=raw_response, body=data)

        model = data.get("model") if isinstance(data.get("model"), str) else None
        usage = _normalise_usage(data.get("usage"))

        # Responses API uses `output` for ordered events.
        text_payload = self._first_text_content(data.get("output") or data.get("outputs"))
        if text_payload is None:
            container = data.get("response")
            if isinstance(container, dict):
                text_payload = self._first_text_content(container.get("output") or container.get("outputs"))
                model = model or (container.get("model") if isinstance(container.get("model"), str) else None)
                usage = usage or _normalise_usage(container.get("usage"))
        if text_payload is None:
            # Chat-completions shaped payloads.
            text_payload = self._first_text_content(data.get("content") or data.get("choices"))
        if text_payload is None:
            text_payload = raw_response

        return RawCompletion(text=text_payload, model=model, usage=usage, body=data)

    @staticmethod
    def _first_text_content(container: Any) -> Optional[str]:
        """Return the first text field found within the responses container."""
        if not container:
            return None

        if isinstance(container, dict):
            container = [container]

        for item in container:
            if not isinstance(item, dict):
                continue

            contents = item.get("content")
            if isinstance(contents, list):
                for content_item in contents:
                    if not isinstance(content_item, dict):
                        continue
                    json_payload = content_item.get("json")
                    if isinstance(json_payload, (dict, list)):
                        return json.dumps(json_payload)
                    text = content_item.get("text")
                    if isinstance(text, str) and text.strip():
                        return text

            text_value = item.get("text")
            if isinstance(text_value, str) and text_value.strip():
                return text_value

            message = item.get("message") if isinstance(item.get("message"), dict) else None
            if message:
                text = message.get("content") or message.get("text")
                if isinstance(text, str) and text.strip():
                    return text

        return None


def _normalise_usage(usage: Any) -> Optional[Dict[str, int]]:
    """Map Responses/Chat usage blocks onto prompt/completion/total counts."""
    if not isinstance(usage, dict):
        return None
    prompt = usage.get("input_tokens", usage.get("prompt_tokens"))
    completion = usage.get("output_tokens", usage.get("completion_tokens"))
    total = usage.get("total_tokens")
    try:
        prompt_tokens = int(prompt or 0)
        completion_tokens = int(completion or 0)
        total_tokens = int(total) if total is not None else prompt_tokens + completion_tokens
    except (TypeError, ValueError):
        return None
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": total_tokens,
    }


def _maybe_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return text or None


def _error_summary(text: str) -> str:
    body = _maybe_json(text)
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    return (text or "no response body")[:200]
