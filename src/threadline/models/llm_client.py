"""Typed client base class shared by all language-model integrations."""

from __future__ import annotations

import json
import re
import threading
import time
from dataclasses import MISSING, dataclass, field, fields, is_dataclass
from typing import Any, Dict, Generic, Optional, Type, TypeVar, get_args, get_origin

from pydantic import ValidationError
from pydantic.type_adapter import TypeAdapter

__all__ = [
    "LLMCancelledError",
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMResult",
    "LLMRetryError",
    "LLMTransportError",
    "RawCompletion",
]


T = TypeVar("T")


def _close_schema(value: Any) -> Any:
    """Recursively tighten JSON Schema objects to disallow unknown keys."""
    if isinstance(value, dict):
        if value.get("type") == "object":
            value["additionalProperties"] = False
            properties = value.get("properties")
            if isinstance(properties, dict):
                value["required"] = list(properties.keys())
                for key, child in list(properties.items()):
                    child = dict(child) if isinstance(child, dict) else child
                    if isinstance(child, dict):
                        child.pop("default", None)
                    properties[key] = _close_schema(child)
        for key, child in list(value.items()):
            if key == "properties":
                continue
            value[key] = _close_schema(child)
    elif isinstance(value, list):
        return [_close_schema(item) for item in value]
    return value


class LLMClientError(RuntimeError):
    """Base error raised for structured LLM client failures."""


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class LLMResponseFormatError(LLMClientError):
    """Raised when the model returns payload that is not valid JSON."""

    def __init__(self, message: str, *, raw: Optional[str] = None) -> None:
        super().__init__(message)
        self.raw = raw


class LLMRetryError(LLMClientError):
    """Raised after exhausting retries due to repeated validation failures."""

    def __init__(self, message: str, *, last_error: Optional[Exception] = None) -> None:
        super().__init__(message)
        self.last_error = last_error


class LLMCancelledError(LLMClientError):
    """Raised when the caller abandoned the request before it completed."""


@dataclass(slots=True)
class RawCompletion:
    """Transport-level answer: model text plus provider bookkeeping."""

    text: str
    model: Optional[str] = None
    usage: Optional[Dict[str, int]] = None
    body: Any = None


@dataclass(slots=True)
class LLMResult(Generic[T]):
    """Validated response together with the metadata of the successful call."""

    value: T
    data: Any
    model: str
    usage: Optional[Dict[str, int]] = None
    attempts: int = 1


@dataclass(slots=True)
class LLMRequest(Generic[T]):
    """Typed request payload sent to an LLM."""

    prompt: str
    response_model: Type[T]
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    temperature: float = 0.0
    max_attempts: Optional[int] = None

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Render a transport-ready payload for the JSON responses API."""
        def _message(role: str, text: str) -> Dict[str, Any]:
            return {
                "role": role,
                "content": [
                    {
                        "type": "input_text",
                        "text": text,
                    }
                ],
            }

        messages: list[Dict[str, Any]] = []
        if self.system_prompt:
            messages.append(_message("system", self.system_prompt))
        messages.append(_message("user", self.prompt))

        schema_name = getattr(self.response_model, "__name__", "threadline_response")
        try:
            schema = TypeAdapter(self.response_model).json_schema()
        except Exception:  # pragma: no cover
            schema = {"type": "object"}
        schema = _close_schema(schema)

        payload: Dict[str, Any] = {
            "model": self.model or default_model,
            "input": messages,
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": schema_name,
                    "schema": schema,
                    "strict": True,
                }
            },
        }
        if self.temperature not in (None, 0.0):
            payload["temperature"] = self.temperature
        if self.metadata:
            max_metadata_len = 512
            serialised_metadata: Dict[str, Any] = {}
            for key, value in self.metadata.items():
                if isinstance(value, str):
                    formatted = value
                else:
                    formatted = json.dumps(value, separators=(",", ":"), sort_keys=True)
                if len(formatted) > max_metadata_len:
                    formatted = f"{formatted[: max_metadata_len - 3]}..."
                serialised_metadata[key] = formatted
            payload["metadata"] = serialised_metadata
        return payload


class LLMClient:
    """High-level helper that enforces JSON responses and schema validation.

    A single client instance is shared by every concurrent rule evaluation in
    a check run, so implementations must keep per-call data on the stack and
    never on ``self``.
    """

    def __init__(self, model: str, *, max_attempts: int = 2, retry_delay: float = 0.5) -> None:
        self._model = model
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    def close(self) -> None:
        """Release transport resources; the base client holds none."""

    def invoke(self, request: LLMRequest[T]) -> T:
        """Invoke the underlying model and return a validated response."""
        return self.invoke_structured(request).value

    def invoke_structured(
        self,
        request: LLMRequest[T],
        *,
        cancel: Optional[threading.Event] = None,
    ) -> LLMResult[T]:
        """Invoke the model and return the structured response with call metadata.

        ``cancel`` is polled between attempts; once it is set no further
        attempt is started and :class:`LLMCancelledError` is raised.
        """
        attempts = request.max_attempts or self._max_attempts
        last_error: Optional[Exception] = None
        payload = request.to_payload(self._model)
        adapter = TypeAdapter(request.response_model)

        for attempt in range(1, attempts + 1):
            if cancel is not None and cancel.is_set():
                raise LLMCancelledError("Request abandoned by caller.")
            try:
                completion = self._raw_invoke(payload)
                raw = completion.text
                data = self._parse_json(raw)
                data = _hydrate_response_payload(request.response_model, data)
                validated = adapter.validate_python(data)
            except (LLMResponseFormatError, ValidationError, LLMTransportError) as error:
                last_error = error
                if attempt >= attempts or not _is_retryable(error):
                    break
                if cancel is not None:
                    if cancel.wait(self._retry_delay):
                        raise LLMCancelledError("Request abandoned by caller.") from error
                else:
                    time.sleep(self._retry_delay)
                continue

            return LLMResult(
                value=validated,
                data=data,
                model=completion.model or str(payload.get("model") or self._model),
                usage=completion.usage,
                attempts=attempt,
            )

        if isinstance(last_error, LLMTransportError) and not _is_retryable(last_error):
            raise last_error
        error_message = (
            f"Failed to produce schema-valid JSON after {attempts} attempt(s) for model "
            f"{request.model or self._model}"
        )
        raise LLMRetryError(error_message, last_error=last_error) from last_error

    def _raw_invoke(self, payload: Dict[str, Any]) -> RawCompletion:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")

    @staticmethod
    def _parse_json(raw_response: str) -> Any:
        """Parse JSON payloads and normalize errors."""
        text = raw_response.strip()
        if not text:
            raise LLMResponseFormatError("Model returned an empty response.", raw=raw_response)

        text = _normalise_json_string(text)
        candidates = [text]
        repaired = _repair_json_payload(text)
        if repaired and repaired not in candidates:
            candidates.append(_normalise_json_string(repaired))

        for candidate in candidates:
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                continue

        snippet = text[:200]
        raise LLMResponseFormatError(f"Model returned invalid JSON: {snippet}", raw=raw_response)


def _is_retryable(error: Exception) -> bool:
    """Client errors other than rate limits will not succeed on retry."""
    if isinstance(error, LLMTransportError) and error.status_code is not None:
        return error.status_code == 429 or error.status_code >= 500
    return True


def _strip_code_fence(payload: str) -> str:
    """Remove Markdown-style code fences that wrap JSON payloads."""
    if not payload.startswith("```"):
        return payload
    fence_header_match = re.match(r"```(?:json)?", payload[:10], re.IGNORECASE)
    if not fence_header_match:
        return payload
    fence_end = payload.find("```", len(fence_header_match.group(0)))
    if fence_end == -1:
        return payload
    content_start = payload.find("\n", len(fence_header_match.group(0)))
    if content_start == -1:
        return payload
    return payload[content_start + 1 : fence_end].strip()


def _normalise_json_string(payload: str) -> str:
    """Normalise typographic quotes and invisible characters emitted by models."""
    if not payload:
        return payload
    translation = {
        0x201C: '"',
        0x201D: '"',
        0x00A0: " ",
        0xFEFF: "",
    }
    return payload.translate(str.maketrans(translation))


def _repair_json_payload(raw: str) -> str | None:
    """Attempt to salvage the first JSON object embedded in noisy output."""
    stripped = _strip_code_fence(raw.strip())
    if not stripped:
        return None

    opening_idx = None
    expected: list[str] = []
    for index, char in enumerate(stripped):
        if char in "{[":
            if opening_idx is None:
                opening_idx = index
            expected.append("}" if char == "{" else "]")
        elif expected and char == expected[-1]:
            expected.pop()
            if not expected and opening_idx is not None:
                candidate = stripped[opening_idx : index + 1]
                return re.sub(r",(\s*[}\]])", r"\1", candidate.strip())
    return None


def _hydrate_response_payload(model: Type[Any], payload: Any) -> Any:
    """Populate missing dataclass fields with defaults before validation."""
    if not isinstance(payload, dict) or not is_dataclass(model):
        return payload
    known = {field_info.name for field_info in fields(model)}
    updated = {key: value for key, value in payload.items() if key in known}
    for field_info in fields(model):
        if field_info.name in updated:
            continue
        if field_info.default is not MISSING:
            updated[field_info.name] = field_info.default
        elif field_info.default_factory is not MISSING:  # type: ignore[attr-defined]
            updated[field_info.name] = field_info.default_factory()  # type: ignore[misc]
        elif _type_allows_none(field_info.type):
            updated[field_info.name] = None
    return updated


def _type_allows_none(annotation: Any) -> bool:
    """Return True when the annotation admits ``None`` as a valid value."""
    if isinstance(annotation, str):
        return "None" in annotation or annotation.startswith("Optional")
    origin = get_origin(annotation)
    if origin is None:
        return annotation in (Any, type(None))
    return any(arg is type(None) for arg in get_args(annotation))
