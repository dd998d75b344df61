"""Convenience exports for threadline LLM client implementations."""

from .llm_client import (
    LLMCancelledError,
    LLMClient,
    LLMClientError,
    LLMRequest,
    LLMResponseFormatError,
    LLMResult,
    LLMRetryError,
    LLMTransportError,
    RawCompletion,
)
from .offline import OfflineClient, is_offline_model
from .responses import DEFAULT_MODEL, ResponsesClient

__all__ = [
    "DEFAULT_MODEL",
    "LLMCancelledError",
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMResult",
    "LLMRetryError",
    "LLMTransportError",
    "OfflineClient",
    "RawCompletion",
    "ResponsesClient",
    "is_offline_model",
]
