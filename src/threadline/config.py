"""Configuration loading for threadline checks."""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .models import LLMClient, OfflineClient, ResponsesClient, is_offline_model
from .models.responses import DEFAULT_MODEL

DEFAULT_CONFIG_NAME = "threadline.yaml"
DEFAULT_RULES_DIR = "threadlines"
DEFAULT_RULE_TIMEOUT = 40.0
DEFAULT_CONTEXT_LINES = 10

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "models": {
        "default": DEFAULT_MODEL,
        "base_url": "https://api.openai.com/v1/responses",
        "timeout": 60,
        "max_attempts": 2,
        "retry_delay": 0.5,
        "temperature": 0.1,
    },
    "check": {
        "timeout": DEFAULT_RULE_TIMEOUT,
        "context_lines": DEFAULT_CONTEXT_LINES,
        "max_workers": None,
        "rules_dir": DEFAULT_RULES_DIR,
    },
    "paths": {
        "logs": ".threadline/logs",
    },
}


class ConfigurationError(RuntimeError):
    """Raised for missing credentials or unusable configuration values."""


@dataclass(slots=True)
class CheckSettings:
    """Resolved knobs for one check run."""

    model: str = DEFAULT_MODEL
    base_url: str = "https://api.openai.com/v1/responses"
    request_timeout: float = 60.0
    max_attempts: int = 2
    retry_delay: float = 0.5
    temperature: float = 0.1
    rule_timeout: float = DEFAULT_RULE_TIMEOUT
    context_lines: int = DEFAULT_CONTEXT_LINES
    max_workers: Optional[int] = None
    rules_dir: str = DEFAULT_RULES_DIR
    logs_dir: str = ".threadline/logs"

    @property
    def offline(self) -> bool:
        return is_offline_model(self.model)

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        env: Optional[Mapping[str, str]] = None,
    ) -> "CheckSettings":
        """Merge the YAML ``config`` with environment overrides."""
        source = os.environ if env is None else env
        models_cfg = config.get("models") or {}
        check_cfg = config.get("check") or {}
        paths_cfg = config.get("paths") or {}

        settings = cls()
        model_override = _env_value(source, "THREADLINE_MODEL") or _env_value(source, "OPENAI_MODEL")
        model_value = model_override or models_cfg.get("default")
        if isinstance(model_value, str) and model_value.strip():
            settings.model = model_value.strip()
        base_url = models_cfg.get("base_url")
        if isinstance(base_url, str) and base_url.strip():
            settings.base_url = base_url.strip()
        settings.request_timeout = _positive_float(models_cfg.get("timeout"), settings.request_timeout, "models.timeout")
        settings.max_attempts = _positive_int(models_cfg.get("max_attempts"), settings.max_attempts, "models.max_attempts")
        retry_delay = models_cfg.get("retry_delay")
        if isinstance(retry_delay, (int, float)) and retry_delay >= 0:
            settings.retry_delay = float(retry_delay)
        temperature = models_cfg.get("temperature")
        if isinstance(temperature, (int, float)):
            settings.temperature = float(temperature)

        timeout_value: Any = check_cfg.get("timeout")
        timeout_override = _env_value(source, "THREADLINE_TIMEOUT")
        if timeout_override:
            try:
                timeout_value = float(timeout_override)
            except ValueError as error:
                raise ConfigurationError(
                    f"THREADLINE_TIMEOUT must be a number of seconds, got {timeout_override!r}"
                ) from error
        settings.rule_timeout = _positive_float(timeout_value, settings.rule_timeout, "check.timeout")

        context_lines = check_cfg.get("context_lines")
        if context_lines is not None:
            if not isinstance(context_lines, int) or isinstance(context_lines, bool) or context_lines < 0:
                raise ConfigurationError("check.context_lines must be a non-negative integer")
            settings.context_lines = context_lines
        max_workers = check_cfg.get("max_workers")
        if max_workers is not None:
            settings.max_workers = _positive_int(max_workers, 1, "check.max_workers")
        rules_dir = check_cfg.get("rules_dir")
        if isinstance(rules_dir, str) and rules_dir.strip():
            settings.rules_dir = rules_dir.strip()
        logs_dir = paths_cfg.get("logs")
        if isinstance(logs_dir, str) and logs_dir.strip():
            settings.logs_dir = logs_dir.strip()
        return settings


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk; a missing file yields the defaults."""
    if not config_path.exists():
        return copy_config_template()

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigurationError(f"Failed to parse config {config_path}: {error}") from error

    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration in {config_path} must be a mapping at the top level.")
    return data


def resolve_api_key(env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Return the LLM credential from the environment, ignoring unexpanded ``$VARS``."""
    source = os.environ if env is None else env
    return _env_value(source, "OPENAI_API_KEY")


def build_client(settings: CheckSettings, api_key: Optional[str]) -> LLMClient:
    """Construct the client injected into the check pipeline."""
    if settings.offline:
        return OfflineClient(settings.model)
    if not api_key:
        raise ConfigurationError(
            "No LLM credential given. Set OPENAI_API_KEY or select an offline model."
        )
    return ResponsesClient(
        api_key=api_key,
        base_url=settings.base_url,
        model=settings.model,
        # An abandoned call must not outlive its rule; worker threads are joined at exit.
        timeout=min(settings.request_timeout, settings.rule_timeout),
        max_attempts=settings.max_attempts,
        retry_delay=settings.retry_delay,
    )


def _env_value(env: Mapping[str, str], key: str) -> Optional[str]:
    value = env.get(key)
    if value is None:
        return None
    value = value.strip()
    # GitLab keeps undefined variables as the literal "$NAME".
    if not value or value.startswith("$"):
        return None
    return value


def _positive_float(value: Any, default: float, name: str) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigurationError(f"{name} must be a positive number")
    return float(value)


def _positive_int(value: Any, default: int, name: str) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError(f"{name} must be a positive integer")
    return value


__all__ = [
    "CheckSettings",
    "ConfigurationError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "DEFAULT_CONTEXT_LINES",
    "DEFAULT_RULES_DIR",
    "DEFAULT_RULE_TIMEOUT",
    "build_client",
    "copy_config_template",
    "load_config",
    "resolve_api_key",
]
