"""ragnote configuration management.

Loads and merges settings from user and vault-level settings.json files.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ragnote.utils.paths import (
    get_user_settings_path,
    get_vault_settings_path,
)


SEARCH_MODES = ("vector", "text", "hybrid")

DEFAULT_SETTINGS: dict[str, Any] = {
    "default_llm": "",
    "llms": [],
    "llm_apis": [],
    "max_tokens": None,
    "temperature": None,
    "max_tool_iterations": 10,
    "embedding_model": "all-MiniLM-L6-v2",
    "ollama_url": "http://localhost:11434",
    "search_mode": "vector",
}


@dataclass
class RagnoteSettings:
    """Merged ragnote settings."""

    default_llm: str = ""
    llms: list[dict[str, Any]] = field(default_factory=list)
    llm_apis: list[dict[str, Any]] = field(default_factory=list)
    max_tokens: int | None = None
    temperature: float | None = None
    max_tool_iterations: int = 10
    embedding_model: str = "all-MiniLM-L6-v2"
    ollama_url: str = "http://localhost:11434"
    search_mode: str = "vector"

    def to_dict(self) -> dict[str, Any]:
        return {
            "default_llm": self.default_llm,
            "llms": self.llms,
            "llm_apis": self.llm_apis,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "max_tool_iterations": self.max_tool_iterations,
            "embedding_model": self.embedding_model,
            "ollama_url": self.ollama_url,
            "search_mode": self.search_mode,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> RagnoteSettings:
        merged = deep_merge(DEFAULT_SETTINGS, d)
        return cls(**{k: merged[k] for k in DEFAULT_SETTINGS})


def load_json_file(path: Path) -> dict[str, Any]:
    """Load a JSON file, returning empty dict if not found or invalid."""
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        return {}


def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override into base, returning new dict.

    - Dicts are recursively merged
    - Lists are replaced (not appended)
    - Scalars are replaced
    """
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_settings(vault_root: Path | None = None) -> RagnoteSettings:
    """Load and merge settings from user + vault levels.

    Precedence: vault settings override user settings override defaults.
    """
    merged = dict(DEFAULT_SETTINGS)

    user_settings = load_json_file(get_user_settings_path())
    if user_settings:
        merged = deep_merge(merged, user_settings)

    if vault_root is not None:
        vault_settings = load_json_file(get_vault_settings_path(vault_root))
        if vault_settings:
            merged = deep_merge(merged, vault_settings)

    return RagnoteSettings.from_dict(merged)


def save_settings(settings: RagnoteSettings, path: Path) -> None:
    """Save settings to a JSON file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(settings.to_dict(), indent=2) + "\n",
        encoding="utf-8",
    )


def validate_settings(settings: RagnoteSettings) -> list[str]:
    """Validate settings, returning list of error messages (empty if valid)."""
    errors = []

    if not isinstance(settings.llms, list):
        errors.append("llms must be a list")
    if not isinstance(settings.llm_apis, list):
        errors.append("llm_apis must be a list")

    if settings.max_tokens is not None and (
        not isinstance(settings.max_tokens, int) or settings.max_tokens < 1
    ):
        errors.append("max_tokens must be a positive integer")

    if settings.temperature is not None and (
        not isinstance(settings.temperature, (int, float))
        or not (0.0 <= settings.temperature <= 2.0)
    ):
        errors.append("temperature must be a float between 0.0 and 2.0")

    if not isinstance(settings.max_tool_iterations, int) or settings.max_tool_iterations < 0:
        errors.append("max_tool_iterations must be a non-negative integer")

    if settings.search_mode not in SEARCH_MODES:
        errors.append(f"search_mode must be one of: {', '.join(SEARCH_MODES)}")

    return errors
