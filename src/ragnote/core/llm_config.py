"""LLM and API configuration for ragnote.

Model configs are looked up by name across the statically configured
``llms`` setting and the models a local backend reports live. Each model
references an API config by name, which names the interface kind used to
talk to it.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from pydantic import BaseModel, Field, ValidationError

from ragnote.core.errors import (
    APINotFoundError,
    ConfigurationError,
    ModelNotFoundError,
    NoModelConfiguredError,
    UnsupportedInterfaceError,
)

logger = logging.getLogger(__name__)

API_INTERFACES = ("openai", "anthropic", "ollama")

OLLAMA_API_NAME = "ollama"
DEFAULT_CONTEXT_LENGTH = 4096


class LLMConfig(BaseModel):
    """A chat model reachable through a named API config."""
    model_name: str = Field(..., min_length=1, description="Model identifier sent to the backend")
    api_name: str = Field(..., min_length=1, description="Name of the LLMAPIConfig to use")
    context_length: int = Field(default=DEFAULT_CONTEXT_LENGTH, gt=0, description="Context window in tokens")


class LLMAPIConfig(BaseModel):
    """An endpoint and the interface kind spoken there."""
    name: str = Field(..., min_length=1)
    api_interface: str = Field(..., description="One of openai, anthropic, ollama")
    api_url: str | None = Field(default=None, description="Base URL; SDK default when unset")
    api_key: str | None = None


class GenerationParameters(BaseModel):
    """Sampling parameters forwarded to every backend call."""
    max_tokens: int | None = Field(default=None, ge=1)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)


class ConfigSource(Protocol):
    def get_config(self, key: str) -> Any: ...

    def set_config(self, key: str, value: Any) -> None: ...


class LocalModelSource(Protocol):
    def list_models(self) -> list[str]: ...

    def delete_model(self, model_name: str) -> None: ...


def validate_llm_config(
    config: LLMConfig | dict[str, Any],
    api_configs: list[LLMAPIConfig] | None = None,
) -> LLMConfig:
    """Validate a model config, raising ConfigurationError with the reason.

    When ``api_configs`` is given, the referenced API must exist among them
    and speak a supported interface.
    """
    if isinstance(config, dict):
        try:
            config = LLMConfig(**config)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid LLM config: {e}") from e
    if api_configs is not None:
        api = next((a for a in api_configs if a.name == config.api_name), None)
        if api is None:
            raise APINotFoundError(config.api_name)
        if api.api_interface not in API_INTERFACES:
            raise UnsupportedInterfaceError(api.api_interface)
    return config


class LLMRegistry:
    """Lookup and management of LLM and API configs.

    Static configs live in the config store under ``llms`` and
    ``llm_apis``. Models served by the local backend are discovered on
    demand and never written to the store.
    """

    def __init__(self, store: ConfigSource, local_source: LocalModelSource | None = None):
        self.store = store
        self.local_source = local_source

    # -- API configs --

    def api_configs(self) -> list[LLMAPIConfig]:
        configs = [LLMAPIConfig(**d) for d in self.store.get_config("llm_apis") or []]
        if not any(c.name == OLLAMA_API_NAME for c in configs):
            base = (self.store.get_config("ollama_url") or "http://localhost:11434").rstrip("/")
            configs.append(LLMAPIConfig(
                name=OLLAMA_API_NAME,
                api_interface="ollama",
                api_url=f"{base}/v1",
            ))
        return configs

    def get_api_config(self, api_name: str) -> LLMAPIConfig | None:
        for config in self.api_configs():
            if config.name == api_name:
                return config
        return None

    def add_or_update_api(self, config: LLMAPIConfig | dict[str, Any]) -> LLMAPIConfig:
        if isinstance(config, dict):
            try:
                config = LLMAPIConfig(**config)
            except ValidationError as e:
                raise ConfigurationError(f"Invalid API config: {e}") from e
        if config.api_interface not in API_INTERFACES:
            raise UnsupportedInterfaceError(config.api_interface)
        stored = [d for d in self.store.get_config("llm_apis") or [] if d.get("name") != config.name]
        stored.append(config.model_dump())
        self.store.set_config("llm_apis", stored)
        return config

    # -- model configs --

    def static_llm_configs(self) -> list[LLMConfig]:
        return [LLMConfig(**d) for d in self.store.get_config("llms") or []]

    def local_llm_configs(self) -> list[LLMConfig]:
        if self.local_source is None:
            return []
        return [
            LLMConfig(model_name=name, api_name=OLLAMA_API_NAME)
            for name in self.local_source.list_models()
        ]

    def all_llm_configs(self) -> list[LLMConfig]:
        """Static configs plus live local models, unique by model name."""
        configs = self.static_llm_configs()
        seen = {c.model_name for c in configs}
        for config in self.local_llm_configs():
            if config.model_name not in seen:
                configs.append(config)
                seen.add(config.model_name)
        return configs

    def get_llm_config(self, model_name: str) -> LLMConfig | None:
        for config in self.static_llm_configs():
            if config.model_name == model_name:
                return config
        for config in self.local_llm_configs():
            if config.model_name == model_name:
                return config
        return None

    def add_or_update_llm(self, config: LLMConfig | dict[str, Any]) -> LLMConfig:
        config = validate_llm_config(config, self.api_configs())
        stored = [
            d for d in self.store.get_config("llms") or []
            if d.get("model_name") != config.model_name
        ]
        stored.append(config.model_dump())
        self.store.set_config("llms", stored)
        return config

    def remove_llm(self, model_name: str) -> None:
        """Remove a model from static configs and from the local backend."""
        stored = self.store.get_config("llms") or []
        remaining = [d for d in stored if d.get("model_name") != model_name]
        if len(remaining) != len(stored):
            self.store.set_config("llms", remaining)
        if self.local_source is not None and model_name in self.local_source.list_models():
            logger.info("Deleting local model %s", model_name)
            self.local_source.delete_model(model_name)
        if self.get_default_llm() == model_name:
            self.set_default_llm("")

    # -- default model --

    def get_default_llm(self) -> str:
        return self.store.get_config("default_llm") or ""

    def set_default_llm(self, model_name: str) -> None:
        self.store.set_config("default_llm", model_name)

    def resolve(self, model_name: str | None = None) -> tuple[LLMConfig, LLMAPIConfig]:
        """Find a model config and the API config it references.

        Falls back to the default model when ``model_name`` is empty.
        """
        name = model_name or self.get_default_llm()
        if not name:
            raise NoModelConfiguredError()
        config = self.get_llm_config(name)
        if config is None:
            raise ModelNotFoundError(name)
        api = self.get_api_config(config.api_name)
        if api is None:
            raise APINotFoundError(config.api_name)
        return config, api
