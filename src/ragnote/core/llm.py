"""Model backend abstraction for ragnote.

Every backend streams the same chunk type so the orchestrator does not need
to know which provider is in use. Backends are selected by the API config's
interface kind through a lookup table.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Protocol

from ragnote.core.chat import Message, TextPart, ToolCallPart
from ragnote.core.errors import (
    StreamError,
    UnsupportedCapabilityError,
    UnsupportedInterfaceError,
)
from ragnote.core.llm_config import GenerationParameters, LLMAPIConfig, LLMConfig, LLMRegistry
from ragnote.core.tokenizer import Tokenizer, get_tokenizer
from ragnote.tools.registry import ToolDefinition

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"
ANTHROPIC_DEFAULT_MAX_TOKENS = 4096


class CancellationToken:
    """Out-of-band cancellation signal shared with an in-flight stream.

    Checked at every chunk boundary; never raises.
    """

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class StreamChunk:
    """A piece of streamed output: text, or the finished tool calls."""

    text: str = ""
    tool_calls: list[ToolCallPart] = field(default_factory=list)


class ModelBackend(Protocol):
    """Capabilities every backend kind provides."""

    def stream(
        self,
        model: str,
        messages: list[Message],
        tools: list[ToolDefinition],
        params: GenerationParameters,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a chat completion.

        Yields text chunks as they arrive, then at most one chunk carrying
        the tool calls. Stops quietly once ``cancel_token`` is triggered.
        """
        ...

    def get_tokenizer(self, model: str) -> Tokenizer: ...

    def list_models(self) -> list[str]: ...

    def delete_model(self, model: str) -> None: ...


def _result_text(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def to_openai_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Translate chat messages to OpenAI chat-completion format.

    Handles:
    - Plain string content (pass through)
    - Assistant parts with tool calls (assistant with tool_calls)
    - Tool messages (one tool message per result)
    """
    oai_messages: list[dict[str, Any]] = []
    for msg in messages:
        if isinstance(msg.content, str):
            oai_messages.append({"role": msg.role, "content": msg.content})
            continue

        if msg.role == "assistant":
            text_parts = [p.text for p in msg.content if isinstance(p, TextPart) and p.text]
            tool_calls = [
                {
                    "id": call.tool_call_id,
                    "type": "function",
                    "function": {
                        "name": call.tool_name,
                        "arguments": json.dumps(call.args),
                    },
                }
                for call in msg.tool_calls
            ]
            assistant_msg: dict[str, Any] = {
                "role": "assistant",
                "content": "".join(text_parts) if text_parts else None,
            }
            if tool_calls:
                assistant_msg["tool_calls"] = tool_calls
            oai_messages.append(assistant_msg)
        elif msg.role == "tool":
            for result in msg.tool_results:
                oai_messages.append({
                    "role": "tool",
                    "tool_call_id": result.tool_call_id,
                    "content": _result_text(result.result),
                })
        else:
            oai_messages.append({"role": msg.role, "content": msg.text})
    return oai_messages


def to_anthropic_messages(messages: list[Message]) -> tuple[str, list[dict[str, Any]]]:
    """Translate chat messages to Anthropic format.

    System messages are pulled out into the separate system prompt; tool
    results become tool_result blocks in a user message.
    """
    system_parts: list[str] = []
    out: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role == "system":
            system_parts.append(msg.text)
        elif msg.role == "tool":
            out.append({
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": r.tool_call_id,
                        "content": _result_text(r.result),
                    }
                    for r in msg.tool_results
                ],
            })
        elif msg.role == "assistant" and not isinstance(msg.content, str):
            blocks: list[dict[str, Any]] = []
            for part in msg.content:
                if isinstance(part, TextPart) and part.text:
                    blocks.append({"type": "text", "text": part.text})
                elif isinstance(part, ToolCallPart):
                    blocks.append({
                        "type": "tool_use",
                        "id": part.tool_call_id,
                        "name": part.tool_name,
                        "input": part.args,
                    })
            out.append({"role": "assistant", "content": blocks})
        else:
            out.append({"role": msg.role, "content": msg.text})
    return "\n\n".join(system_parts), out


def _parse_arguments(raw: str) -> dict[str, Any]:
    try:
        return json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        return {}


class OpenAIBackend:
    """OpenAI chat-completions backend, streaming through the async SDK."""

    def __init__(self, api_key: str | None = None, base_url: str | None = None):
        self._api_key = api_key
        self._base_url = base_url
        self._client = None

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=self._api_key, base_url=self._base_url)
        return self._client

    async def stream(
        self,
        model: str,
        messages: list[Message],
        tools: list[ToolDefinition],
        params: GenerationParameters,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamChunk]:
        import openai

        kwargs: dict[str, Any] = {
            "model": model,
            "messages": to_openai_messages(messages),
            "stream": True,
        }
        if tools:
            kwargs["tools"] = [t.to_openai() for t in tools]
        if params.max_tokens is not None:
            kwargs["max_tokens"] = params.max_tokens
        if params.temperature is not None:
            kwargs["temperature"] = params.temperature

        logger.debug("Opening stream for %s (%d messages)", model, len(messages))
        try:
            stream = await self._get_client().chat.completions.create(**kwargs)
        except openai.BadRequestError as e:
            if tools:
                raise UnsupportedCapabilityError(str(e)) from e
            raise StreamError(f"Backend rejected request: {e}") from e
        except openai.OpenAIError as e:
            raise StreamError(f"Backend error: {e}") from e

        tool_calls_accum: dict[int, dict[str, Any]] = {}  # index -> partial tool call
        cancelled = False
        try:
            async for chunk in stream:
                if cancel_token is not None and cancel_token.cancelled:
                    cancelled = True
                    break
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta

                if delta.content:
                    yield StreamChunk(text=delta.content)

                if delta.tool_calls:
                    for tc_delta in delta.tool_calls:
                        idx = tc_delta.index
                        if idx not in tool_calls_accum:
                            tool_calls_accum[idx] = {"id": "", "name": "", "arguments": ""}
                        if tc_delta.id:
                            tool_calls_accum[idx]["id"] = tc_delta.id
                        if tc_delta.function and tc_delta.function.name:
                            tool_calls_accum[idx]["name"] = tc_delta.function.name
                        if tc_delta.function and tc_delta.function.arguments:
                            tool_calls_accum[idx]["arguments"] += tc_delta.function.arguments
        except openai.OpenAIError as e:
            raise StreamError(f"Stream failed: {e}") from e
        finally:
            await stream.close()
            logger.debug("Closed stream for %s", model)

        if cancelled or not tool_calls_accum:
            return
        yield StreamChunk(tool_calls=[
            ToolCallPart(
                tool_call_id=tc["id"] or _new_call_id(),
                tool_name=tc["name"],
                args=_parse_arguments(tc["arguments"]),
            )
            for _, tc in sorted(tool_calls_accum.items())
        ])

    def get_tokenizer(self, model: str) -> Tokenizer:
        return get_tokenizer(model)

    def list_models(self) -> list[str]:
        return []

    def delete_model(self, model: str) -> None:
        raise UnsupportedCapabilityError("Deleting models is only supported for local backends")


class AnthropicBackend:
    """Anthropic messages backend with streaming support."""

    def __init__(self, api_key: str | None = None, base_url: str | None = None):
        self._api_key = api_key
        self._base_url = base_url
        self._client = None

    def _get_client(self) -> Any:
        if self._client is None:
            from anthropic import AsyncAnthropic

            self._client = AsyncAnthropic(api_key=self._api_key, base_url=self._base_url)
        return self._client

    async def stream(
        self,
        model: str,
        messages: list[Message],
        tools: list[ToolDefinition],
        params: GenerationParameters,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamChunk]:
        import anthropic

        system_prompt, anthropic_messages = to_anthropic_messages(messages)
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": params.max_tokens or ANTHROPIC_DEFAULT_MAX_TOKENS,
            "messages": anthropic_messages,
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        if tools:
            kwargs["tools"] = [t.to_anthropic() for t in tools]
        if params.temperature is not None:
            kwargs["temperature"] = params.temperature

        tool_calls: list[ToolCallPart] = []
        current_tool: dict[str, Any] | None = None
        current_tool_json = ""
        cancelled = False

        logger.debug("Opening stream for %s (%d messages)", model, len(messages))
        try:
            async with self._get_client().messages.stream(**kwargs) as stream:
                async for event in stream:
                    if cancel_token is not None and cancel_token.cancelled:
                        cancelled = True
                        break
                    etype = event.type

                    if etype == "content_block_start":
                        cb = getattr(event, "content_block", None)
                        if cb is not None and getattr(cb, "type", "") == "tool_use":
                            current_tool = {"id": cb.id, "name": cb.name}
                            current_tool_json = ""

                    elif etype == "content_block_delta":
                        delta = getattr(event, "delta", None)
                        delta_type = getattr(delta, "type", "")
                        if delta_type == "text_delta" and delta.text:
                            yield StreamChunk(text=delta.text)
                        elif delta_type == "input_json_delta":
                            current_tool_json += getattr(delta, "partial_json", "")

                    elif etype == "content_block_stop" and current_tool is not None:
                        tool_calls.append(ToolCallPart(
                            tool_call_id=current_tool["id"] or _new_call_id(),
                            tool_name=current_tool["name"],
                            args=_parse_arguments(current_tool_json),
                        ))
                        current_tool = None
                        current_tool_json = ""
        except anthropic.BadRequestError as e:
            if tools:
                raise UnsupportedCapabilityError(str(e)) from e
            raise StreamError(f"Backend rejected request: {e}") from e
        except anthropic.AnthropicError as e:
            raise StreamError(f"Backend error: {e}") from e
        logger.debug("Closed stream for %s", model)

        if tool_calls and not cancelled:
            yield StreamChunk(tool_calls=tool_calls)

    def get_tokenizer(self, model: str) -> Tokenizer:
        return get_tokenizer(model)

    def list_models(self) -> list[str]:
        return []

    def delete_model(self, model: str) -> None:
        raise UnsupportedCapabilityError("Deleting models is only supported for local backends")


class OllamaBackend(OpenAIBackend):
    """Ollama backend using the OpenAI-compatible API.

    Chat goes through Ollama's OpenAI-compatible endpoint at ``<url>/v1``.
    Model discovery and deletion use Ollama's native API.
    """

    def __init__(self, url: str | None = None):
        self.url = (url or DEFAULT_OLLAMA_URL).rstrip("/")
        if self.url.endswith("/v1"):
            self.url = self.url[: -len("/v1")]
        # Required by SDK but ignored by Ollama
        super().__init__(api_key="ollama", base_url=f"{self.url}/v1")

    def list_models(self) -> list[str]:
        """Models currently pulled into the local Ollama server.

        An unreachable server means no local models.
        """
        import httpx

        try:
            response = httpx.get(f"{self.url}/api/tags", timeout=5.0)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.debug("Ollama not reachable at %s: %s", self.url, e)
            return []
        return [m["name"] for m in response.json().get("models", [])]

    def delete_model(self, model: str) -> None:
        import httpx

        try:
            response = httpx.request(
                "DELETE", f"{self.url}/api/delete", json={"model": model}, timeout=30.0
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise StreamError(f"Failed to delete local model {model}: {e}") from e
        logger.info("Deleted local model %s", model)


def _openai_backend(api: LLMAPIConfig) -> ModelBackend:
    return OpenAIBackend(api_key=api.api_key, base_url=api.api_url)


def _anthropic_backend(api: LLMAPIConfig) -> ModelBackend:
    return AnthropicBackend(api_key=api.api_key, base_url=api.api_url)


def _ollama_backend(api: LLMAPIConfig) -> ModelBackend:
    return OllamaBackend(url=api.api_url)


BACKENDS: dict[str, Callable[[LLMAPIConfig], ModelBackend]] = {
    "openai": _openai_backend,
    "anthropic": _anthropic_backend,
    "ollama": _ollama_backend,
}


def create_backend(api: LLMAPIConfig) -> ModelBackend:
    """Factory function to create the backend for an API config."""
    factory = BACKENDS.get(api.api_interface)
    if factory is None:
        raise UnsupportedInterfaceError(api.api_interface)
    return factory(api)


@dataclass
class ResolvedModel:
    """A model ready to stream: its config, backend and tokenizer."""

    config: LLMConfig
    api: LLMAPIConfig
    backend: ModelBackend
    tokenizer: Tokenizer


def resolve_model(
    registry: LLMRegistry,
    model_name: str | None = None,
    backend_factory: Callable[[LLMAPIConfig], ModelBackend] = create_backend,
) -> ResolvedModel:
    config, api = registry.resolve(model_name)
    backend = backend_factory(api)
    return ResolvedModel(
        config=config,
        api=api,
        backend=backend,
        tokenizer=backend.get_tokenizer(config.model_name),
    )
