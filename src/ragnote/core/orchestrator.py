"""Chat streaming and tool-loop orchestration for ragnote.

One call to ``handle_turn`` drives a full turn: seed or extend the chat,
stream the model's reply into it, execute the tool calls it emits, and
continue the conversation until no tool call is left to run.

State moves idle -> waiting-for-first-token -> generating ->
(tool-execution -> waiting-for-first-token -> ...) -> idle. Tool failures
and duplicate tool call ids end in the error state; other failures return
to idle and re-raise. Cancellation leaves the state where it was.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable

from ragnote.core.agents import (
    DEFAULT_AGENT,
    AgentConfig,
    apply_prompt_template,
    extract_file_references,
)
from ragnote.core.chat import (
    Chat,
    Message,
    RetrievalResult,
    ToolCallPart,
    append_text_to_messages,
    append_tool_calls_to_messages,
    get_display_name,
    remove_unresolved_tool_calls,
)
from ragnote.core.context import slice_list_of_strings_to_context_length
from ragnote.core.errors import (
    ConfigurationError,
    DuplicateToolCallError,
    ToolExecutionError,
    UnsupportedCapabilityError,
)
from ragnote.core.events import ChatEvent, LoadingState
from ragnote.core.llm import (
    CancellationToken,
    ModelBackend,
    create_backend,
    resolve_model,
)
from ragnote.core.llm_config import GenerationParameters, LLMAPIConfig, LLMRegistry
from ragnote.core.store import ChatStore
from ragnote.tools.executor import ToolExecutor
from ragnote.vault.retrieval import RetrievalResolver

logger = logging.getLogger(__name__)

TOOLS_UNSUPPORTED_ADVISORY = (
    "This model does not support tool calling. Tools have been disabled for this "
    "chat. To use tool calling, download a model from "
    "https://ollama.com/search?c=tools or use a cloud LLM like GPT-4o or Claude."
)
DEFAULT_RESPONSE_TOKENS = 1024


@dataclass
class TurnConfig:
    """Settings a turn runs with, read once from the store at turn start."""

    default_llm: str = ""
    max_tokens: int | None = None
    temperature: float | None = None
    max_tool_iterations: int = 10
    search_mode: str = "vector"

    @classmethod
    def from_store(cls, store: ChatStore) -> TurnConfig:
        def get(key: str, default: Any) -> Any:
            value = store.get_config(key)
            return default if value is None else value

        return cls(
            default_llm=get("default_llm", ""),
            max_tokens=store.get_config("max_tokens"),
            temperature=store.get_config("temperature"),
            max_tool_iterations=int(get("max_tool_iterations", 10)),
            search_mode=get("search_mode", "vector"),
        )

    @property
    def params(self) -> GenerationParameters:
        return GenerationParameters(max_tokens=self.max_tokens, temperature=self.temperature)


class ChatOrchestrator:
    """Runs chat turns against one store, model registry and vault.

    Concurrent turns on the same chat are not supported; await or cancel
    an in-flight turn before starting another.
    """

    def __init__(
        self,
        store: ChatStore,
        registry: LLMRegistry,
        resolver: RetrievalResolver,
        tool_executor: ToolExecutor,
        event_queue: asyncio.Queue[ChatEvent] | None = None,
        backend_factory: Callable[[LLMAPIConfig], ModelBackend] = create_backend,
    ):
        self.store = store
        self.registry = registry
        self.resolver = resolver
        self.tool_executor = tool_executor
        self.event_queue = event_queue
        self.backend_factory = backend_factory
        self.state = LoadingState.IDLE
        self._cancel_token: CancellationToken | None = None

    async def _emit(self, event: ChatEvent) -> None:
        if self.event_queue is not None:
            await self.event_queue.put(event)

    async def _set_state(self, state: LoadingState) -> None:
        if state is not self.state:
            self.state = state
            await self._emit(ChatEvent.state_changed(state))

    def cancel(self) -> None:
        """Ask the in-flight stream to stop at its next chunk boundary."""
        if self._cancel_token is not None:
            self._cancel_token.cancel()

    async def handle_turn(
        self,
        chat: Chat | None,
        user_input: str | None = None,
        agent_config: AgentConfig | None = None,
    ) -> Chat | None:
        """Run one turn and return the updated chat.

        With no input, continues an existing chat (e.g. after pending tool
        calls were resolved). Does nothing when there is neither input nor
        history.
        """
        text = (user_input or "").strip()
        if not text and (chat is None or not chat.messages):
            return chat

        config = TurnConfig.from_store(self.store)
        if chat is None:
            chat = Chat()
        if not chat.model_name:
            chat.model_name = config.default_llm or None

        try:
            if text:
                if not chat.messages:
                    await self._seed_chat(chat, user_input or "", agent_config or DEFAULT_AGENT, config)
                else:
                    chat.messages.append(Message(role="user", content=user_input or ""))
                chat.time_of_last_message = time.time()
            self.store.save_chat(chat)
        except Exception as e:
            await self._emit(ChatEvent.error(str(e)))
            raise

        return await self._run(chat, config)

    async def _seed_chat(
        self,
        chat: Chat,
        query: str,
        agent: AgentConfig,
        config: TurnConfig,
    ) -> None:
        """First turn: retrieve grounding context and build the opening messages."""
        filters = agent.retrieval_filters(
            config.search_mode, extra_files=extract_file_references(query)
        )
        results = await self.resolver.resolve(query, filters)
        if results and chat.model_name:
            results = await asyncio.to_thread(
                self._fit_to_context, results, query, chat.model_name, config
            )
        chat.agent_name = agent.name
        chat.tool_definitions = list(agent.tool_definitions)
        chat.messages.extend(apply_prompt_template(agent.prompt_template, query, results))
        chat.display_name = get_display_name(chat.messages)

    def _fit_to_context(
        self,
        results: list[RetrievalResult],
        query: str,
        model_name: str,
        config: TurnConfig,
    ) -> list[RetrievalResult]:
        try:
            llm_config, api = self.registry.resolve(model_name)
            tokenizer = self.backend_factory(api).get_tokenizer(llm_config.model_name)
        except ConfigurationError:
            # Surfaces when the model is resolved for streaming
            return results
        budget = (
            llm_config.context_length
            - len(tokenizer.encode(query))
            - (config.max_tokens or DEFAULT_RESPONSE_TOKENS)
        )
        contents = slice_list_of_strings_to_context_length(
            [r.content for r in results], tokenizer, budget
        )
        return [replace(r, content=c) for r, c in zip(results, contents)]

    async def _run(self, chat: Chat, config: TurnConfig) -> Chat:
        token = CancellationToken()
        self._cancel_token = token
        tools_stripped = False
        continuations = 0
        try:
            while True:
                await self._set_state(LoadingState.WAITING_FOR_FIRST_TOKEN)
                try:
                    tool_calls = await self._stream_once(chat, config, token)
                except UnsupportedCapabilityError:
                    if not chat.tool_definitions or tools_stripped:
                        raise
                    logger.warning(
                        "Model %s does not support tool calling; retrying without tools",
                        chat.model_name,
                    )
                    tools_stripped = True
                    chat.tool_definitions = []
                    self.store.save_chat(chat)
                    await self._emit(ChatEvent.advisory(TOOLS_UNSUPPORTED_ADVISORY))
                    continue

                if tool_calls is None:
                    await self._emit(ChatEvent.cancelled())
                    return chat
                if not tool_calls:
                    break

                all_executed = await self._execute_tool_calls(chat, tool_calls)
                chat.time_of_last_message = time.time()
                self.store.save_chat(chat)
                if not all_executed:
                    await self._emit(ChatEvent.status("Waiting for tool calls to be confirmed"))
                    break
                if continuations >= config.max_tool_iterations:
                    logger.warning(
                        "Tool loop limit of %d continuations reached for chat %s",
                        config.max_tool_iterations, chat.id,
                    )
                    await self._emit(ChatEvent.error(
                        f"Stopped after {config.max_tool_iterations} tool iterations"
                    ))
                    break
                continuations += 1

            chat.time_of_last_message = time.time()
            self.store.save_chat(chat)
            await self._set_state(LoadingState.IDLE)
            last = chat.messages[-1] if chat.messages else None
            await self._emit(ChatEvent.completion(chat.id, last.text if last else ""))
            return chat
        except asyncio.CancelledError:
            await self._emit(ChatEvent.cancelled())
            raise
        except (DuplicateToolCallError, ToolExecutionError) as e:
            await self._set_state(LoadingState.ERROR)
            await self._emit(ChatEvent.error(str(e)))
            raise
        except Exception as e:
            await self._set_state(LoadingState.IDLE)
            await self._emit(ChatEvent.error(str(e)))
            raise
        finally:
            self._cancel_token = None

    async def _stream_once(
        self, chat: Chat, config: TurnConfig, token: CancellationToken
    ) -> list[ToolCallPart] | None:
        """Stream one model reply into the chat.

        Returns the tool calls the reply emitted, or None when cancelled.
        """
        resolved = await asyncio.to_thread(
            resolve_model, self.registry, chat.model_name, self.backend_factory
        )
        history = remove_unresolved_tool_calls(chat.messages)
        snapshot = copy.deepcopy(chat.messages)
        tool_calls: list[ToolCallPart] = []

        stream = resolved.backend.stream(
            resolved.config.model_name,
            history,
            list(chat.tool_definitions),
            config.params,
            token,
        )
        try:
            async for chunk in stream:
                if token.cancelled:
                    return None
                if chunk.text:
                    append_text_to_messages(chat.messages, chunk.text)
                    await self._set_state(LoadingState.GENERATING)
                    await self._emit(ChatEvent.chat_updated(chat.id, chunk.text))
                tool_calls.extend(chunk.tool_calls)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        if token.cancelled:
            return None

        seen = chat.tool_call_ids()
        for call in tool_calls:
            if call.tool_call_id in seen:
                chat.messages[:] = snapshot
                raise DuplicateToolCallError(call.tool_call_id)
            seen.add(call.tool_call_id)
        append_tool_calls_to_messages(chat.messages, tool_calls)
        return tool_calls

    async def _execute_tool_calls(self, chat: Chat, calls: list[ToolCallPart]) -> bool:
        """Run auto-executable calls in order, appending one result message each.

        Returns False when some call was left pending for confirmation.
        """
        await self._set_state(LoadingState.TOOL_EXECUTION)
        definitions = {t.name: t for t in chat.tool_definitions}
        resolved = chat.tool_result_ids()
        all_executed = True
        for call in calls:
            if call.tool_call_id in resolved:
                continue
            definition = definitions.get(call.tool_name)
            if definition is None:
                await self._reject_tool(chat, call)
                continue
            if not definition.auto_execute:
                all_executed = False
                continue
            await self._run_tool(chat, call)
        return all_executed

    async def _reject_tool(self, chat: Chat, call: ToolCallPart) -> None:
        logger.warning(
            "Model called tool %s (%s) which is not enabled for chat %s",
            call.tool_name, call.tool_call_id, chat.id,
        )
        result = {"error": f"Tool {call.tool_name} is not enabled for this chat."}
        chat.messages.append(Message.tool_result(call, result))
        await self._emit(ChatEvent.tool_result(call.tool_name, call.tool_call_id, result))

    async def _run_tool(self, chat: Chat, call: ToolCallPart) -> None:
        await self._emit(ChatEvent.tool_use_start(call.tool_name, call.tool_call_id))
        try:
            result = await self.tool_executor.execute(call)
        except ToolExecutionError:
            self.store.save_chat(chat)
            raise
        chat.messages.append(Message.tool_result(call, result))
        await self._emit(ChatEvent.tool_result(call.tool_name, call.tool_call_id, result))

    async def execute_pending_tool_calls(self, chat: Chat) -> Chat:
        """Run every tool call still waiting for a result, confirmed or not.

        Start a turn with no input afterwards to let the model continue.
        """
        pending = chat.pending_tool_calls()
        if not pending:
            return chat
        try:
            await self._set_state(LoadingState.TOOL_EXECUTION)
            for call in pending:
                await self._run_tool(chat, call)
            chat.time_of_last_message = time.time()
            self.store.save_chat(chat)
        except ToolExecutionError as e:
            await self._set_state(LoadingState.ERROR)
            await self._emit(ChatEvent.error(str(e)))
            raise
        await self._set_state(LoadingState.IDLE)
        return chat
