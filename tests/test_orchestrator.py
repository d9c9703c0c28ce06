"""Tests for the chat streaming and tool-loop orchestrator."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from conftest import FakeEmbedding, FakeResolver, FakeStore, FakeTable, ScriptedBackend, make_row
from ragnote.core.agents import AgentConfig, DBSearchFilters, PromptMessage
from ragnote.core.chat import Chat, Message, RetrievalResult, ToolCallPart
from ragnote.core.errors import (
    DuplicateToolCallError,
    NoModelConfiguredError,
    RetrievalError,
    StreamError,
    ToolExecutionError,
    UnsupportedCapabilityError,
)
from ragnote.core.events import EventType, LoadingState
from ragnote.core.llm import StreamChunk
from ragnote.core.llm_config import LLMRegistry
from ragnote.core.orchestrator import TOOLS_UNSUPPORTED_ADVISORY, ChatOrchestrator
from ragnote.tools.executor import ToolExecutor
from ragnote.tools.registry import CREATE_NOTE_TOOL, SEARCH_TOOL
from ragnote.vault.retrieval import RetrievalResolver


def _call(call_id: str, name: str = "search", **args: Any) -> ToolCallPart:
    return ToolCallPart(tool_call_id=call_id, tool_name=name, args=args)


def _make_orchestrator(
    store: FakeStore,
    backend: ScriptedBackend,
    resolver: Any = None,
    executor: ToolExecutor | None = None,
) -> ChatOrchestrator:
    if executor is None:
        executor = ToolExecutor()
        executor.register_handler("search", lambda args: ["doc1"])
    return ChatOrchestrator(
        store=store,
        registry=LLMRegistry(store),
        resolver=resolver or FakeResolver(),
        tool_executor=executor,
        event_queue=asyncio.Queue(),
        backend_factory=lambda api: backend,
    )


def _drain(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


def _states(events: list) -> list[LoadingState]:
    return [e.data["state"] for e in events if e.type == EventType.STATE_CHANGED]


NO_SEARCH_AGENT = AgentConfig(
    name="Plain",
    db_search_filters=None,
    tool_definitions=[SEARCH_TOOL],
    prompt_template=[PromptMessage("user", "{QUERY}")],
)


class TestFirstTurnRetrieval:
    def test_vector_search_capped_and_streamed_answer(self, fake_store):
        rows = [
            make_row("/vault/x.md", "X is a widget.", 0),
            make_row("/vault/x.md", "X sorts notes.", 1),
            make_row("/vault/y.md", "Y mentions X.", 0),
            make_row("/vault/z.md", "Z is unrelated.", 0),
        ]
        table = FakeTable(rows)
        resolver = RetrievalResolver(Path("/vault"), lambda: table, FakeEmbedding())
        backend = ScriptedBackend([[StreamChunk(text="X is "), StreamChunk(text="a widget.")]])
        orch = _make_orchestrator(fake_store, backend, resolver=resolver)
        agent = AgentConfig(
            name="Capped",
            db_search_filters=DBSearchFilters(limit=3),
            tool_definitions=[],
        )

        async def run():
            return await orch.handle_turn(None, "what is thing X", agent)

        chat = asyncio.run(run())

        assert len(table.queries) == 1
        assert table.queries[0].n == 3
        assert table.queries[0].vector is not None

        user = chat.messages[0]
        assert user.role == "user"
        assert user.visible_content == "what is thing X"
        for row in rows[:3]:
            assert row["content"] in user.content
        assert "Z is unrelated." not in user.content
        assert [r.content for r in user.context] == [r["content"] for r in rows[:3]]

        assert chat.messages[-1].role == "assistant"
        assert chat.messages[-1].text == "X is a widget."

        events = _drain(orch.event_queue)
        assert _states(events) == [
            LoadingState.WAITING_FOR_FIRST_TOKEN,
            LoadingState.GENERATING,
            LoadingState.IDLE,
        ]
        assert events[-1].type == EventType.COMPLETION
        assert events[-1].data["text"] == "X is a widget."
        assert orch.state is LoadingState.IDLE

    def test_new_chat_uses_default_model_and_is_saved(self, fake_store):
        backend = ScriptedBackend([[StreamChunk(text="hello")]])
        orch = _make_orchestrator(fake_store, backend)

        chat = asyncio.run(orch.handle_turn(None, "hi", NO_SEARCH_AGENT))

        assert chat.model_name == "test-model"
        assert backend.calls[0]["model"] == "test-model"
        assert chat.agent_name == "Plain"
        assert chat.display_name == "hi"
        assert fake_store.get_chat(chat.id).messages[-1].text == "hello"

    def test_file_references_ground_first_turn(self, fake_store):
        resolver = FakeResolver()
        backend = ScriptedBackend([[StreamChunk(text="ok")]])
        orch = _make_orchestrator(fake_store, backend, resolver=resolver)

        asyncio.run(orch.handle_turn(None, "summarise @notes/a.md please"))

        _, filters = resolver.calls[0]
        assert filters.files == ["notes/a.md"]

    def test_retrieval_only_on_first_turn(self, fake_store):
        resolver = FakeResolver()
        backend = ScriptedBackend([[StreamChunk(text="one")], [StreamChunk(text="two")]])
        orch = _make_orchestrator(fake_store, backend, resolver=resolver)

        async def run():
            chat = await orch.handle_turn(None, "first")
            return await orch.handle_turn(chat, "second")

        chat = asyncio.run(run())
        assert len(resolver.calls) == 1
        assert chat.messages[-2].role == "user"
        assert chat.messages[-2].content == "second"
        assert chat.messages[-1].text == "two"

    def test_results_sliced_to_model_context(self, fake_store):
        fake_store.config["llms"] = [
            {"model_name": "test-model", "api_name": "test-api", "context_length": 20}
        ]
        fake_store.config["max_tokens"] = 5
        results = [
            RetrievalResult("one two three four five six seven eight nine ten", "/v/a.md"),
            RetrievalResult("alpha beta gamma delta epsilon zeta", "/v/b.md"),
            RetrievalResult("never included", "/v/c.md"),
        ]
        backend = ScriptedBackend([[StreamChunk(text="ok")]])
        orch = _make_orchestrator(fake_store, backend, resolver=FakeResolver(results))

        chat = asyncio.run(orch.handle_turn(None, "q"))

        context = chat.messages[1].context
        # budget = 20 - 1 (query) - 5 (response)
        assert [r.content for r in context] == [
            "one two three four five six seven eight nine ten",
            "alpha beta gamma delta",
        ]
        assert [r.notepath for r in context] == ["/v/a.md", "/v/b.md"]

    def test_retrieval_error_aborts_before_model_call(self, fake_store):
        backend = ScriptedBackend([[StreamChunk(text="never")]])
        resolver = FakeResolver(error=RetrievalError("table unavailable"))
        orch = _make_orchestrator(fake_store, backend, resolver=resolver)

        with pytest.raises(RetrievalError):
            asyncio.run(orch.handle_turn(None, "hello"))

        assert backend.calls == []
        assert orch.state is LoadingState.IDLE
        events = _drain(orch.event_queue)
        assert [e.type for e in events] == [EventType.ERROR]


class TestEmptyInput:
    def test_rejected_silently_without_history(self, fake_store):
        backend = ScriptedBackend()
        orch = _make_orchestrator(fake_store, backend)

        assert asyncio.run(orch.handle_turn(None, "   ")) is None

        chat = Chat()
        assert asyncio.run(orch.handle_turn(chat, "")) is chat
        assert chat.messages == []
        assert backend.calls == []
        assert fake_store.save_count == 0
        assert orch.event_queue.empty()
        assert orch.state is LoadingState.IDLE

    def test_no_input_continues_existing_chat(self, fake_store):
        backend = ScriptedBackend([[StreamChunk(text="continued")]])
        orch = _make_orchestrator(fake_store, backend)
        chat = Chat(messages=[Message(role="user", content="hello")], model_name="test-model")

        asyncio.run(orch.handle_turn(chat, None))

        assert [m.role for m in chat.messages] == ["user", "assistant"]
        assert chat.messages[-1].text == "continued"


class TestToolLoop:
    def test_tool_call_result_then_continuation(self, fake_store):
        backend = ScriptedBackend([
            [StreamChunk(tool_calls=[_call("c1", q="foo")])],
            [StreamChunk(text="Found doc1.")],
        ])
        seen_args = []
        executor = ToolExecutor()
        executor.register_handler("search", lambda args: seen_args.append(args) or ["doc1"])
        orch = _make_orchestrator(fake_store, backend, executor=executor)

        chat = asyncio.run(orch.handle_turn(None, "look up foo", NO_SEARCH_AGENT))

        assert len(backend.calls) == 2
        assert seen_args == [{"q": "foo"}]
        tool_messages = [m for m in chat.messages if m.role == "tool"]
        assert len(tool_messages) == 1
        result = tool_messages[0].tool_results[0]
        assert result.tool_call_id == "c1"
        assert result.result == ["doc1"]
        assert chat.messages[-1].text == "Found doc1."
        assert orch.state is LoadingState.IDLE

        second_history = backend.calls[1]["messages"]
        assert any(m.role == "tool" for m in second_history)

        events = _drain(orch.event_queue)
        types = [e.type for e in events]
        assert EventType.TOOL_USE_START in types
        assert EventType.TOOL_RESULT in types
        assert LoadingState.TOOL_EXECUTION in _states(events)

    def test_converges_with_one_result_per_call_in_order(self, fake_store):
        backend = ScriptedBackend([
            [StreamChunk(tool_calls=[_call("a1", q="1"), _call("a2", q="2")])],
            [StreamChunk(text="more"), StreamChunk(tool_calls=[_call("b1", q="3"), _call("b2", q="4")])],
            [StreamChunk(text="done")],
        ])
        order = []
        executor = ToolExecutor()
        executor.register_handler("search", lambda args: order.append(args["q"]) or args["q"])
        orch = _make_orchestrator(fake_store, backend, executor=executor)

        chat = asyncio.run(orch.handle_turn(None, "go", NO_SEARCH_AGENT))

        assert len(backend.calls) == 3
        assert order == ["1", "2", "3", "4"]
        result_ids = [r.tool_call_id for m in chat.messages for r in m.tool_results]
        assert result_ids == ["a1", "a2", "b1", "b2"]
        assert chat.pending_tool_calls() == []
        assert orch.state is LoadingState.IDLE

    def test_tool_iteration_limit_stops_loop(self, fake_store):
        fake_store.config["max_tool_iterations"] = 1
        backend = ScriptedBackend([
            [StreamChunk(tool_calls=[_call("t1")])],
            [StreamChunk(tool_calls=[_call("t2")])],
            [StreamChunk(text="unreached")],
        ])
        orch = _make_orchestrator(fake_store, backend)

        chat = asyncio.run(orch.handle_turn(None, "loop", NO_SEARCH_AGENT))

        assert len(backend.calls) == 2
        assert chat.pending_tool_calls() == []
        assert orch.state is LoadingState.IDLE
        errors = [e for e in _drain(orch.event_queue) if e.type == EventType.ERROR]
        assert len(errors) == 1
        assert "1 tool iterations" in errors[0].data["message"]

    def test_unresolved_tool_calls_not_replayed(self, fake_store):
        backend = ScriptedBackend([[StreamChunk(text="sure")]])
        orch = _make_orchestrator(fake_store, backend)
        chat = Chat(
            messages=[
                Message(role="user", content="write a note"),
                Message(role="assistant", content=[_call("p1", "createNote", filename="a")]),
            ],
            model_name="test-model",
        )

        asyncio.run(orch.handle_turn(chat, "never mind"))

        sent = backend.calls[0]["messages"]
        assert all(not m.tool_calls for m in sent)
        assert [m.role for m in sent] == ["user", "user"]
        # The chat itself keeps the pending call
        assert [c.tool_call_id for c in chat.pending_tool_calls()] == ["p1"]

    def test_confirmation_tools_left_pending(self, fake_store):
        backend = ScriptedBackend([
            [StreamChunk(tool_calls=[_call("n1", "createNote", filename="todo", content="- milk")])],
            [StreamChunk(text="Created.")],
        ])
        executor = ToolExecutor()
        created = []
        executor.register_handler("createNote", lambda args: created.append(args) or {"path": "todo.md"})
        orch = _make_orchestrator(fake_store, backend, executor=executor)
        agent = AgentConfig(
            name="Notes",
            db_search_filters=None,
            tool_definitions=[SEARCH_TOOL, CREATE_NOTE_TOOL],
            prompt_template=[PromptMessage("user", "{QUERY}")],
        )

        async def first():
            return await orch.handle_turn(None, "make a todo note", agent)

        chat = asyncio.run(first())
        assert created == []
        assert [c.tool_call_id for c in chat.pending_tool_calls()] == ["n1"]
        assert len(backend.calls) == 1
        assert orch.state is LoadingState.IDLE
        statuses = [e for e in _drain(orch.event_queue) if e.type == EventType.STATUS]
        assert len(statuses) == 1

        async def confirm():
            await orch.execute_pending_tool_calls(chat)
            return await orch.handle_turn(chat, None)

        chat = asyncio.run(confirm())
        assert created == [{"filename": "todo", "content": "- milk"}]
        assert chat.pending_tool_calls() == []
        assert chat.messages[-1].text == "Created."
        assert len(backend.calls) == 2

    def test_tool_not_enabled_for_chat_is_rejected(self, fake_store):
        backend = ScriptedBackend([
            [StreamChunk(tool_calls=[_call("n1", "createNote", filename="x", content="y")])],
            [StreamChunk(text="I cannot create notes here.")],
        ])
        executor = ToolExecutor()
        created = []
        executor.register_handler("createNote", lambda args: created.append(args) or {"path": "x.md"})
        orch = _make_orchestrator(fake_store, backend, executor=executor)

        chat = asyncio.run(orch.handle_turn(None, "make a note", NO_SEARCH_AGENT))

        assert [t.name for t in chat.tool_definitions] == ["search"]
        assert created == []
        result = chat.messages[-2].tool_results[0]
        assert result.tool_call_id == "n1"
        assert "not enabled" in result.result["error"]
        assert chat.pending_tool_calls() == []
        assert chat.messages[-1].text == "I cannot create notes here."
        assert orch.state is LoadingState.IDLE

    def test_tool_failure_enters_error_state(self, fake_store):
        backend = ScriptedBackend([[StreamChunk(tool_calls=[_call("f1")])]])

        def broken(args):
            raise RuntimeError("index offline")

        executor = ToolExecutor()
        executor.register_handler("search", broken)
        orch = _make_orchestrator(fake_store, backend, executor=executor)

        with pytest.raises(ToolExecutionError):
            asyncio.run(orch.handle_turn(None, "search it", NO_SEARCH_AGENT))

        assert orch.state is LoadingState.ERROR
        saved = next(iter(fake_store.chats.values()))
        chat = Chat.from_dict(saved)
        assert [c.tool_call_id for c in chat.pending_tool_calls()] == ["f1"]
        assert all(m.role != "tool" for m in chat.messages)
        assert len(backend.calls) == 1


class TestDuplicateToolCalls:
    def test_duplicate_within_stream_leaves_chat_unmodified(self, fake_store):
        backend = ScriptedBackend([[
            StreamChunk(text="calling"),
            StreamChunk(tool_calls=[_call("d1"), _call("d1")]),
        ]])
        orch = _make_orchestrator(fake_store, backend)
        chat = Chat(messages=[Message(role="user", content="hi")], model_name="test-model")
        before = [m.to_dict() for m in chat.messages]

        with pytest.raises(DuplicateToolCallError) as exc_info:
            asyncio.run(orch.handle_turn(chat, None))

        assert exc_info.value.tool_call_id == "d1"
        assert [m.to_dict() for m in chat.messages] == before
        assert orch.state is LoadingState.ERROR

    def test_duplicate_of_earlier_call_rejected(self, fake_store):
        backend = ScriptedBackend([[StreamChunk(tool_calls=[_call("x1")])]])
        orch = _make_orchestrator(fake_store, backend)
        earlier = _call("x1")
        chat = Chat(
            messages=[
                Message(role="user", content="hi"),
                Message(role="assistant", content=[earlier]),
                Message.tool_result(earlier, ["doc1"]),
                Message(role="user", content="again"),
            ],
            model_name="test-model",
        )
        before = [m.to_dict() for m in chat.messages]

        with pytest.raises(DuplicateToolCallError):
            asyncio.run(orch.handle_turn(chat, None))

        assert [m.to_dict() for m in chat.messages] == before


class TestCancellation:
    def test_cancel_stops_chunks_and_never_goes_idle(self, fake_store):
        backend = ScriptedBackend()
        orch = _make_orchestrator(fake_store, backend)
        backend.scripts = [[
            StreamChunk(text="Hel"),
            orch.cancel,
            StreamChunk(text="lo"),
            StreamChunk(text=" world"),
        ]]

        chat = asyncio.run(orch.handle_turn(None, "greet me", NO_SEARCH_AGENT))

        assert chat.messages[-1].role == "assistant"
        assert chat.messages[-1].text == "Hel"
        assert orch.state is LoadingState.GENERATING
        events = _drain(orch.event_queue)
        types = [e.type for e in events]
        assert EventType.CANCELLED in types
        assert EventType.COMPLETION not in types
        assert LoadingState.IDLE not in _states(events)
        updates = [e.data["text"] for e in events if e.type == EventType.CHAT_UPDATED]
        assert updates == ["Hel"]

    def test_cancel_before_tool_calls_skips_execution(self, fake_store):
        calls = []
        executor = ToolExecutor()
        executor.register_handler("search", lambda args: calls.append(args))
        backend = ScriptedBackend()
        orch = _make_orchestrator(fake_store, backend, executor=executor)
        backend.scripts = [[
            StreamChunk(text="let me look"),
            orch.cancel,
            StreamChunk(tool_calls=[_call("c9")]),
        ]]

        chat = asyncio.run(orch.handle_turn(None, "find", NO_SEARCH_AGENT))

        assert calls == []
        assert chat.tool_call_ids() == set()

    def test_cancel_without_turn_is_noop(self, fake_store):
        orch = _make_orchestrator(fake_store, ScriptedBackend())
        orch.cancel()
        assert orch.state is LoadingState.IDLE


class TestBackendFailures:
    def test_unsupported_tools_stripped_and_retried_once(self, fake_store):
        backend = ScriptedBackend([
            [UnsupportedCapabilityError("tools not supported")],
            [StreamChunk(text="answer without tools")],
        ])
        orch = _make_orchestrator(fake_store, backend)

        chat = asyncio.run(orch.handle_turn(None, "hello", NO_SEARCH_AGENT))

        assert len(backend.calls) == 2
        assert backend.calls[0]["tools"] == [SEARCH_TOOL]
        assert backend.calls[1]["tools"] == []
        assert chat.tool_definitions == []
        assert chat.messages[-1].text == "answer without tools"
        assert fake_store.get_chat(chat.id).tool_definitions == []
        advisories = [e for e in _drain(orch.event_queue) if e.type == EventType.ADVISORY]
        assert len(advisories) == 1
        assert advisories[0].data["message"] == TOOLS_UNSUPPORTED_ADVISORY
        assert orch.state is LoadingState.IDLE

    def test_unsupported_without_tools_is_raised(self, fake_store):
        backend = ScriptedBackend([[UnsupportedCapabilityError("nope")]])
        orch = _make_orchestrator(fake_store, backend)
        agent = AgentConfig(name="NoTools", db_search_filters=None, tool_definitions=[])

        with pytest.raises(UnsupportedCapabilityError):
            asyncio.run(orch.handle_turn(None, "hello", agent))

        assert len(backend.calls) == 1
        assert orch.state is LoadingState.IDLE

    def test_unsupported_twice_is_raised(self, fake_store):
        backend = ScriptedBackend([
            [UnsupportedCapabilityError("nope")],
            [UnsupportedCapabilityError("still nope")],
        ])
        orch = _make_orchestrator(fake_store, backend)

        with pytest.raises(UnsupportedCapabilityError):
            asyncio.run(orch.handle_turn(None, "hello", NO_SEARCH_AGENT))
        assert len(backend.calls) == 2

    def test_stream_error_returns_to_idle_and_reraises(self, fake_store):
        backend = ScriptedBackend([[StreamChunk(text="partial"), StreamError("connection reset")]])
        orch = _make_orchestrator(fake_store, backend)

        with pytest.raises(StreamError):
            asyncio.run(orch.handle_turn(None, "hello", NO_SEARCH_AGENT))

        assert orch.state is LoadingState.IDLE
        errors = [e for e in _drain(orch.event_queue) if e.type == EventType.ERROR]
        assert errors[0].data["message"] == "connection reset"

    def test_missing_model_is_configuration_error(self, fake_store):
        fake_store.config["default_llm"] = ""
        orch = _make_orchestrator(fake_store, ScriptedBackend())

        with pytest.raises(NoModelConfiguredError):
            asyncio.run(orch.handle_turn(None, "hello", NO_SEARCH_AGENT))
        assert orch.state is LoadingState.IDLE
