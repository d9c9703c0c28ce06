"""prompt_toolkit REPL for ragnote chat.

The REPL is the supervisor: each turn runs as an asyncio.Task while the
REPL renders the orchestrator's events. Ctrl+C cancels the running turn
and returns to the prompt.
"""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import FileHistory

from ragnote.chat.renderer import ChatRenderer
from ragnote.core.agents import AgentConfig, DEFAULT_AGENT, get_agent_config, load_agent_configs
from ragnote.core.chat import Chat
from ragnote.core.errors import RagnoteError
from ragnote.core.events import ChatEvent, EventType, LoadingState
from ragnote.core.orchestrator import ChatOrchestrator
from ragnote.core.runtime import create_orchestrator
from ragnote.utils.paths import get_history_path


def confirm_table_recreation(table_name: str, old_schema: str, new_schema: str) -> bool:
    """Ask before a vault table is dropped because its schema changed."""
    from prompt_toolkit import prompt as pt_prompt

    print(
        f"The embedding model changed, so table {table_name} must be recreated.\n"
        "All indexed vectors in it will be deleted and the vault must be re-indexed."
    )
    try:
        response = pt_prompt(HTML('<style fg="yellow">Recreate? [Y/n] </style>')).strip().lower()
    except (EOFError, KeyboardInterrupt):
        return False
    return response in ("", "y", "yes")


class ReplState:
    """What the REPL is currently pointed at."""

    def __init__(self, agent: AgentConfig, chat: Chat | None = None):
        self.agent = agent
        self.chat = chat


def run_repl(vault_root: Path, chat_id: str | None = None, agent_name: str | None = None) -> None:
    """Run the interactive chat loop for a vault."""
    renderer = ChatRenderer()
    event_queue: asyncio.Queue[ChatEvent] = asyncio.Queue()
    orchestrator = create_orchestrator(
        vault_root, event_queue=event_queue, confirm_recreate=confirm_table_recreation
    )

    agent = DEFAULT_AGENT
    if agent_name:
        found = get_agent_config(agent_name, vault_root)
        if found is None:
            renderer.render_error(f"Unknown agent: {agent_name}")
            return
        agent = found
    state = ReplState(agent)

    if chat_id:
        state.chat = orchestrator.store.get_chat(chat_id)
        if state.chat is None:
            renderer.render_error(f"Chat not found: {chat_id}")
            return
        for message in state.chat.messages:
            renderer.render_message(message)

    model = (state.chat.model_name if state.chat else None) or orchestrator.registry.get_default_llm()
    renderer.render_welcome(str(vault_root), state.agent.name, model)

    try:
        asyncio.run(_async_repl(orchestrator, renderer, state, vault_root))
    except KeyboardInterrupt:
        pass


async def _async_repl(
    orchestrator: ChatOrchestrator,
    renderer: ChatRenderer,
    state: ReplState,
    vault_root: Path,
) -> None:
    """Async REPL loop using prompt_toolkit's prompt_async."""
    prompt_session: PromptSession = PromptSession(
        history=FileHistory(str(get_history_path(vault_root))),
    )

    while True:
        try:
            raw_input = (await prompt_session.prompt_async(
                HTML('<style fg="green">ragnote&gt; </style>')
            )).strip()
        except (EOFError, KeyboardInterrupt):
            print()
            break

        if not raw_input:
            continue

        if raw_input in ("/quit", "/exit"):
            break
        if raw_input.startswith("/"):
            await _handle_command(raw_input, orchestrator, renderer, state, vault_root)
            continue

        await run_turn_with_events(orchestrator, renderer, state, raw_input)


async def _handle_command(
    user_input: str,
    orchestrator: ChatOrchestrator,
    renderer: ChatRenderer,
    state: ReplState,
    vault_root: Path,
) -> None:
    parts = user_input.split(None, 1)
    cmd = parts[0]
    arg = parts[1].strip() if len(parts) > 1 else ""

    if cmd == "/help":
        _show_help(renderer)
    elif cmd == "/new":
        state.chat = None
        renderer.render_info("Started a new chat.")
    elif cmd == "/chats":
        renderer.render_chat_list(orchestrator.store.list_chat_metadata())
    elif cmd == "/load":
        chat = orchestrator.store.get_chat(arg)
        if chat is None:
            renderer.render_error(f"Chat not found: {arg}")
            return
        state.chat = chat
        for message in chat.messages:
            renderer.render_message(message)
    elif cmd == "/agents":
        for agent in load_agent_configs(vault_root):
            marker = " *" if agent.name == state.agent.name else ""
            renderer.render_info(f"  {agent.name}{marker}")
    elif cmd == "/agent":
        agent = get_agent_config(arg, vault_root)
        if agent is None:
            renderer.render_error(f"Unknown agent: {arg}")
            return
        state.agent = agent
        renderer.render_info(f"Agent for new chats: {agent.name}")
    elif cmd == "/models":
        models = await asyncio.to_thread(orchestrator.registry.all_llm_configs)
        renderer.render_model_list(models, orchestrator.registry.get_default_llm())
    elif cmd == "/model":
        if not arg:
            renderer.render_info(f"Default model: {orchestrator.registry.get_default_llm() or 'not set'}")
            return
        orchestrator.registry.set_default_llm(arg)
        if state.chat is not None:
            state.chat.model_name = arg
        renderer.render_info(f"Model: {arg}")
    elif cmd == "/run":
        if state.chat is None or not state.chat.pending_tool_calls():
            renderer.render_info("No pending tool calls.")
            return
        try:
            await orchestrator.execute_pending_tool_calls(state.chat)
        except RagnoteError as e:
            renderer.render_error(str(e))
            return
        _drain_events(orchestrator, renderer)
        await run_turn_with_events(orchestrator, renderer, state, None)
    else:
        renderer.render_error(f"Unknown command: {cmd}")


async def run_turn_with_events(
    orchestrator: ChatOrchestrator,
    renderer: ChatRenderer,
    state: ReplState,
    user_input: str | None,
) -> None:
    """Run one turn as a cancellable task, rendering events as they arrive.

    Ctrl+C cancels the stream at the next chunk and returns to the prompt.
    A new chat is attached to the REPL before the turn starts, so it is kept
    even when the turn fails.
    """
    event_queue = orchestrator.event_queue
    if event_queue is None:
        raise ValueError("The REPL needs an orchestrator with an event queue")
    if state.chat is None and (user_input or "").strip():
        state.chat = Chat()
    turn_task = asyncio.create_task(
        orchestrator.handle_turn(state.chat, user_input, state.agent)
    )

    original_handler = signal.getsignal(signal.SIGINT)

    def _sigint_cancel(sig, frame):
        orchestrator.cancel()

    signal.signal(signal.SIGINT, _sigint_cancel)

    renderer.render_streaming_start()
    try:
        while not turn_task.done() or not event_queue.empty():
            get_event = asyncio.ensure_future(event_queue.get())
            done, _ = await asyncio.wait(
                [get_event, turn_task], return_when=asyncio.FIRST_COMPLETED
            )
            if get_event in done:
                _handle_event(get_event.result(), renderer)
            else:
                get_event.cancel()
        state.chat = turn_task.result() or state.chat
        if state.chat is not None and state.chat.pending_tool_calls():
            renderer.render_pending_tools(state.chat.pending_tool_calls())
    except RagnoteError:
        # Already rendered through the ERROR event
        pass
    finally:
        signal.signal(signal.SIGINT, original_handler)
        renderer.render_streaming_end()


def _drain_events(orchestrator: ChatOrchestrator, renderer: ChatRenderer) -> None:
    queue = orchestrator.event_queue
    while queue is not None and not queue.empty():
        _handle_event(queue.get_nowait(), renderer)


def _handle_event(event: ChatEvent, renderer: ChatRenderer) -> None:
    """Dispatch an orchestrator event to the appropriate renderer method."""
    if event.type == EventType.CHAT_UPDATED:
        renderer.render_text_delta(event.data.get("text", ""))
    elif event.type == EventType.STATE_CHANGED:
        if event.data.get("state") is LoadingState.WAITING_FOR_FIRST_TOKEN:
            renderer.render_status("Thinking...")
    elif event.type == EventType.TOOL_USE_START:
        renderer.render_tool_use(event.data.get("name", ""), {})
    elif event.type == EventType.TOOL_RESULT:
        renderer.render_tool_result(event.data.get("name", ""), event.data.get("result"))
    elif event.type == EventType.ADVISORY:
        renderer.render_advisory(event.data.get("message", ""))
    elif event.type == EventType.STATUS:
        renderer.render_status(event.data.get("message", ""))
    elif event.type == EventType.COMPLETION:
        pass  # Text was already streamed via CHAT_UPDATED events
    elif event.type == EventType.CANCELLED:
        renderer.render_cancelled()
    elif event.type == EventType.ERROR:
        renderer.render_error(event.data.get("message", "Unknown error"))


def _show_help(renderer: ChatRenderer) -> None:
    help_text = (
        "**Commands:**\n"
        "- `/new` - Start a new chat\n"
        "- `/chats` - List chats\n"
        "- `/load <id>` - Open a chat\n"
        "- `/agents` - List agents\n"
        "- `/agent <name>` - Use an agent for new chats\n"
        "- `/models` - List models\n"
        "- `/model [name]` - Show or set the model\n"
        "- `/run` - Execute pending tool calls and continue\n"
        "- `/quit` - Exit\n\n"
        "**Input:**\n"
        "- `@note.md` - Use a note as context for a new chat\n"
        "- `Ctrl+C` - Cancel the running response\n"
    )
    renderer.render_assistant_message(help_text)
