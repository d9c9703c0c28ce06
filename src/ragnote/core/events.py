"""Event model for chat turns.

Structured events flow from the orchestrator through an asyncio.Queue
to the REPL renderer, decoupling generation from display.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class LoadingState(Enum):
    """Orchestrator state for one chat."""

    IDLE = "idle"
    WAITING_FOR_FIRST_TOKEN = "waiting-for-first-token"
    GENERATING = "generating"
    TOOL_EXECUTION = "tool-execution"
    ERROR = "error"


class EventType(Enum):
    """Types of events emitted during a chat turn."""

    STATE_CHANGED = "state_changed"
    CHAT_UPDATED = "chat_updated"
    TOOL_USE_START = "tool_use_start"
    TOOL_RESULT = "tool_result"
    ADVISORY = "advisory"
    STATUS = "status"
    ERROR = "error"
    COMPLETION = "completion"
    CANCELLED = "cancelled"


@dataclass
class ChatEvent:
    """A single event emitted by the orchestrator."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def state_changed(state: LoadingState) -> ChatEvent:
        return ChatEvent(type=EventType.STATE_CHANGED, data={"state": state})

    @staticmethod
    def chat_updated(chat_id: str, text: str = "") -> ChatEvent:
        """The chat changed; ``text`` is the chunk just appended, if any."""
        return ChatEvent(
            type=EventType.CHAT_UPDATED,
            data={"chat_id": chat_id, "text": text},
        )

    @staticmethod
    def tool_use_start(name: str, tool_id: str) -> ChatEvent:
        return ChatEvent(
            type=EventType.TOOL_USE_START,
            data={"name": name, "id": tool_id},
        )

    @staticmethod
    def tool_result(name: str, tool_id: str, result: Any) -> ChatEvent:
        return ChatEvent(
            type=EventType.TOOL_RESULT,
            data={"name": name, "id": tool_id, "result": result},
        )

    @staticmethod
    def advisory(message: str) -> ChatEvent:
        """A user-facing notice that does not end the turn."""
        return ChatEvent(type=EventType.ADVISORY, data={"message": message})

    @staticmethod
    def status(message: str) -> ChatEvent:
        return ChatEvent(type=EventType.STATUS, data={"message": message})

    @staticmethod
    def completion(chat_id: str, text: str) -> ChatEvent:
        return ChatEvent(
            type=EventType.COMPLETION,
            data={"chat_id": chat_id, "text": text},
        )

    @staticmethod
    def cancelled() -> ChatEvent:
        return ChatEvent(type=EventType.CANCELLED)

    @staticmethod
    def error(message: str) -> ChatEvent:
        return ChatEvent(type=EventType.ERROR, data={"message": message})
