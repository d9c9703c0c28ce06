"""Conversation state for ragnote.

A Chat is an ordered list of Messages. Messages are appended in
conversational order and never rewritten, except that streamed tokens
accumulate into the trailing assistant message.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Union

from ragnote.tools.registry import ToolDefinition


DISPLAY_NAME_LENGTH = 30


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _format_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class RetrievalResult:
    """One unit of grounding context: a chunk or a whole note."""

    content: str
    notepath: str
    file_modified: datetime | None = None
    file_created: datetime | None = None
    subnote_index: int = 0
    distance: float | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "content": self.content,
            "notepath": self.notepath,
            "file_modified": _format_datetime(self.file_modified),
            "file_created": _format_datetime(self.file_created),
            "subnote_index": self.subnote_index,
        }
        if self.distance is not None:
            d["distance"] = self.distance
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> RetrievalResult:
        return cls(
            content=d["content"],
            notepath=d["notepath"],
            file_modified=_parse_datetime(d.get("file_modified")),
            file_created=_parse_datetime(d.get("file_created")),
            subnote_index=d.get("subnote_index", 0),
            distance=d.get("distance"),
        )


@dataclass
class TextPart:
    text: str
    type: str = "text"


@dataclass
class ToolCallPart:
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = field(default_factory=dict)
    type: str = "tool-call"


@dataclass
class ToolResultPart:
    tool_call_id: str
    tool_name: str
    result: Any = None
    type: str = "tool-result"


ContentPart = Union[TextPart, ToolCallPart, ToolResultPart]

_PART_TYPES: dict[str, type] = {
    "text": TextPart,
    "tool-call": ToolCallPart,
    "tool-result": ToolResultPart,
}


@dataclass
class Message:
    """A single conversation message.

    ``content`` is plain text, or a list of parts for assistant messages
    (text and tool calls) and tool messages (tool results).
    ``visible_content`` overrides what the user sees when ``content`` embeds
    retrieved context. ``context`` holds value copies of the retrieval
    results that produced the message.
    """

    role: str  # "system", "user", "assistant", "tool"
    content: str | list[ContentPart]
    visible_content: str | None = None
    context: list[RetrievalResult] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        if isinstance(self.content, str):
            return []
        return [p for p in self.content if isinstance(p, ToolCallPart)]

    @property
    def tool_results(self) -> list[ToolResultPart]:
        if isinstance(self.content, str):
            return []
        return [p for p in self.content if isinstance(p, ToolResultPart)]

    @classmethod
    def tool_result(cls, call: ToolCallPart, result: Any) -> Message:
        return cls(
            role="tool",
            content=[ToolResultPart(call.tool_call_id, call.tool_name, result)],
        )

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            content: Any = self.content
        else:
            content = [asdict(p) for p in self.content]
        d: dict[str, Any] = {
            "role": self.role,
            "content": content,
            "timestamp": self.timestamp,
        }
        if self.visible_content is not None:
            d["visible_content"] = self.visible_content
        if self.context:
            d["context"] = [r.to_dict() for r in self.context]
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Message:
        content = d["content"]
        if isinstance(content, list):
            content = [
                _PART_TYPES[p["type"]](**{k: v for k, v in p.items() if k != "type"})
                for p in content
            ]
        return cls(
            role=d["role"],
            content=content,
            visible_content=d.get("visible_content"),
            context=[RetrievalResult.from_dict(r) for r in d.get("context", [])],
            timestamp=d.get("timestamp", 0.0),
        )


@dataclass
class ChatMetadata:
    """Metadata about a chat for listing."""

    id: str
    display_name: str
    time_of_last_message: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ChatMetadata:
        return cls(**d)


@dataclass
class Chat:
    """A conversation and the configuration it was seeded with."""

    id: str = field(default_factory=lambda: str(int(time.time() * 1000)))
    messages: list[Message] = field(default_factory=list)
    display_name: str = ""
    time_of_last_message: float = field(default_factory=time.time)
    tool_definitions: list[ToolDefinition] = field(default_factory=list)
    agent_name: str = "default"
    model_name: str | None = None

    def to_metadata(self) -> ChatMetadata:
        return ChatMetadata(
            id=self.id,
            display_name=self.display_name,
            time_of_last_message=self.time_of_last_message,
        )

    def tool_call_ids(self) -> set[str]:
        return {c.tool_call_id for m in self.messages for c in m.tool_calls}

    def tool_result_ids(self) -> set[str]:
        return {r.tool_call_id for m in self.messages for r in m.tool_results}

    def pending_tool_calls(self) -> list[ToolCallPart]:
        """Tool calls that have no matching result yet, in call order."""
        resolved = self.tool_result_ids()
        return [
            c for m in self.messages for c in m.tool_calls
            if c.tool_call_id not in resolved
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "messages": [m.to_dict() for m in self.messages],
            "display_name": self.display_name,
            "time_of_last_message": self.time_of_last_message,
            "tool_definitions": [t.to_dict() for t in self.tool_definitions],
            "agent_name": self.agent_name,
            "model_name": self.model_name,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Chat:
        return cls(
            id=d["id"],
            messages=[Message.from_dict(m) for m in d.get("messages", [])],
            display_name=d.get("display_name", ""),
            time_of_last_message=d.get("time_of_last_message", 0.0),
            tool_definitions=[
                ToolDefinition.from_dict(t) for t in d.get("tool_definitions", [])
            ],
            agent_name=d.get("agent_name", "default"),
            model_name=d.get("model_name"),
        )


def append_text_to_messages(messages: list[Message], text: str) -> Message | None:
    """Append streamed text to the trailing assistant message.

    Creates a new assistant message when the last message is not one.
    Returns the message that received the text.
    """
    if text == "":
        return None
    if messages and messages[-1].role == "assistant":
        last = messages[-1]
        if isinstance(last.content, str):
            last.content += text
        elif last.content and isinstance(last.content[-1], TextPart):
            last.content[-1].text += text
        else:
            last.content.append(TextPart(text))
        return last
    message = Message(role="assistant", content=text)
    messages.append(message)
    return message


def append_tool_calls_to_messages(
    messages: list[Message], tool_calls: list[ToolCallPart]
) -> None:
    """Attach tool-call parts to the trailing assistant message."""
    if not tool_calls:
        return
    if not messages or messages[-1].role != "assistant":
        messages.append(Message(role="assistant", content=[]))
    last = messages[-1]
    if isinstance(last.content, str):
        last.content = [TextPart(last.content)] if last.content else []
    last.content.extend(tool_calls)


def remove_unresolved_tool_calls(messages: list[Message]) -> list[Message]:
    """Return a copy of messages with dangling tool calls stripped.

    An assistant message left with no text and no calls is dropped.
    """
    resolved = {r.tool_call_id for m in messages for r in m.tool_results}
    cleaned: list[Message] = []
    for message in messages:
        if message.role != "assistant" or isinstance(message.content, str):
            cleaned.append(message)
            continue
        parts = [
            p for p in message.content
            if not isinstance(p, ToolCallPart) or p.tool_call_id in resolved
        ]
        if len(parts) == len(message.content):
            cleaned.append(message)
        elif any(
            isinstance(p, ToolCallPart) or (isinstance(p, TextPart) and p.text)
            for p in parts
        ):
            cleaned.append(Message(
                role=message.role,
                content=parts,
                visible_content=message.visible_content,
                context=message.context,
                timestamp=message.timestamp,
            ))
    return cleaned


def message_display_text(message: Message | None) -> str:
    """Text a user should see for a message."""
    if message is None:
        return ""
    if message.visible_content:
        return message.visible_content
    return message.text


def get_display_name(messages: list[Message]) -> str:
    """Derive a chat name from the first user message."""
    for message in messages:
        if message.role == "user":
            text = message_display_text(message).strip()
            if len(text) > DISPLAY_NAME_LENGTH:
                return text[:DISPLAY_NAME_LENGTH] + "..."
            return text
    return ""


def chat_history_context(chat: Chat | None) -> list[RetrievalResult]:
    """All retrieval results referenced anywhere in the chat, in message order."""
    if chat is None:
        return []
    return [r for m in chat.messages for r in m.context]
