"""Tool registry for ragnote.

Defines the built-in tools and converts definitions to each backend's
wire format.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ToolDefinition:
    """A tool the model may call. ``parameters`` is a JSON schema object."""

    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    auto_execute: bool = True

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_anthropic(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
            "auto_execute": self.auto_execute,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ToolDefinition:
        return cls(
            name=d["name"],
            description=d.get("description", ""),
            parameters=d.get("parameters") or {"type": "object", "properties": {}},
            auto_execute=d.get("auto_execute", True),
        )


SEARCH_TOOL = ToolDefinition(
    name="search",
    description="Semantically search the user's personal knowledge base",
    parameters={
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "The query to search for",
            },
            "limit": {
                "type": "integer",
                "description": "The number of results to return",
                "default": 10,
            },
            "filter": {
                "type": "string",
                "description": (
                    "The filter to apply to the search. The columns available are "
                    "filemodified and filecreated which are both timestamps. "
                    "An example filter would be "
                    "filemodified > timestamp '2024-01-01 00:00:00'."
                ),
            },
        },
        "required": ["query"],
    },
)

CREATE_NOTE_TOOL = ToolDefinition(
    name="createNote",
    description="Create a new note in the user's knowledge base",
    parameters={
        "type": "object",
        "properties": {
            "filename": {
                "type": "string",
                "description": "The filename of the note, relative to the vault root",
            },
            "content": {
                "type": "string",
                "description": "The markdown content of the note",
            },
        },
        "required": ["filename", "content"],
    },
    auto_execute=False,
)


def get_tool_definitions() -> list[ToolDefinition]:
    """Return all built-in tool definitions."""
    return [SEARCH_TOOL, CREATE_NOTE_TOOL]


def get_tool_definition(name: str) -> ToolDefinition | None:
    for tool in get_tool_definitions():
        if tool.name == name:
            return tool
    return None
