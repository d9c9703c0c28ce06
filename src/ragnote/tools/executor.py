"""Tool executor for ragnote.

Maps tool names to handlers. The orchestrator does not know what a tool
does; it only hands over the call's arguments and threads the result back.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine

from ragnote.core.chat import ToolCallPart
from ragnote.core.errors import ToolExecutionError

logger = logging.getLogger(__name__)


class ToolExecutor:
    """Dispatches tool calls to registered handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[[dict[str, Any]], Any]] = {}
        self._async_handlers: dict[str, Callable[..., Coroutine]] = {}

    def register_handler(self, tool_name: str, handler: Callable[[dict[str, Any]], Any]) -> None:
        """Register a handler function for a tool."""
        self._handlers[tool_name] = handler

    def register_async_handler(
        self, tool_name: str, handler: Callable[..., Coroutine]
    ) -> None:
        """Register an async handler for a tool.

        Async handlers are preferred by execute(). Tools without an async
        handler run their sync handler in a thread.
        """
        self._async_handlers[tool_name] = handler

    def has_handler(self, tool_name: str) -> bool:
        return tool_name in self._async_handlers or tool_name in self._handlers

    async def execute(self, call: ToolCallPart) -> Any:
        """Run one tool call and return its result.

        Raises ToolExecutionError for unknown tools and failing handlers.
        """
        name = call.tool_name
        logger.info("Executing tool %s (%s)", name, call.tool_call_id)
        try:
            if name in self._async_handlers:
                return await self._async_handlers[name](call.args)
            if name in self._handlers:
                return await asyncio.to_thread(self._handlers[name], call.args)
        except Exception as e:
            logger.exception("Tool %s failed", name)
            raise ToolExecutionError(
                f"Tool {name} failed: {e}", tool_name=name, tool_call_id=call.tool_call_id
            ) from e
        raise ToolExecutionError(
            f"No handler registered for tool: {name}",
            tool_name=name,
            tool_call_id=call.tool_call_id,
        )
