"""Exception hierarchy for ragnote.

Cancellation is deliberately absent: a cancelled stream ends quietly and is
not reported through any of these classes.
"""

from __future__ import annotations


class RagnoteError(Exception):
    """Base exception for all ragnote errors."""


class ConfigurationError(RagnoteError):
    """Missing or invalid model/API configuration. Fatal, never retried."""


class NoModelConfiguredError(ConfigurationError):
    def __init__(self) -> None:
        super().__init__("No LLM has been configured. Please setup an LLM in settings.")


class ModelNotFoundError(ConfigurationError):
    def __init__(self, model_name: str):
        super().__init__(f"LLM {model_name} not found.")
        self.model_name = model_name


class APINotFoundError(ConfigurationError):
    def __init__(self, api_name: str):
        super().__init__(f"API {api_name} not found.")
        self.api_name = api_name


class UnsupportedInterfaceError(ConfigurationError):
    def __init__(self, api_interface: str):
        super().__init__(f"API interface {api_interface} not supported.")
        self.api_interface = api_interface


class SchemaMismatchError(RagnoteError):
    """A vector table's schema differs from its embedding function's schema.

    Handled inside the table manager by recreating the table.
    """

    def __init__(self, table_name: str, expected: str, actual: str):
        super().__init__(f"Schema mismatch for table {table_name}")
        self.table_name = table_name
        self.expected = expected
        self.actual = actual


class TableError(RagnoteError):
    """A vector storage operation failed."""

    def __init__(self, message: str, operation: str, table_name: str | None = None):
        super().__init__(message)
        self.operation = operation
        self.table_name = table_name


class RetrievalError(RagnoteError):
    """Grounding context could not be retrieved. Distinct from an empty result."""


class StreamError(RagnoteError):
    """The model backend failed while opening or consuming a stream."""


class UnsupportedCapabilityError(RagnoteError):
    """The selected model does not support a requested capability (tool calling)."""


class DuplicateToolCallError(RagnoteError):
    """The backend emitted a tool call id that already exists in the chat."""

    def __init__(self, tool_call_id: str):
        super().__init__(f"duplicate tool call id: {tool_call_id}")
        self.tool_call_id = tool_call_id


class ToolExecutionError(RagnoteError):
    """A tool executor failed, leaving its call without a result."""

    def __init__(self, message: str, tool_name: str, tool_call_id: str | None = None):
        super().__init__(message)
        self.tool_name = tool_name
        self.tool_call_id = tool_call_id


class PersistenceError(RagnoteError):
    """The chat/config store failed."""

    def __init__(self, message: str, operation: str):
        super().__init__(message)
        self.operation = operation
