"""Vault search tool handler."""

from __future__ import annotations

from typing import Any

from ragnote.vault.retrieval import RetrievalResolver, SearchMode

DEFAULT_LIMIT = 10


def handle_search(
    tool_input: dict[str, Any],
    resolver: RetrievalResolver,
    search_mode: SearchMode = SearchMode.VECTOR,
) -> list[dict[str, Any]]:
    """Search the vault.

    ``filter`` is passed through as a SQL predicate over the filemodified
    and filecreated columns.
    """
    query = tool_input["query"]
    limit = int(tool_input.get("limit") or DEFAULT_LIMIT)
    filter = tool_input.get("filter") or ""
    results = resolver.search(query, limit, filter, search_mode)
    return [r.to_dict() for r in results]
