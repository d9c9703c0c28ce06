"""Retrieval resolver: turns a query and filters into grounding context.

Explicit files always win over search. Otherwise the vault table is searched
in the requested mode, optionally expanding hits to their full notes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from ragnote.core.chat import RetrievalResult
from ragnote.core.errors import RetrievalError, TableError
from ragnote.vault.embeddings import EmbeddingFunction
from ragnote.vault.files import read_files_with_contents
from ragnote.vault.schema import DBFields
from ragnote.vault.search import hybrid_search, text_search, vector_search

logger = logging.getLogger(__name__)


class SearchMode(Enum):
    VECTOR = "vector"
    TEXT = "text"
    HYBRID = "hybrid"


@dataclass
class RetrievalFilters:
    """What grounds a query: explicit files, or a capped, date-bounded search."""

    files: list[str] = field(default_factory=list)
    limit: int = 15
    min_date: datetime | None = None
    max_date: datetime | None = None
    search_mode: SearchMode = SearchMode.VECTOR
    pass_full_note_into_context: bool = False


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime("%Y-%m-%d %H:%M:%S")


def generate_timestamp_filter(
    min_date: datetime | None = None, max_date: datetime | None = None
) -> str:
    """SQL predicate bounding ``filemodified``; empty when neither bound is set."""
    clauses = []
    if min_date is not None:
        clauses.append(f"{DBFields.FILE_MODIFIED} > timestamp '{_format_timestamp(min_date)}'")
    if max_date is not None:
        clauses.append(f"{DBFields.FILE_MODIFIED} < timestamp '{_format_timestamp(max_date)}'")
    return " AND ".join(clauses)


def unique_notepaths(results: list[RetrievalResult]) -> list[str]:
    """Distinct note paths in order of first occurrence."""
    paths: list[str] = []
    for result in results:
        if result.notepath not in paths:
            paths.append(result.notepath)
    return paths


class RetrievalResolver:
    """Resolves queries against one vault.

    ``open_table`` is called on first search; a failure there, or in the
    search itself, is a RetrievalError rather than an empty result.
    """

    def __init__(
        self,
        vault_root: Path,
        open_table: Callable[[], Any],
        embedding_fn: EmbeddingFunction,
    ):
        self.vault_root = vault_root
        self._open_table = open_table
        self.embedding_fn = embedding_fn
        self._table: Any = None

    @property
    def table(self) -> Any:
        if self._table is None:
            try:
                self._table = self._open_table()
            except TableError as e:
                raise RetrievalError(f"Vector table unavailable: {e}") from e
        return self._table

    def search(
        self,
        query: str,
        limit: int,
        filter: str = "",
        mode: SearchMode = SearchMode.VECTOR,
    ) -> list[RetrievalResult]:
        table = self.table
        try:
            if mode is SearchMode.TEXT:
                results = text_search(table, query, limit, filter)
            elif mode is SearchMode.HYBRID:
                results = hybrid_search(table, self.embedding_fn, query, limit, filter)
            else:
                results = vector_search(table, self.embedding_fn, query, limit, filter)
        except Exception as e:
            raise RetrievalError(f"{mode.value} search failed: {e}") from e
        logger.debug("%s search for %r returned %d results", mode.value, query, len(results))
        return results

    def resolve_sync(self, query: str, filters: RetrievalFilters) -> list[RetrievalResult]:
        if filters.files:
            return read_files_with_contents(self.vault_root, filters.files)
        if filters.limit <= 0:
            return []
        timestamp_filter = generate_timestamp_filter(filters.min_date, filters.max_date)
        results = self.search(query, filters.limit, timestamp_filter, filters.search_mode)
        if filters.pass_full_note_into_context:
            return read_files_with_contents(self.vault_root, unique_notepaths(results))
        return results

    async def resolve(self, query: str, filters: RetrievalFilters) -> list[RetrievalResult]:
        """Grounding context for ``query``, in the order it should be presented."""
        return await asyncio.to_thread(self.resolve_sync, query, filters)
