"""Vault search over a LanceDB table: vector, text, and hybrid with RRF fusion."""

from __future__ import annotations

import logging
from typing import Any

from ragnote.core.chat import RetrievalResult
from ragnote.vault.embeddings import EmbeddingFunction
from ragnote.vault.schema import DBFields

logger = logging.getLogger(__name__)

RRF_K = 60


def row_to_result(row: dict[str, Any]) -> RetrievalResult:
    return RetrievalResult(
        content=row.get(DBFields.CONTENT, ""),
        notepath=row.get(DBFields.NOTEPATH, ""),
        file_modified=row.get(DBFields.FILE_MODIFIED),
        file_created=row.get(DBFields.FILE_CREATED),
        subnote_index=row.get(DBFields.SUBNOTE_INDEX) or 0,
        distance=row.get("_distance"),
    )


def vector_search(
    table: Any,
    embedding_fn: EmbeddingFunction,
    query: str,
    limit: int,
    filter: str = "",
) -> list[RetrievalResult]:
    """Nearest rows to the query's embedding, closest first."""
    query_vector = embedding_fn([query])[0]
    builder = table.search(query_vector)
    if filter:
        builder = builder.where(filter, prefilter=True)
    rows = builder.limit(limit).to_list()
    return [row_to_result(r) for r in rows]


def text_search(
    table: Any,
    query: str,
    limit: int,
    filter: str = "",
) -> list[RetrievalResult]:
    """Rows scored by the fraction of query words they contain, best first."""
    query_words = query.lower().split()
    if not query_words:
        return []

    total = table.count_rows(filter) if filter else table.count_rows()
    if total == 0:
        return []
    builder = table.search()
    if filter:
        builder = builder.where(filter)
    rows = builder.limit(total).to_list()

    scored = []
    for position, row in enumerate(rows):
        content_lower = (row.get(DBFields.CONTENT) or "").lower()
        score = sum(1 for w in query_words if w in content_lower)
        if score > 0:
            scored.append((score / len(query_words), position, row))

    # Stable on ties: table order
    scored.sort(key=lambda s: (-s[0], s[1]))
    return [row_to_result(row) for _, _, row in scored[:limit]]


def _result_key(result: RetrievalResult) -> tuple[str, int]:
    return (result.notepath, result.subnote_index)


def reciprocal_rank_fusion(
    rankings: list[list[RetrievalResult]], limit: int, k: int = RRF_K
) -> list[RetrievalResult]:
    """Fuse ranked lists; each hit scores 1 / (k + rank) per list it appears in."""
    scores: dict[tuple[str, int], float] = {}
    first_seen: dict[tuple[str, int], RetrievalResult] = {}
    for ranking in rankings:
        for rank, result in enumerate(ranking, start=1):
            key = _result_key(result)
            scores[key] = scores.get(key, 0.0) + 1.0 / (k + rank)
            first_seen.setdefault(key, result)
    ordered = sorted(first_seen, key=lambda key: scores[key], reverse=True)
    return [first_seen[key] for key in ordered[:limit]]


def hybrid_search(
    table: Any,
    embedding_fn: EmbeddingFunction,
    query: str,
    limit: int,
    filter: str = "",
) -> list[RetrievalResult]:
    """Vector and text rankings fused with reciprocal rank fusion."""
    vector_results = vector_search(table, embedding_fn, query, limit * 2, filter)
    text_results = text_search(table, query, limit * 2, filter)
    logger.debug(
        "Hybrid search: %d vector hits, %d text hits",
        len(vector_results), len(text_results),
    )
    return reciprocal_rank_fusion([vector_results, text_results], limit)
