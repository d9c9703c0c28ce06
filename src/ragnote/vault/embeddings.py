"""Embedding functions for the vault's vector tables."""

from __future__ import annotations

from typing import Any, Protocol

DEFAULT_EMBEDDING_MODEL = "all-MiniLM-L6-v2"


class EmbeddingFunction(Protocol):
    """A named callable producing fixed-width vectors.

    ``name`` is stable across runs and is part of the table name.
    """

    name: str

    @property
    def dimensions(self) -> int: ...

    def __call__(self, texts: list[str]) -> list[list[float]]: ...


class SentenceTransformerEmbedding:
    """Embedding function backed by a sentence-transformers model.

    The model is loaded on first use.
    """

    def __init__(self, model_name: str = DEFAULT_EMBEDDING_MODEL):
        self.name = model_name
        self._model: Any = None

    def _get_model(self) -> Any:
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            self._model = SentenceTransformer(self.name)
        return self._model

    @property
    def dimensions(self) -> int:
        return int(self._get_model().get_sentence_embedding_dimension())

    def __call__(self, texts: list[str]) -> list[list[float]]:
        return self._get_model().encode(texts).tolist()

    def embed_query(self, text: str) -> list[float]:
        return self([text])[0]
