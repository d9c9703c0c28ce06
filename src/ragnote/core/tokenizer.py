"""Tokenizer resolution backed by tiktoken.

Unknown model names fall back to a reference encoding, so slicing to a
context window always has a usable approximation.
"""

from __future__ import annotations

import logging
from functools import lru_cache

import tiktoken

logger = logging.getLogger(__name__)

FALLBACK_MODEL = "gpt-3.5-turbo"


class Tokenizer:
    """Callable text -> token ids, with the inverse ``decode``."""

    def __init__(self, encoding: tiktoken.Encoding):
        self._encoding = encoding

    @property
    def name(self) -> str:
        return self._encoding.name

    def __call__(self, text: str) -> list[int]:
        return self.encode(text)

    def encode(self, text: str) -> list[int]:
        return self._encoding.encode(text, disallowed_special=())

    def decode(self, tokens: list[int]) -> str:
        return self._encoding.decode(tokens)


@lru_cache(maxsize=None)
def get_tokenizer(model_name: str) -> Tokenizer:
    """Resolve a tokenizer for a model name. Never raises for unknown names."""
    try:
        encoding = tiktoken.encoding_for_model(model_name)
    except KeyError:
        logger.debug("No tiktoken encoding for %s; using %s", model_name, FALLBACK_MODEL)
        encoding = tiktoken.encoding_for_model(FALLBACK_MODEL)
    return Tokenizer(encoding)
