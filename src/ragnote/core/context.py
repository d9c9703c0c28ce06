"""Context window management for ragnote.

Truncates strings and lists of strings so they fit a model's context
length, measured with the model's tokenizer.
"""

from __future__ import annotations

from typing import Protocol, overload


class TokenCodec(Protocol):
    def encode(self, text: str) -> list[int]: ...

    def decode(self, tokens: list[int]) -> str: ...


def slice_string_to_context_length(
    text: str, tokenizer: TokenCodec, max_tokens: int
) -> str:
    """Keep the earliest ``max_tokens`` tokens of text.

    Text already within budget is returned unchanged. The cut is on a token
    boundary, not a word boundary.
    """
    if max_tokens <= 0:
        return ""
    tokens = tokenizer.encode(text)
    if len(tokens) <= max_tokens:
        return text
    return tokenizer.decode(tokens[:max_tokens])


def slice_list_of_strings_to_context_length(
    strings: list[str], tokenizer: TokenCodec, max_tokens: int
) -> list[str]:
    """Include whole strings in order while the token budget lasts.

    The first string that does not fit is sliced into whatever budget
    remains; everything after it is dropped. Order is never changed.
    """
    if max_tokens <= 0:
        return []
    result: list[str] = []
    remaining = max_tokens
    for text in strings:
        if remaining <= 0:
            break
        count = len(tokenizer.encode(text))
        if count <= remaining:
            result.append(text)
            remaining -= count
        else:
            result.append(slice_string_to_context_length(text, tokenizer, remaining))
            remaining = 0
    return result


@overload
def slice_to_context_length(value: str, tokenizer: TokenCodec, max_tokens: int) -> str: ...


@overload
def slice_to_context_length(
    value: list[str], tokenizer: TokenCodec, max_tokens: int
) -> list[str]: ...


def slice_to_context_length(value, tokenizer, max_tokens):
    """Slice a string or a list of strings to fit ``max_tokens``."""
    if isinstance(value, str):
        return slice_string_to_context_length(value, tokenizer, max_tokens)
    return slice_list_of_strings_to_context_length(list(value), tokenizer, max_tokens)
