"""Shared test fixtures for ragnote."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from ragnote.core.chat import Chat, ChatMetadata, RetrievalResult


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point HOME at a temp dir so user-level settings and chats stay isolated."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home


@pytest.fixture
def tmp_vault(tmp_path: Path) -> Path:
    """Create a temporary vault with a few notes."""
    vault = tmp_path / "vault"
    ragnote_dir = vault / ".ragnote"
    (ragnote_dir / "agents").mkdir(parents=True)
    (ragnote_dir / "settings.json").write_text(json.dumps({
        "default_llm": "gpt-4o-mini",
        "llms": [
            {"model_name": "gpt-4o-mini", "api_name": "openai", "context_length": 128000},
        ],
        "llm_apis": [
            {"name": "openai", "api_interface": "openai", "api_key": "sk-test"},
        ],
    }))
    (vault / "thing-x.md").write_text("# Thing X\n\nX is a widget for sorting notes.\n")
    (vault / "daily").mkdir()
    (vault / "daily" / "2024-05-01.md").write_text("Met with Sam about thing X.\n")
    return vault


class FakeStore:
    """In-memory ChatStore."""

    def __init__(self, config: dict[str, Any] | None = None):
        self.chats: dict[str, dict[str, Any]] = {}
        self.config: dict[str, Any] = dict(config or {})
        self.save_count = 0

    def get_chat(self, chat_id: str) -> Chat | None:
        data = self.chats.get(chat_id)
        return Chat.from_dict(data) if data is not None else None

    def save_chat(self, chat: Chat) -> None:
        self.chats[chat.id] = chat.to_dict()
        self.save_count += 1

    def delete_chat(self, chat_id: str) -> None:
        self.chats.pop(chat_id, None)

    def list_chat_metadata(self) -> list[ChatMetadata]:
        return [Chat.from_dict(d).to_metadata() for d in self.chats.values()]

    def get_config(self, key: str) -> Any:
        return self.config.get(key)

    def set_config(self, key: str, value: Any) -> None:
        self.config[key] = value


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore({
        "default_llm": "test-model",
        "llms": [{"model_name": "test-model", "api_name": "test-api", "context_length": 4096}],
        "llm_apis": [{"name": "test-api", "api_interface": "openai"}],
        "max_tool_iterations": 10,
    })


class WordTokenizer:
    """Whitespace tokenizer: one token per word, ids index into a vocabulary."""

    def __init__(self) -> None:
        self.vocab: list[str] = []

    def encode(self, text: str) -> list[int]:
        ids = []
        for word in text.split():
            if word not in self.vocab:
                self.vocab.append(word)
            ids.append(self.vocab.index(word))
        return ids

    def decode(self, tokens: list[int]) -> str:
        return " ".join(self.vocab[t] for t in tokens)

    def __call__(self, text: str) -> list[int]:
        return self.encode(text)


@pytest.fixture
def word_tokenizer() -> WordTokenizer:
    return WordTokenizer()


class FakeEmbedding:
    """Deterministic embedding: every text maps to a fixed-width vector."""

    def __init__(self, name: str = "fake-embedding", dimensions: int = 4):
        self.name = name
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def __call__(self, texts: list[str]) -> list[list[float]]:
        return [
            [float(len(t) % 7)] + [0.5] * (self._dimensions - 1)
            for t in texts
        ]


class FakeQuery:
    def __init__(self, table: "FakeTable", vector: Any = None):
        self.table = table
        self.vector = vector
        self.predicate: str | None = None
        self.prefilter = False
        self.n: int | None = None

    def where(self, predicate: str, prefilter: bool = False) -> "FakeQuery":
        self.predicate = predicate
        self.prefilter = prefilter
        return self

    def limit(self, n: int) -> "FakeQuery":
        self.n = n
        return self

    def to_list(self) -> list[dict[str, Any]]:
        self.table.queries.append(self)
        rows = self.table.rows if self.n is None else self.table.rows[: self.n]
        return [dict(r) for r in rows]


class FakeTable:
    """Stand-in for a LanceDB table that records the queries issued against it."""

    def __init__(self, rows: list[dict[str, Any]] | None = None):
        self.rows = list(rows or [])
        self.queries: list[FakeQuery] = []

    def search(self, vector: Any = None) -> FakeQuery:
        return FakeQuery(self, vector)

    def count_rows(self, filter: str | None = None) -> int:
        return len(self.rows)


def make_row(notepath: str, content: str, subnote_index: int = 0, distance: float = 0.1) -> dict[str, Any]:
    return {
        "notepath": notepath,
        "content": content,
        "subnoteindex": subnote_index,
        "filemodified": None,
        "filecreated": None,
        "_distance": distance,
    }


class ScriptedBackend:
    """Backend that plays back one script per stream call.

    A script entry is a StreamChunk to yield, an exception to raise, or a
    callable to invoke between chunks.
    """

    def __init__(self, scripts: list[list[Any]] | None = None):
        self.scripts = list(scripts or [])
        self.calls: list[dict[str, Any]] = []
        self.tokenizer = WordTokenizer()

    async def stream(self, model, messages, tools, params, cancel_token=None):
        self.calls.append({
            "model": model,
            "messages": list(messages),
            "tools": list(tools),
            "params": params,
        })
        script = self.scripts.pop(0) if self.scripts else []
        for entry in script:
            if isinstance(entry, BaseException):
                raise entry
            if callable(entry):
                entry()
                continue
            yield entry

    def get_tokenizer(self, model):
        return self.tokenizer

    def list_models(self):
        return []

    def delete_model(self, model):
        pass


class FakeResolver:
    def __init__(self, results: list[RetrievalResult] | None = None, error: Exception | None = None):
        self.results = list(results or [])
        self.error = error
        self.calls: list[tuple[str, Any]] = []

    async def resolve(self, query, filters):
        self.calls.append((query, filters))
        if self.error is not None:
            raise self.error
        return list(self.results)
