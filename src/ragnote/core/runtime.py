"""Wiring of a vault's store, registry, retrieval and tools into an orchestrator."""

from __future__ import annotations

import asyncio
from functools import partial
from pathlib import Path

from ragnote.config import load_settings
from ragnote.core.events import ChatEvent
from ragnote.core.llm import OllamaBackend
from ragnote.core.llm_config import LLMRegistry
from ragnote.core.orchestrator import ChatOrchestrator
from ragnote.core.store import JsonChatStore
from ragnote.tools.executor import ToolExecutor
from ragnote.tools.note_tool import handle_create_note
from ragnote.tools.search_tool import handle_search
from ragnote.utils.paths import get_lance_dir
from ragnote.vault.embeddings import SentenceTransformerEmbedding
from ragnote.vault.retrieval import RetrievalResolver, SearchMode
from ragnote.vault.tables import ConfirmRecreate, connect_vault_db, get_or_create_table


def create_registry(store: JsonChatStore) -> LLMRegistry:
    return LLMRegistry(store, local_source=OllamaBackend(store.get_config("ollama_url")))


def create_resolver(
    vault_root: Path,
    embedding_model: str,
    confirm_recreate: ConfirmRecreate | None = None,
) -> RetrievalResolver:
    embedding_fn = SentenceTransformerEmbedding(embedding_model)

    def open_table():
        db = connect_vault_db(get_lance_dir(vault_root))
        return get_or_create_table(db, embedding_fn, vault_root, confirm_recreate)

    return RetrievalResolver(vault_root, open_table, embedding_fn)


def create_tool_executor(
    vault_root: Path, resolver: RetrievalResolver, search_mode: SearchMode
) -> ToolExecutor:
    executor = ToolExecutor()
    executor.register_handler(
        "search", partial(handle_search, resolver=resolver, search_mode=search_mode)
    )
    executor.register_handler("createNote", partial(handle_create_note, vault_root=vault_root))
    return executor


def create_orchestrator(
    vault_root: Path,
    event_queue: asyncio.Queue[ChatEvent] | None = None,
    confirm_recreate: ConfirmRecreate | None = None,
) -> ChatOrchestrator:
    """Build an orchestrator for the vault at ``vault_root``."""
    settings = load_settings(vault_root)
    store = JsonChatStore(vault_root)
    resolver = create_resolver(vault_root, settings.embedding_model, confirm_recreate)
    executor = create_tool_executor(vault_root, resolver, SearchMode(settings.search_mode))
    return ChatOrchestrator(
        store=store,
        registry=create_registry(store),
        resolver=resolver,
        tool_executor=executor,
        event_queue=event_queue,
    )
