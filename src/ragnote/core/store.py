"""Chat and config persistence for ragnote.

The orchestrator only talks to the ChatStore protocol. JsonChatStore keeps
one JSON file per chat plus a metadata index, and backs config keys with
the vault settings file.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Protocol

from ragnote.config import load_json_file, load_settings
from ragnote.core.chat import Chat, ChatMetadata
from ragnote.core.errors import PersistenceError
from ragnote.utils.paths import get_vault_chats_dir, get_vault_settings_path


class ChatStore(Protocol):
    """Persistence contract consumed by the orchestrator."""

    def get_chat(self, chat_id: str) -> Chat | None: ...

    def save_chat(self, chat: Chat) -> None: ...

    def delete_chat(self, chat_id: str) -> None: ...

    def list_chat_metadata(self) -> list[ChatMetadata]: ...

    def get_config(self, key: str) -> Any: ...

    def set_config(self, key: str, value: Any) -> None: ...


class JsonChatStore:
    """File-backed ChatStore scoped to one vault."""

    def __init__(self, vault_root: Path, chats_dir: Path | None = None):
        self.vault_root = vault_root
        self.chats_dir = chats_dir or get_vault_chats_dir(vault_root)
        self.index_path = self.chats_dir / "chats-index.json"
        self.settings_path = get_vault_settings_path(vault_root)

    def _chat_path(self, chat_id: str) -> Path:
        return self.chats_dir / f"{chat_id}.json"

    def get_chat(self, chat_id: str) -> Chat | None:
        path = self._chat_path(chat_id)
        if not path.exists():
            return None
        try:
            return Chat.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, KeyError, OSError) as e:
            raise PersistenceError(
                f"Failed to load chat {chat_id}: {e}", operation="get_chat"
            ) from e

    def save_chat(self, chat: Chat) -> None:
        try:
            self.chats_dir.mkdir(parents=True, exist_ok=True)
            self._chat_path(chat.id).write_text(
                json.dumps(chat.to_dict(), indent=2) + "\n", encoding="utf-8"
            )
            entries = [e for e in self._load_index() if e.id != chat.id]
            entries.append(chat.to_metadata())
            self._save_index(entries)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(
                f"Failed to save chat {chat.id}: {e}", operation="save_chat"
            ) from e

    def delete_chat(self, chat_id: str) -> None:
        try:
            self._chat_path(chat_id).unlink(missing_ok=True)
            self._save_index([e for e in self._load_index() if e.id != chat_id])
        except OSError as e:
            raise PersistenceError(
                f"Failed to delete chat {chat_id}: {e}", operation="delete_chat"
            ) from e

    def list_chat_metadata(self) -> list[ChatMetadata]:
        """List chats, most recent first."""
        entries = self._load_index()
        entries.sort(key=lambda e: e.time_of_last_message, reverse=True)
        return entries

    def get_config(self, key: str) -> Any:
        return getattr(load_settings(self.vault_root), key, None)

    def set_config(self, key: str, value: Any) -> None:
        data = load_json_file(self.settings_path)
        data[key] = value
        try:
            self.settings_path.parent.mkdir(parents=True, exist_ok=True)
            self.settings_path.write_text(
                json.dumps(data, indent=2) + "\n", encoding="utf-8"
            )
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(
                f"Failed to set config {key}: {e}", operation="set_config"
            ) from e

    def _load_index(self) -> list[ChatMetadata]:
        if not self.index_path.exists():
            return []
        try:
            data = json.loads(self.index_path.read_text(encoding="utf-8"))
            return [ChatMetadata.from_dict(d) for d in data]
        except (json.JSONDecodeError, KeyError, TypeError):
            return []

    def _save_index(self, entries: list[ChatMetadata]) -> None:
        self.index_path.parent.mkdir(parents=True, exist_ok=True)
        self.index_path.write_text(
            json.dumps([e.to_dict() for e in entries], indent=2) + "\n",
            encoding="utf-8",
        )
