"""Vault path helpers for ragnote."""

from __future__ import annotations

from pathlib import Path


def find_vault_root(start: Path | None = None) -> Path | None:
    """Walk up from start directory to find the vault root.

    The vault root is identified by the presence of a .ragnote/ directory.
    """
    current = (start or Path.cwd()).resolve()
    for directory in [current, *current.parents]:
        if (directory / ".ragnote").is_dir():
            return directory
    return None


def get_vault_root(start: Path | None = None) -> Path:
    """Get vault root, raising if not found."""
    root = find_vault_root(start)
    if root is None:
        raise FileNotFoundError(
            "No ragnote vault found. Run 'ragnote init' to create one."
        )
    return root


def get_ragnote_dir(vault_root: Path) -> Path:
    """Get .ragnote/ directory, creating if needed."""
    d = vault_root / ".ragnote"
    d.mkdir(exist_ok=True)
    return d


def get_lance_dir(vault_root: Path) -> Path:
    """Get .ragnote/lance/ directory, creating if needed."""
    d = get_ragnote_dir(vault_root) / "lance"
    d.mkdir(exist_ok=True)
    return d


def get_agents_dir(vault_root: Path) -> Path:
    """Get .ragnote/agents/ directory path."""
    return vault_root / ".ragnote" / "agents"


def get_history_path(vault_root: Path) -> Path:
    """Get the REPL input history file path."""
    return get_ragnote_dir(vault_root) / "history"


def get_vault_chats_dir(vault_root: Path) -> Path:
    """Get vault-specific chats directory under user home."""
    encoded = str(vault_root).replace("/", "-").replace("\\", "-").strip("-")
    d = Path.home() / ".ragnote" / "vaults" / encoded / "chats"
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_user_settings_path() -> Path:
    """Get user-level settings.json path."""
    return Path.home() / ".ragnote" / "settings.json"


def get_vault_settings_path(vault_root: Path) -> Path:
    """Get vault-level settings.json path."""
    return vault_root / ".ragnote" / "settings.json"
