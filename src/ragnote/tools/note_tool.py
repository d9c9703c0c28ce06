"""Note creation tool handler."""

from __future__ import annotations

from pathlib import Path
from typing import Any


def handle_create_note(tool_input: dict[str, Any], vault_root: Path) -> dict[str, Any]:
    """Write a markdown note into the vault.

    The filename must stay inside the vault; ``.md`` is appended when
    missing. Existing notes are not overwritten.
    """
    filename = tool_input["filename"].strip()
    content = tool_input.get("content", "")
    if not filename:
        raise ValueError("filename must not be empty")
    if not filename.endswith(".md"):
        filename += ".md"

    root = vault_root.resolve()
    path = (root / filename).resolve()
    if not path.is_relative_to(root):
        raise ValueError(f"Note path escapes the vault: {filename}")
    if path.exists():
        raise FileExistsError(f"Note already exists: {filename}")

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return {"path": str(path.relative_to(root)), "bytes": len(content.encode("utf-8"))}
