"""Reading whole notes from the vault as retrieval results."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from ragnote.core.chat import RetrievalResult
from ragnote.core.errors import RetrievalError


def resolve_note_path(vault_root: Path, path: str) -> Path:
    """Absolute path for a note given relative to the vault root or absolute."""
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = vault_root / candidate
    return candidate


def read_file_with_contents(vault_root: Path, path: str) -> RetrievalResult:
    note = resolve_note_path(vault_root, path)
    try:
        content = note.read_text(encoding="utf-8")
        stat = note.stat()
    except OSError as e:
        raise RetrievalError(f"Could not read note {path}: {e}") from e
    created = getattr(stat, "st_birthtime", stat.st_ctime)
    return RetrievalResult(
        content=content,
        notepath=str(note),
        file_modified=datetime.fromtimestamp(stat.st_mtime),
        file_created=datetime.fromtimestamp(created),
    )


def read_files_with_contents(vault_root: Path, paths: list[str]) -> list[RetrievalResult]:
    """Full contents of each path, in the given order, skipping repeats."""
    results: list[RetrievalResult] = []
    seen: set[Path] = set()
    for path in paths:
        resolved = resolve_note_path(vault_root, path)
        if resolved in seen:
            continue
        seen.add(resolved)
        results.append(read_file_with_contents(vault_root, path))
    return results
