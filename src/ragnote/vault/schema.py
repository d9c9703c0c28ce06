"""LanceDB table schema for the note vault.

The schema is implied by the embedding function's output width plus fixed
metadata columns. Table names are derived from the embedding function name
and the vault path.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import pyarrow as pa


class DBFields:
    NOTEPATH = "notepath"
    VECTOR = "vector"
    CONTENT = "content"
    SUBNOTE_INDEX = "subnoteindex"
    TIME_ADDED = "timeadded"
    FILE_MODIFIED = "filemodified"
    FILE_CREATED = "filecreated"


TABLE_PREFIX = "ragnote_table"

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*]')


def create_table_schema(dimensions: int) -> pa.Schema:
    """Arrow schema for a vault table whose vectors have ``dimensions`` floats."""
    return pa.schema([
        pa.field(DBFields.VECTOR, pa.list_(pa.float32(), dimensions)),
        pa.field(DBFields.CONTENT, pa.utf8()),
        pa.field(DBFields.NOTEPATH, pa.utf8()),
        pa.field(DBFields.SUBNOTE_INDEX, pa.int32()),
        pa.field(DBFields.TIME_ADDED, pa.timestamp("ms")),
        pa.field(DBFields.FILE_MODIFIED, pa.timestamp("ms")),
        pa.field(DBFields.FILE_CREATED, pa.timestamp("ms")),
    ])


def schema_to_string(schema: pa.Schema) -> str:
    """Canonical string form of a schema, one ``name: type`` line per field."""
    return "\n".join(
        f"{f.name}: {f.type}" for f in schema
    )


def is_schema_equal(actual: pa.Schema, intended: pa.Schema) -> bool:
    return schema_to_string(actual) == schema_to_string(intended)


def sanitize_for_filesystem(value: str) -> str:
    return _UNSAFE_CHARS.sub("_", value)


def generate_table_name(embedding_name: str, vault_dir: str) -> str:
    """Deterministic table name for an (embedding function, vault) pair."""
    return (
        f"{TABLE_PREFIX}_{sanitize_for_filesystem(embedding_name)}"
        f"_{sanitize_for_filesystem(vault_dir)}"
    )


@dataclass(frozen=True)
class TableDescriptor:
    """Identity of a vault table. Equal iff the sanitized inputs are equal."""

    embedding_name: str
    vault_dir: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "embedding_name", sanitize_for_filesystem(self.embedding_name))
        object.__setattr__(self, "vault_dir", sanitize_for_filesystem(self.vault_dir))

    @property
    def table_name(self) -> str:
        return f"{TABLE_PREFIX}_{self.embedding_name}_{self.vault_dir}"


@dataclass
class DBEntry:
    """One row of a vault table, as written by the indexer."""

    notepath: str
    content: str
    vector: list[float]
    subnote_index: int = 0
    time_added: datetime | None = None
    file_modified: datetime | None = None
    file_created: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        now = datetime.now()
        return {
            DBFields.VECTOR: self.vector,
            DBFields.CONTENT: self.content,
            DBFields.NOTEPATH: self.notepath,
            DBFields.SUBNOTE_INDEX: self.subnote_index,
            DBFields.TIME_ADDED: self.time_added or now,
            DBFields.FILE_MODIFIED: self.file_modified or now,
            DBFields.FILE_CREATED: self.file_created or now,
        }
