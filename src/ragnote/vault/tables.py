"""Vector table lookup, creation and schema migration.

A table whose on-disk schema no longer matches the configured embedding
function is dropped and recreated empty. The indexer must re-embed the
vault after that; no vectors are carried over.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable

from ragnote.core.errors import SchemaMismatchError, TableError
from ragnote.vault.embeddings import EmbeddingFunction
from ragnote.vault.schema import (
    TableDescriptor,
    create_table_schema,
    is_schema_equal,
    schema_to_string,
)

logger = logging.getLogger(__name__)

# (table_name, old_schema, new_schema) -> proceed?
ConfirmRecreate = Callable[[str, str, str], bool]


def connect_vault_db(lance_dir: Path) -> Any:
    """Open (or create) the LanceDB database under ``lance_dir``."""
    import lancedb

    try:
        return lancedb.connect(str(lance_dir))
    except Exception as e:
        raise TableError(
            f"Failed to connect to vector database at {lance_dir}: {e}",
            operation="connect",
        ) from e


def _create(db: Any, table_name: str, schema: Any) -> Any:
    table = db.create_table(table_name, schema=schema)
    logger.info("Created table %s", table_name)
    return table


def _recreate(
    db: Any,
    error: SchemaMismatchError,
    schema: Any,
    confirm_recreate: ConfirmRecreate | None,
) -> Any:
    if confirm_recreate is not None and not confirm_recreate(
        error.table_name, error.actual, error.expected
    ):
        raise TableError(
            f"Recreation of table {error.table_name} was declined",
            operation="recreate",
            table_name=error.table_name,
        ) from error
    logger.warning(
        "Schema of table %s changed; dropping all indexed vectors and recreating it.\n"
        "old:\n%s\nnew:\n%s",
        error.table_name, error.actual, error.expected,
    )
    db.drop_table(error.table_name)
    return _create(db, error.table_name, schema)


def list_table_names(db: Any) -> list[str]:
    """All table names in the connection, following page tokens."""
    names: list[str] = []
    page_token = None
    while True:
        response = db.list_tables(page_token=page_token)
        names.extend(response.tables)
        page_token = response.page_token
        if not page_token:
            return names


def get_or_create_table(
    db: Any,
    embedding_fn: EmbeddingFunction,
    vault_dir: str | Path,
    confirm_recreate: ConfirmRecreate | None = None,
) -> Any:
    """Open the table for (embedding function, vault), creating it if needed.

    A table with a matching schema is returned untouched. A mismatched one
    is dropped and recreated empty, after ``confirm_recreate`` approves when
    given. Storage failures are raised as TableError.
    """
    table_name = TableDescriptor(embedding_fn.name, str(vault_dir)).table_name
    operation = "list_tables"
    try:
        intended = create_table_schema(embedding_fn.dimensions)
        if table_name not in list_table_names(db):
            operation = "create_table"
            return _create(db, table_name, intended)

        operation = "open_table"
        table = db.open_table(table_name)
        if is_schema_equal(table.schema, intended):
            return table

        operation = "recreate_table"
        mismatch = SchemaMismatchError(
            table_name,
            expected=schema_to_string(intended),
            actual=schema_to_string(table.schema),
        )
        return _recreate(db, mismatch, intended, confirm_recreate)
    except TableError:
        raise
    except Exception as e:
        raise TableError(
            f"Error in {operation} for table {table_name}: {e}",
            operation=operation,
            table_name=table_name,
        ) from e
