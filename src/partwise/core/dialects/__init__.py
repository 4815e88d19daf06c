"""Storage dialects: engine-specific partition DDL and catalog access."""

from sqlalchemy.engine import Engine

from partwise.core.dialects.base import StorageDialect, rewrite_index_sql
from partwise.core.dialects.postgresql import PostgresDialect
from partwise.core.dialects.sqlite import SQLiteDialect
from partwise.core.naming import DEFAULT_MAX_IDENTIFIER_LENGTH

_DIALECTS: dict[str, type[StorageDialect]] = {
    PostgresDialect.name: PostgresDialect,
    SQLiteDialect.name: SQLiteDialect,
}


def dialect_for(
    engine: Engine,
    *,
    schema: str | None = None,
    max_identifier_length: int = DEFAULT_MAX_IDENTIFIER_LENGTH,
) -> StorageDialect:
    """Select the storage dialect for an engine's backend.

    Raises:
        ValueError: If the backend is not supported
    """
    backend = engine.dialect.name
    if backend not in _DIALECTS:
        raise ValueError(f"Unsupported database backend: {backend!r} (supported: {sorted(_DIALECTS)})")
    return _DIALECTS[backend](schema=schema, max_identifier_length=max_identifier_length)


__all__ = [
    "PostgresDialect",
    "SQLiteDialect",
    "StorageDialect",
    "dialect_for",
    "rewrite_index_sql",
]
