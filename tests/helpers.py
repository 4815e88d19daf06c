# tests/helpers.py
"""Helpers for building source tables and inspecting SQLite partitions."""

from collections.abc import Callable, Mapping

from sqlalchemy import text

from partwise.contracts import MigrationTarget
from partwise.core.database import PartwiseDB

# Signature of the source_table fixture (see conftest.py)
SourceTableFactory = Callable[..., MigrationTarget]


def create_orders_table(db: PartwiseDB, name: str = "orders") -> None:
    """Create a flat table shaped like a typical application table.

    Columns: id (primary key), customer_id (partition key), email, total.
    Indexes: a plain index on customer_id and a unique index on email.
    """
    with db.connection() as conn:
        conn.execute(
            text(
                f'CREATE TABLE "{name}" ('
                "id INTEGER PRIMARY KEY, "
                "customer_id INTEGER, "
                "email TEXT, "
                "total REAL)"
            )
        )
        conn.execute(text(f'CREATE INDEX "ix_{name}_customer" ON "{name}" (customer_id)'))
        conn.execute(text(f'CREATE UNIQUE INDEX "ux_{name}_email" ON "{name}" (email)'))


def insert_orders(db: PartwiseDB, name: str, rows_per_key: Mapping[int | None, int], *, first_id: int = 1) -> int:
    """Insert ``rows_per_key[k]`` rows for every key k (None inserts NULL keys).

    Returns:
        The next unused id
    """
    rows: list[tuple[int, int | None, str, float]] = []
    next_id = first_id
    for key, count in rows_per_key.items():
        for _ in range(count):
            rows.append((next_id, key, f"user{next_id}@example.com", float(next_id % 100)))
            next_id += 1
    if rows:
        with db.connection() as conn:
            conn.exec_driver_sql(f'INSERT INTO "{name}" (id, customer_id, email, total) VALUES (?, ?, ?, ?)', rows)
    return next_id


def view_names(db: PartwiseDB) -> set[str]:
    """Names of every view in the database (SQLite partitions are views)."""
    with db.connection() as conn:
        return {row.name for row in conn.execute(text("SELECT name FROM sqlite_master WHERE type = 'view'"))}


def index_names(db: PartwiseDB, table: str) -> set[str]:
    with db.connection() as conn:
        return {d.name for d in db.dialect.index_definitions(conn, table)}


def row_count(db: PartwiseDB, table: str) -> int:
    with db.connection() as conn:
        return db.dialect.count_rows(conn, table)


def relation_exists(db: PartwiseDB, name: str) -> bool:
    with db.connection() as conn:
        return db.dialect.relation_exists(conn, name)


def bucket_counts(db: PartwiseDB, table: str, key_value: int) -> dict[int, int]:
    """Row count per bucket_id for one key of a partitioned table."""
    with db.connection() as conn:
        rows = conn.execute(
            text(f'SELECT bucket_id, COUNT(*) AS n FROM "{table}" WHERE customer_id = :key GROUP BY bucket_id ORDER BY bucket_id'),
            {"key": key_value},
        )
        return {row.bucket_id: row.n for row in rows}
