"""PostgreSQL dialect: native declarative LIST partitioning.

Level-1 partitions are ``PARTITION OF`` the parent for one key value and
are themselves partitioned by the bucket column; level-2 partitions are
``PARTITION OF`` their level-1 partition for one bucket id. Named locks
are transaction-scoped advisory locks keyed by ``hashtext(name)``.
"""

from collections.abc import Sequence
from typing import Any

from sqlalchemy import Connection, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError

from partwise.contracts import IndexDefinition, PartitionNode, UniqueIndexIncompatibleError
from partwise.core.dialects.base import StorageDialect
from partwise.core.logging import get_logger
from partwise.core.schema import BUCKET_COLUMN

logger = get_logger(__name__)

# duplicate_table, duplicate_object, unique_violation (catalog race on pg_class/pg_type)
_DUPLICATE_SQLSTATES = frozenset({"42P07", "42710", "23505"})

_UNIQUE_INCOMPATIBLE_MESSAGE = "must include all partitioning columns"


def _sqlstate(exc: DBAPIError) -> str | None:
    """SQLSTATE of the driver error (psycopg 3 ``sqlstate``, psycopg2 ``pgcode``)."""
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return str(code) if code else None


class PostgresDialect(StorageDialect):
    """Storage dialect for PostgreSQL 11+."""

    name = "postgresql"
    drop_cascade = " CASCADE"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        # (table, column) -> format_type() of the key column; key columns never change type
        self._key_types: dict[tuple[str, str], str] = {}

    def relation_exists(self, conn: Connection, name: str) -> bool:
        result = conn.execute(text("SELECT to_regclass(:name) IS NOT NULL"), {"name": self.qualify(conn, name)})
        return bool(result.scalar_one())

    def index_definitions(self, conn: Connection, table_name: str) -> list[IndexDefinition]:
        query = text(
            """
            SELECT c.relname AS name, pg_get_indexdef(i.indexrelid) AS sql, i.indisunique AS is_unique
            FROM pg_index i
            JOIN pg_class c ON c.oid = i.indexrelid
            WHERE i.indrelid = to_regclass(:table_name) AND NOT i.indisprimary
            ORDER BY c.relname
            """
        )
        rows = conn.execute(query, {"table_name": self.qualify(conn, table_name)})
        return [IndexDefinition(name=row.name, sql=row.sql, unique=bool(row.is_unique)) for row in rows]

    def key_text(self, conn: Connection, table_name: str, key_column: str, value: object) -> str:
        # str() and PostgreSQL render float8, timestamptz and interval differently;
        # cast through the column type the way the insert will
        key_type = self._key_types.get((table_name, key_column))
        if key_type is None:
            result = conn.execute(
                text(
                    "SELECT format_type(a.atttypid, a.atttypmod) FROM pg_attribute a "
                    "WHERE a.attrelid = to_regclass(:table_name) AND a.attname = :column_name AND NOT a.attisdropped"
                ),
                {"table_name": self.qualify(conn, table_name), "column_name": key_column},
            )
            key_type = result.scalar_one()
            self._key_types[(table_name, key_column)] = key_type
        result = conn.execute(text(f"SELECT CAST(CAST(:value AS {key_type}) AS VARCHAR)"), {"value": value})
        return str(result.scalar_one())

    def partitioned_table_kwargs(self, conn: Connection, key_column: str) -> dict[str, Any]:
        return {"postgresql_partition_by": f"LIST ({self.quote(conn, key_column)})"}

    def create_level1(self, conn: Connection, parent_table: str, node: PartitionNode) -> None:
        conn.execute(
            text(
                f"CREATE TABLE IF NOT EXISTS {self.qualify(conn, node.name)} "
                f"PARTITION OF {self.qualify(conn, parent_table)} "
                f"FOR VALUES IN ({self.literal(conn, node.key_value)}) "
                f"PARTITION BY LIST ({self.quote(conn, BUCKET_COLUMN)})"
            )
        )

    def create_level2(self, conn: Connection, level1_table: str, node: PartitionNode) -> None:
        if node.bucket_id is None:
            raise ValueError(f"{node.name} is not a level-2 partition")
        conn.execute(
            text(
                f"CREATE TABLE IF NOT EXISTS {self.qualify(conn, node.name)} "
                f"PARTITION OF {self.qualify(conn, level1_table)} "
                f"FOR VALUES IN ({int(node.bucket_id)})"
            )
        )

    def drop_table(self, conn: Connection, name: str) -> None:
        conn.execute(text(f"DROP TABLE IF EXISTS {self.qualify(conn, name)}{self.drop_cascade}"))

    def create_index(self, conn: Connection, sql: str, *, index_name: str, partition_columns: Sequence[str]) -> None:
        try:
            conn.execute(text(sql))
        except DBAPIError as exc:
            if _UNIQUE_INCOMPATIBLE_MESSAGE in str(exc.orig):
                raise UniqueIndexIncompatibleError(index_name, str(exc.orig).strip()) from exc
            raise

    def acquire_named_lock(self, conn: Connection, name: str) -> None:
        conn.execute(text("SELECT pg_advisory_xact_lock(hashtext(:name))"), {"name": name})

    def is_duplicate_object(self, exc: DBAPIError) -> bool:
        return _sqlstate(exc) in _DUPLICATE_SQLSTATES

    def clear_key_rows(self, conn: Connection, table_name: str, key_column: str, level1: PartitionNode) -> None:
        # The level-1 partition holds exactly this key's rows
        if self.relation_exists(conn, level1.name):
            conn.execute(text(f"TRUNCATE {self.qualify(conn, level1.name)}"))

    def analyze(self, engine: Engine, table_names: Sequence[str]) -> None:
        # VACUUM cannot run inside a transaction block
        with engine.connect() as conn:
            autocommit = conn.execution_options(isolation_level="AUTOCOMMIT")
            for table_name in table_names:
                logger.info("Refreshing statistics", table=table_name)
                autocommit.execute(text(f"VACUUM ANALYZE {self.qualify(autocommit, table_name)}"))
