"""SQLite dialect: partition hierarchy emulated with views.

SQLite has no declarative partitioning. The partitioned table is an
ordinary table carrying the bucket column, and each partition node is a
view over its parent filtered to its key value (level 1) or bucket id
(level 2). Views are catalog objects with names, so existence checks,
double-checked creation, and "already exists" races behave exactly as
they do against PostgreSQL.

Every transaction is opened with ``BEGIN IMMEDIATE`` (see PartwiseDB),
which serializes writers on the database lock. Named locks are therefore
no-ops: the transaction that would take one already holds the write lock.
"""

import re
from collections.abc import Sequence

from sqlalchemy import Connection, String, cast, delete, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError

from partwise.contracts import IndexDefinition, PartitionNode, UniqueIndexIncompatibleError
from partwise.core.dialects.base import StorageDialect
from partwise.core.logging import get_logger
from partwise.core.schema import BUCKET_COLUMN

logger = get_logger(__name__)

_UNIQUE_INDEX = re.compile(r"^\s*CREATE\s+UNIQUE\s+INDEX\b", re.IGNORECASE)
_ON_KEYWORD = re.compile(r"\bON\b", re.IGNORECASE)
_IDENTIFIER = re.compile(r'^\s*(?:"((?:[^"]|"")+)"|`([^`]+)`|\[([^\]]+)\]|([A-Za-z_][A-Za-z0-9_$]*))')


def index_column_names(sql: str) -> list[str]:
    """Plain column names in an index definition's column list.

    Expression entries are ignored. Names are lowercased (SQLite
    identifiers are case-insensitive).
    """
    on = _ON_KEYWORD.search(sql)
    start = sql.find("(", on.end() if on else 0)
    if start < 0:
        return []

    entries: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in sql[start + 1 :]:
        if ch == "(":
            depth += 1
        elif ch == ")":
            if depth == 0:
                break
            depth -= 1
        elif ch == "," and depth == 0:
            entries.append("".join(current))
            current = []
            continue
        current.append(ch)
    entries.append("".join(current))

    names = []
    for entry in entries:
        match = _IDENTIFIER.match(entry)
        if match is None:
            continue
        # Skip expressions like lower(email)
        if entry[match.end() :].lstrip().startswith("("):
            continue
        name = next(g for g in match.groups() if g is not None)
        names.append(name.replace('""', '"').lower())
    return names


def column_affinity(declared_type: str) -> str:
    """SQLite type affinity of a declared column type (datatype3.html, section 3.1)."""
    declared = declared_type.upper()
    if "INT" in declared:
        return "INTEGER"
    if any(word in declared for word in ("CHAR", "CLOB", "TEXT")):
        return "TEXT"
    if "BLOB" in declared or not declared:
        return "BLOB"
    if any(word in declared for word in ("REAL", "FLOA", "DOUB")):
        return "REAL"
    return "NUMERIC"


class SQLiteDialect(StorageDialect):
    """Storage dialect for SQLite, used for tests and local dry runs."""

    name = "sqlite"

    def _master(self, conn: Connection) -> str:
        if self.schema:
            return f"{self.quote(conn, self.schema)}.sqlite_master"
        return "sqlite_master"

    def relation_exists(self, conn: Connection, name: str) -> bool:
        query = text(f"SELECT 1 FROM {self._master(conn)} WHERE name = :name AND type IN ('table', 'view')")
        return conn.execute(query, {"name": name}).first() is not None

    def index_definitions(self, conn: Connection, table_name: str) -> list[IndexDefinition]:
        # Autoindexes backing PRIMARY KEY / UNIQUE constraints have no SQL
        query = text(
            f"SELECT name, sql FROM {self._master(conn)} "
            "WHERE type = 'index' AND tbl_name = :table_name AND sql IS NOT NULL ORDER BY name"
        )
        rows = conn.execute(query, {"table_name": table_name})
        return [IndexDefinition(name=row.name, sql=row.sql, unique=bool(_UNIQUE_INDEX.match(row.sql))) for row in rows]

    def key_text(self, conn: Connection, table_name: str, key_column: str, value: object) -> str:
        # Booleans are stored as integers; numbers are converted by column affinity
        if isinstance(value, bool):
            return str(int(value))
        if isinstance(value, int | float):
            affinity = self._affinity(conn, table_name, key_column)
            if affinity == "REAL":
                return str(float(value))
            if affinity in ("INTEGER", "NUMERIC") and isinstance(value, float) and value.is_integer():
                return str(int(value))
        return super().key_text(conn, table_name, key_column, value)

    def _affinity(self, conn: Connection, table_name: str, column_name: str) -> str:
        prefix = f"{self.quote(conn, self.schema)}." if self.schema else ""
        rows = conn.execute(text(f"PRAGMA {prefix}table_info({self.quote(conn, table_name)})"))
        declared = next((row.type for row in rows if row.name == column_name), "")
        return column_affinity(declared)

    def create_level1(self, conn: Connection, parent_table: str, node: PartitionNode) -> None:
        conn.execute(
            text(
                f"CREATE VIEW {self.qualify(conn, node.name)} AS "
                f"SELECT * FROM {self.qualify(conn, parent_table)} "
                f"WHERE CAST({self.quote(conn, node.key_column)} AS TEXT) = {self.literal(conn, node.key_value)}"
            )
        )

    def create_level2(self, conn: Connection, level1_table: str, node: PartitionNode) -> None:
        if node.bucket_id is None:
            raise ValueError(f"{node.name} is not a level-2 partition")
        conn.execute(
            text(
                f"CREATE VIEW {self.qualify(conn, node.name)} AS "
                f"SELECT * FROM {self.qualify(conn, level1_table)} "
                f"WHERE {self.quote(conn, BUCKET_COLUMN)} = {int(node.bucket_id)}"
            )
        )

    def _dependent_views(self, conn: Connection, name: str) -> list[str]:
        """Views built on name, transitively, deepest first."""
        marker = f"{self.quote(conn, name)} WHERE"
        rows = conn.execute(text(f"SELECT name, sql FROM {self._master(conn)} WHERE type = 'view'")).all()
        direct = [row.name for row in rows if row.sql is not None and marker in row.sql]
        ordered: list[str] = []
        for view in direct:
            ordered.extend(self._dependent_views(conn, view))
            ordered.append(view)
        return ordered

    def drop_table(self, conn: Connection, name: str) -> None:
        for view in self._dependent_views(conn, name):
            conn.execute(text(f"DROP VIEW IF EXISTS {self.qualify(conn, view)}"))
        conn.execute(text(f"DROP TABLE IF EXISTS {self.qualify(conn, name)}"))

    def create_index(self, conn: Connection, sql: str, *, index_name: str, partition_columns: Sequence[str]) -> None:
        # PostgreSQL rejects unique indexes that omit a partition column; mirror that
        if _UNIQUE_INDEX.match(sql):
            covered = set(index_column_names(sql))
            missing = [c for c in partition_columns if c.lower() not in covered]
            if missing:
                raise UniqueIndexIncompatibleError(
                    index_name,
                    f"unique index must include all partitioning columns (missing: {', '.join(missing)})",
                )
        conn.execute(text(sql))

    def acquire_named_lock(self, conn: Connection, name: str) -> None:
        # BEGIN IMMEDIATE already holds the database write lock
        return None

    def is_duplicate_object(self, exc: DBAPIError) -> bool:
        return "already exists" in str(exc.orig)

    def clear_key_rows(self, conn: Connection, table_name: str, key_column: str, level1: PartitionNode) -> None:
        target = self.table_ref(table_name, key_column)
        conn.execute(delete(target).where(cast(target.c[key_column], String) == level1.key_value))

    def analyze(self, engine: Engine, table_names: Sequence[str]) -> None:
        with engine.begin() as conn:
            for table_name in table_names:
                logger.info("Refreshing statistics", table=table_name)
                conn.execute(text(f"ANALYZE {self.qualify(conn, table_name)}"))
