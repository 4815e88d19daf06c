"""Base class for storage dialects.

A dialect translates partwise's storage operations into one engine's DDL
and catalog queries. Everything that can be expressed with SQLAlchemy
Core (reflection, row counting, the bucketed copy) lives here; the
subclasses only supply what differs per engine: how a partition is
declared, how existence is checked, how named locks are taken, and how
errors are classified.

Dialect methods never open or commit transactions. Callers pass the
Connection whose transaction the statement belongs to.
"""

import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from sqlalchemy import (
    Column,
    Connection,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    cast,
    column,
    desc,
    func,
    inspect,
    insert,
    literal,
    select,
    table,
    text,
)
from sqlalchemy.engine import Dialect, Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.sql.expression import TableClause
from sqlalchemy.types import LargeBinary, NullType

from partwise.contracts import IndexDefinition, KeyDistribution, PartitionNode
from partwise.core.naming import DEFAULT_MAX_IDENTIFIER_LENGTH, normalize_key_value
from partwise.core.schema import BUCKET_COLUMN

# CREATE [UNIQUE] INDEX [CONCURRENTLY] [IF NOT EXISTS] <name> ON [ONLY] <table>
_INDEX_HEADER = re.compile(
    r"""^\s*CREATE\s+(?P<unique>UNIQUE\s+)?INDEX\s+
        (?:CONCURRENTLY\s+)?(?:IF\s+NOT\s+EXISTS\s+)?
        (?P<name>"(?:[^"]|"")+"|[^\s(]+)\s+
        ON\s+(?:ONLY\s+)?
        (?P<table>(?:"(?:[^"]|"")+"|[^\s("]+)(?:\.(?:"(?:[^"]|"")+"|[^\s("]+))?)""",
    re.IGNORECASE | re.VERBOSE,
)


def rewrite_index_sql(sql: str, *, index_name: str, target_table: str, unique: bool = True) -> str:
    """Point an index definition at another table under another name.

    Args:
        sql: CREATE INDEX statement as reported by the engine's catalog
        index_name: Quoted name for the new index
        target_table: Quoted (optionally schema-qualified) table name
        unique: If False, the UNIQUE keyword is dropped

    Returns:
        The rewritten statement; column list, method, and predicate unchanged

    Raises:
        ValueError: If sql is not a recognizable CREATE INDEX statement
    """
    match = _INDEX_HEADER.match(sql)
    if match is None:
        raise ValueError(f"Not a CREATE INDEX statement: {sql!r}")
    rewritten = sql[: match.start("name")] + index_name + sql[match.end("name") : match.start("table")] + target_table + sql[match.end("table") :]
    if not unique and match.group("unique"):
        rewritten = re.sub(r"^(\s*CREATE\s+)UNIQUE\s+", r"\1", rewritten, count=1, flags=re.IGNORECASE)
    return rewritten


class StorageDialect(ABC):
    """Storage operations the registry, router, and orchestrator depend on.

    Subclasses implement engine-specific DDL and catalog access. Names
    passed in are unqualified; the dialect applies its schema.
    """

    name: str = ""
    # Appended to DROP TABLE so dependent partitions go with the table
    drop_cascade: str = ""

    def __init__(self, schema: str | None = None, max_identifier_length: int = DEFAULT_MAX_IDENTIFIER_LENGTH) -> None:
        self.schema = schema
        self.max_identifier_length = max_identifier_length

    # === Quoting ===

    def quote(self, conn: Connection, name: str) -> str:
        """Always-quoted identifier."""
        return self._quote(conn.dialect, name)

    def qualify(self, conn: Connection, name: str) -> str:
        """Quoted, schema-qualified relation name."""
        return self._qualify(conn.dialect, name)

    @staticmethod
    def _quote(engine_dialect: Dialect, name: str) -> str:
        return engine_dialect.identifier_preparer.quote_identifier(name)

    def _qualify(self, engine_dialect: Dialect, name: str) -> str:
        quoted = self._quote(engine_dialect, name)
        if self.schema:
            return f"{self._quote(engine_dialect, self.schema)}.{quoted}"
        return quoted

    def literal(self, conn: Connection, value: str) -> str:
        """Render a text value as an SQL string literal."""
        processor = String().literal_processor(conn.dialect)
        if processor is None:
            raise RuntimeError(f"{conn.dialect.name} has no string literal renderer")
        rendered: str = processor(value)
        return rendered

    def table_ref(self, name: str, *columns: str) -> TableClause:
        """Lightweight table construct for DML against an unreflected table."""
        return table(name, *(column(c) for c in columns), schema=self.schema)

    # === Catalog ===

    @abstractmethod
    def relation_exists(self, conn: Connection, name: str) -> bool:
        """Whether a table or partition called name exists in the schema."""
        ...

    @abstractmethod
    def index_definitions(self, conn: Connection, table_name: str) -> list[IndexDefinition]:
        """Secondary indexes of a table, excluding its primary key."""
        ...

    def column_definitions(self, conn: Connection, table_name: str) -> list[dict[str, Any]]:
        """Reflected columns of a table, in declared order."""
        return list(inspect(conn).get_columns(table_name, schema=self.schema))

    def primary_key_columns(self, conn: Connection, table_name: str) -> list[str]:
        pk = inspect(conn).get_pk_constraint(table_name, schema=self.schema)
        return list(pk.get("constrained_columns") or [])

    def key_text(self, conn: Connection, table_name: str, key_column: str, value: object) -> str:
        """Text form a key value has once stored, as the engine casts it.

        The router derives cursor keys and partition names from this, while
        the bulk backfill casts stored values in SQL. Both must agree for
        every key value.
        """
        return normalize_key_value(value)

    # === DDL ===

    def create_partitioned_table(self, conn: Connection, table_name: str, source_table: str, key_column: str) -> list[str]:
        """Create the partitioned table with the source table's column shape.

        Copies each column's type and nullability (defaults are not carried),
        appends the bucket column, and declares a primary key of the source
        key plus the partition key and bucket column.

        Args:
            conn: Connection in the caller's transaction
            table_name: Name of the new partitioned table
            source_table: Table whose columns are copied
            key_column: Level-1 partition key column

        Returns:
            Names of the copied columns (without the bucket column)
        """
        reflected = [c for c in self.column_definitions(conn, source_table) if c["name"] != BUCKET_COLUMN]
        column_names = [c["name"] for c in reflected]
        if key_column not in column_names:
            raise ValueError(f"Key column '{key_column}' not found on {source_table}")

        pk_columns = list(dict.fromkeys([*self.primary_key_columns(conn, source_table), key_column, BUCKET_COLUMN]))
        columns = [Column(c["name"], self._ddl_type(c["type"]), nullable=c["nullable"]) for c in reflected]
        columns.append(Column(BUCKET_COLUMN, Integer, nullable=False, server_default="0"))

        partitioned = Table(
            table_name,
            MetaData(schema=self.schema),
            *columns,
            PrimaryKeyConstraint(*pk_columns),
            **self.partitioned_table_kwargs(conn, key_column),
        )
        partitioned.create(conn, checkfirst=True)
        return column_names

    def partitioned_table_kwargs(self, conn: Connection, key_column: str) -> dict[str, Any]:
        return {}

    @abstractmethod
    def create_level1(self, conn: Connection, parent_table: str, node: PartitionNode) -> None:
        """Declare the level-1 partition for node.key_value."""
        ...

    @abstractmethod
    def create_level2(self, conn: Connection, level1_table: str, node: PartitionNode) -> None:
        """Declare the level-2 partition for node.bucket_id under a level-1 partition."""
        ...

    def restore_sql(self, engine_dialect: Dialect, table_name: str, backup_table: str) -> str:
        """Statements that put a backup back under its live name, for an operator to run."""
        return (
            f"DROP TABLE IF EXISTS {self._qualify(engine_dialect, table_name)}{self.drop_cascade}; "
            f"ALTER TABLE {self._qualify(engine_dialect, backup_table)} RENAME TO {self._quote(engine_dialect, table_name)};"
        )

    def rename_table(self, conn: Connection, old_name: str, new_name: str) -> None:
        conn.execute(text(f"ALTER TABLE {self.qualify(conn, old_name)} RENAME TO {self.quote(conn, new_name)}"))

    @abstractmethod
    def drop_table(self, conn: Connection, name: str) -> None:
        """Drop a table and every partition hanging off it, if it exists."""
        ...

    @abstractmethod
    def create_index(self, conn: Connection, sql: str, *, index_name: str, partition_columns: Sequence[str]) -> None:
        """Execute an index definition on the partitioned table.

        Raises:
            UniqueIndexIncompatibleError: If the index is unique and the engine
                rejects it for not covering every partition column
        """
        ...

    # === Locking and error classification ===

    @abstractmethod
    def acquire_named_lock(self, conn: Connection, name: str) -> None:
        """Take an exclusive lock on name, released when the transaction ends."""
        ...

    @abstractmethod
    def is_duplicate_object(self, exc: DBAPIError) -> bool:
        """Whether exc means the object being created already exists."""
        ...

    # === Data ===

    def count_rows(self, conn: Connection, table_name: str) -> int:
        result = conn.execute(select(func.count()).select_from(self.table_ref(table_name)))
        return int(result.scalar_one())

    def key_distribution(self, conn: Connection, table_name: str, key_column: str) -> list[KeyDistribution]:
        """Row count per distinct non-NULL key value, largest first.

        Ties are ordered by key value so the order is deterministic.
        """
        source = self.table_ref(table_name, key_column)
        key_as_text = cast(source.c[key_column], String)
        row_count = func.count().label("row_count")
        query = (
            select(key_as_text.label("key_value"), row_count)
            .where(source.c[key_column].is_not(None))
            .group_by(key_as_text)
            .order_by(desc(row_count), key_as_text)
        )
        return [KeyDistribution(key_value=row.key_value, row_count=int(row.row_count)) for row in conn.execute(query)]

    def count_null_keys(self, conn: Connection, table_name: str, key_column: str) -> int:
        source = self.table_ref(table_name, key_column)
        result = conn.execute(select(func.count()).select_from(source).where(source.c[key_column].is_(None)))
        return int(result.scalar_one())

    @abstractmethod
    def clear_key_rows(self, conn: Connection, table_name: str, key_column: str, level1: PartitionNode) -> None:
        """Remove every row of one key value from the partitioned table."""
        ...

    def copy_key_rows(
        self,
        conn: Connection,
        *,
        source_table: str,
        target_table: str,
        columns: Sequence[str],
        key_column: str,
        key_value: str,
        bucket_capacity: int,
    ) -> int:
        """Copy one key value's rows, numbering them into consecutive buckets.

        Row n (0-based, engine order) lands in bucket ``n // bucket_capacity``.

        Returns:
            Number of rows inserted
        """
        source = self.table_ref(source_table, *columns)
        target = self.table_ref(target_table, *columns, BUCKET_COLUMN)
        bucket = (func.row_number().over() - literal(1, Integer)) // literal(bucket_capacity, Integer)
        query = select(*(source.c[c] for c in columns), bucket).where(cast(source.c[key_column], String) == key_value)
        result = conn.execute(insert(target).from_select([*columns, BUCKET_COLUMN], query))
        return int(result.rowcount)

    @abstractmethod
    def analyze(self, engine: Engine, table_names: Sequence[str]) -> None:
        """Refresh planner statistics for the given tables."""
        ...

    # === Helpers ===

    def _ddl_type(self, reflected_type: Any) -> Any:
        # Columns declared without a type reflect as NullType, which has no DDL
        if isinstance(reflected_type, NullType):
            return LargeBinary()
        return reflected_type
