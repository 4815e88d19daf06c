"""Partition registry: durable configuration and cursor state.

PartitionRegistry is a thin repository over the ``partition_config`` and
``partition_cursor`` tables. Every method takes the Connection whose
transaction it belongs to, because the callers decide lock scope: the
router holds a cursor row lock for exactly allocate-then-persist, while
the orchestrator batches many cursor seeds into one commit.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Connection, delete, insert, select, update
from sqlalchemy.engine import Row
from sqlalchemy.exc import IntegrityError

from partwise.contracts import ConfigurationError, PartitionConfig, PartitionCursor
from partwise.core.logging import get_logger
from partwise.core.schema import partition_config_table, partition_cursor_table

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


class PartitionRegistry:
    """Repository for partition configuration and per-key cursors.

    Usage:
        registry = PartitionRegistry()
        with db.connection() as conn:
            registry.create_cursor_if_absent(conn, "orders", "42")
            cursor = registry.get_cursor(conn, "orders", "42", for_update=True)
    """

    # === Configuration ===

    def get_config(self, conn: Connection, table_name: str) -> PartitionConfig | None:
        """Partitioning configuration of a table, or None if it is not managed."""
        row = conn.execute(select(partition_config_table).where(partition_config_table.c.table_name == table_name)).first()
        if row is None:
            return None
        return self._load_config(row)

    def list_configs(self, conn: Connection) -> list[PartitionConfig]:
        rows = conn.execute(select(partition_config_table).order_by(partition_config_table.c.table_name))
        return [self._load_config(row) for row in rows]

    def upsert_config(self, conn: Connection, table_name: str, key_column: str, bucket_capacity: int) -> PartitionConfig:
        """Register a table, or update the bucket capacity of a registered one.

        The key column is immutable once a table is registered; a changed
        capacity only affects future allocation decisions.

        Raises:
            ConfigurationError: If a name is empty, the capacity is below 1, or
                the table is already registered with a different key column
        """
        if not table_name or not key_column:
            raise ConfigurationError("Table name and key column must be non-empty")
        if bucket_capacity < 1:
            raise ConfigurationError(f"bucket_capacity must be >= 1 for {table_name}, got {bucket_capacity}")

        existing = self.get_config(conn, table_name)
        if existing is None:
            conn.execute(
                insert(partition_config_table).values(
                    table_name=table_name,
                    partition_key_column=key_column,
                    bucket_capacity=bucket_capacity,
                    created_at=_now(),
                )
            )
            logger.info("Registered partitioned table", table=table_name, key_column=key_column, bucket_capacity=bucket_capacity)
        else:
            if existing.partition_key_column != key_column:
                raise ConfigurationError(
                    f"{table_name} is already partitioned by '{existing.partition_key_column}'; cannot switch to '{key_column}'"
                )
            if existing.bucket_capacity != bucket_capacity:
                conn.execute(
                    update(partition_config_table)
                    .where(partition_config_table.c.table_name == table_name)
                    .values(bucket_capacity=bucket_capacity)
                )
                logger.info(
                    "Updated bucket capacity",
                    table=table_name,
                    old_capacity=existing.bucket_capacity,
                    new_capacity=bucket_capacity,
                )

        config = self.get_config(conn, table_name)
        if config is None:
            raise RuntimeError(f"upsert_config: {table_name} vanished inside its own transaction")
        return config

    def mark_cutover(self, conn: Connection, table_name: str) -> None:
        """Record that routing is live for a table (migration complete)."""
        conn.execute(
            update(partition_config_table)
            .where(partition_config_table.c.table_name == table_name)
            .values(cutover_at=_now())
        )

    def delete_table(self, conn: Connection, table_name: str) -> int:
        """Forget a table entirely: its cursors and its configuration.

        Returns:
            Number of cursor rows removed
        """
        result = conn.execute(delete(partition_cursor_table).where(partition_cursor_table.c.table_name == table_name))
        conn.execute(delete(partition_config_table).where(partition_config_table.c.table_name == table_name))
        return int(result.rowcount)

    # === Cursors ===

    def get_cursor(self, conn: Connection, table_name: str, key_value: str, *, for_update: bool = False) -> PartitionCursor | None:
        """Read one key's cursor.

        Args:
            conn: Connection in the caller's transaction
            table_name: Managed table
            key_value: Normalized key value
            for_update: Hold an exclusive row lock until the transaction ends

        Returns:
            The cursor, or None if none exists yet
        """
        query = select(partition_cursor_table).where(
            partition_cursor_table.c.table_name == table_name,
            partition_cursor_table.c.key_value == key_value,
        )
        if for_update:
            query = query.with_for_update()
        row = conn.execute(query).first()
        if row is None:
            return None
        return self._load_cursor(row)

    def list_cursors(self, conn: Connection, table_name: str) -> list[PartitionCursor]:
        rows = conn.execute(
            select(partition_cursor_table)
            .where(partition_cursor_table.c.table_name == table_name)
            .order_by(partition_cursor_table.c.key_value)
        )
        return [self._load_cursor(row) for row in rows]

    def create_cursor_if_absent(self, conn: Connection, table_name: str, key_value: str) -> bool:
        """Create a key's cursor at bucket 0 with no rows, unless one exists.

        Racing creators converge on one cursor: the losing insert hits the
        primary key inside a savepoint, which is rolled back without
        disturbing the caller's transaction.

        Returns:
            True if this call created the cursor
        """
        try:
            with conn.begin_nested():
                conn.execute(
                    insert(partition_cursor_table).values(
                        table_name=table_name,
                        key_value=key_value,
                        current_bucket_id=0,
                        row_count_in_bucket=0,
                        last_updated=_now(),
                    )
                )
        except IntegrityError:
            # A foreign key failure (table not registered) is not a race
            if self.get_cursor(conn, table_name, key_value) is None:
                raise
            return False
        return True

    def advance_cursor(self, conn: Connection, table_name: str, key_value: str, bucket_id: int, row_count: int) -> None:
        """Unconditionally write a key's cursor position.

        Only called while holding that cursor's row lock.

        Raises:
            ValueError: If no cursor exists for the key
        """
        result = conn.execute(
            update(partition_cursor_table)
            .where(
                partition_cursor_table.c.table_name == table_name,
                partition_cursor_table.c.key_value == key_value,
            )
            .values(current_bucket_id=bucket_id, row_count_in_bucket=row_count, last_updated=_now())
        )
        if result.rowcount == 0:
            raise ValueError(f"advance_cursor: no cursor for {table_name} key '{key_value}'")

    def seed_cursor(self, conn: Connection, table_name: str, key_value: str, bucket_id: int, row_count: int) -> None:
        """Write a key's cursor position, creating the cursor if needed.

        Used by bulk provisioning, which derives the position from historical
        row counts instead of allocating row by row.
        """
        if not self.create_cursor_if_absent(conn, table_name, key_value):
            logger.debug("Overwriting existing cursor", table=table_name, key_value=key_value)
        self.advance_cursor(conn, table_name, key_value, bucket_id, row_count)

    # === Row loading ===

    @staticmethod
    def _load_config(row: Row[Any]) -> PartitionConfig:
        return PartitionConfig(
            table_name=row.table_name,
            partition_key_column=row.partition_key_column,
            bucket_capacity=row.bucket_capacity,
            created_at=row.created_at,
            cutover_at=row.cutover_at,
        )

    @staticmethod
    def _load_cursor(row: Row[Any]) -> PartitionCursor:
        return PartitionCursor(
            table_name=row.table_name,
            key_value=row.key_value,
            current_bucket_id=row.current_bucket_id,
            row_count_in_current_bucket=row.row_count_in_bucket,
            last_updated=row.last_updated,
        )
