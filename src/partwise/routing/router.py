"""Row router: the per-insert entry point for managed tables.

Placing a row takes one transaction that creates the key's cursor if
absent, locks it, allocates a bucket and checks that the bucket's
partition exists. If it does, the advanced cursor is persisted and (for
``insert``) the row is written in that same transaction, so a failed
insert leaves the cursor where it was. If it does not, the transaction
ends without touching the cursor, the partitions are created in their
own short transactions, and allocation starts over.

The cursor row lock therefore never waits behind a catalog creation.
"""

from collections.abc import Mapping
from typing import Any

from sqlalchemy import Connection, insert

from partwise.contracts import NullPartitionKeyError, PartitionConfig, PartitionCreationError, RoutingMode
from partwise.core.database import PartwiseDB
from partwise.core.logging import get_logger
from partwise.core.schema import BUCKET_COLUMN
from partwise.routing.allocator import Allocation, allocate
from partwise.routing.provisioner import PartitionProvisioner
from partwise.routing.registry import PartitionRegistry

logger = get_logger(__name__)

# Each retry follows a partition creation; only concurrent rollovers force another
MAX_PLACEMENT_ATTEMPTS = 10


class RowRouter:
    """Assigns bucket ids to rows of managed tables and provisions their partitions.

    Usage:
        router = RowRouter(db)
        row = router.insert("orders", {"id": 1, "customer_id": 42, "total": 9.5})
        row["bucket_id"]  # 0 until the key's first bucket is full
    """

    def __init__(
        self,
        db: PartwiseDB,
        *,
        registry: PartitionRegistry | None = None,
        provisioner: PartitionProvisioner | None = None,
    ) -> None:
        self._db = db
        self._registry = registry or PartitionRegistry()
        self._provisioner = provisioner or PartitionProvisioner(db, registry=self._registry)

    def route(self, table: str, row: Mapping[str, Any], *, mode: RoutingMode = RoutingMode.LIVE) -> dict[str, Any]:
        """Assign a bucket to a row and make sure its partitions exist.

        The cursor is committed before this returns; callers that write the
        row themselves lose that slot if their write fails. ``insert`` does
        both in one transaction.

        Args:
            table: Table the row is written to
            row: Column values; not modified
            mode: BACKFILL passes the row through untouched (the caller
                computed the bucket id itself)

        Returns:
            A copy of the row with the bucket column set (unless passed through)

        Raises:
            NullPartitionKeyError: If the key column is missing or NULL
            PartitionCreationError: If a partition cannot be created
        """
        return self._place(table, row, mode=mode, write=False)

    def insert(self, table: str, row: Mapping[str, Any], *, mode: RoutingMode = RoutingMode.LIVE) -> dict[str, Any]:
        """Route a row and insert it in the transaction that advances its cursor.

        Returns:
            The row as inserted
        """
        return self._place(table, row, mode=mode, write=True)

    def _place(self, table: str, row: Mapping[str, Any], *, mode: RoutingMode, write: bool) -> dict[str, Any]:
        routed = dict(row)
        if mode == RoutingMode.BACKFILL:
            if write:
                self._write(table, routed)
            return routed

        with self._db.connection() as conn:
            config = self._registry.get_config(conn, table)
            if config is not None:
                raw_key = routed.get(config.partition_key_column)
                if raw_key is None:
                    raise NullPartitionKeyError(table, config.partition_key_column)
                key_value = self._db.dialect.key_text(conn, table, config.partition_key_column, raw_key)
        if config is None:
            # Not a managed table
            if write:
                self._write(table, routed)
            return routed

        leaf_name = ""
        for _ in range(MAX_PLACEMENT_ATTEMPTS):
            with self._db.connection() as conn:
                allocation = self._allocate(conn, config, key_value)
                leaf_name = self._provisioner.level2(table, config.partition_key_column, key_value, allocation.bucket_id).name
                placed = self._db.dialect.relation_exists(conn, leaf_name)
                if placed:
                    self._registry.advance_cursor(
                        conn,
                        table,
                        key_value,
                        allocation.cursor.current_bucket_id,
                        allocation.cursor.row_count_in_current_bucket,
                    )
                    routed[BUCKET_COLUMN] = allocation.bucket_id
                    if write:
                        self._write(table, routed, conn)
            if placed:
                if allocation.rolled_over:
                    logger.info("Bucket rolled over", table=table, key_value=key_value, bucket_id=allocation.bucket_id)
                return routed
            self._provisioner.ensure_partitions(table, config.partition_key_column, key_value, allocation.bucket_id)

        raise PartitionCreationError(
            leaf_name,
            RuntimeError(f"bucket moved on after {MAX_PLACEMENT_ATTEMPTS} attempts to provision it"),
        )

    def _allocate(self, conn: Connection, config: PartitionConfig, key_value: str) -> Allocation:
        """Lock the key's cursor and compute its next allocation (not persisted)."""
        table = config.table_name
        self._registry.create_cursor_if_absent(conn, table, key_value)
        cursor = self._registry.get_cursor(conn, table, key_value, for_update=True)
        if cursor is None:
            raise RuntimeError(f"Cursor for {table} key '{key_value}' missing after create_cursor_if_absent")
        return allocate(cursor, config.bucket_capacity)

    def _write(self, table: str, routed: dict[str, Any], conn: Connection | None = None) -> None:
        target = self._db.dialect.table_ref(table, *routed.keys())
        if conn is not None:
            conn.execute(insert(target).values(routed))
            return
        with self._db.connection() as own:
            own.execute(insert(target).values(routed))
