"""Partition provisioning: make sure partitions exist before rows arrive.

Two entry points share one creation routine:

- ``ensure_partitions`` is the hot path, called by the router for every
  insert. Each level is created in its own short transaction with
  double-checked creation under a named lock scoped to the partition.
- ``provision_from_distribution`` is the bulk path, called once per table
  by the orchestrator. It creates every partition the historical data
  needs and seeds each key's cursor, committing every ``batch_size`` keys.

The storage engine's catalog is the only record of which partitions exist.
An "already exists" failure from a creation statement means another caller
won the race, and counts as success.
"""

from collections.abc import Callable, Iterable

from sqlalchemy import Connection
from sqlalchemy.exc import DBAPIError

from partwise.contracts import KeyDistribution, MigrationTarget, PartitionCreationError, PartitionNode
from partwise.core.database import PartwiseDB
from partwise.core.logging import get_logger
from partwise.core.naming import level1_node, level2_node, lock_name
from partwise.routing.allocator import buckets_needed, seed_position
from partwise.routing.registry import PartitionRegistry

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 50


class PartitionProvisioner:
    """Creates level-1 and level-2 partitions on demand and in bulk.

    Usage:
        provisioner = PartitionProvisioner(db)
        leaf = provisioner.ensure_partitions("orders", "customer_id", "42", bucket_id=3)
    """

    def __init__(
        self,
        db: PartwiseDB,
        *,
        registry: PartitionRegistry | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        """Initialize with database connection.

        Args:
            db: Database holding the partitioned tables and the registry
            registry: Registry used for cursor seeding (default: new instance)
            batch_size: Keys provisioned per commit on the bulk path
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self._db = db
        self._dialect = db.dialect
        self._registry = registry or PartitionRegistry()
        self._batch_size = batch_size

    def level1(self, table: str, key_column: str, key_value: str) -> PartitionNode:
        return level1_node(table, key_column, key_value, self._dialect.max_identifier_length)

    def level2(self, table: str, key_column: str, key_value: str, bucket_id: int) -> PartitionNode:
        return level2_node(table, key_column, key_value, bucket_id, self._dialect.max_identifier_length)

    # === Hot path ===

    def ensure_partitions(self, table: str, key_column: str, key_value: str, bucket_id: int) -> PartitionNode:
        """Guarantee the level-1 and level-2 partitions for a row exist.

        Level 1 is always ensured (and committed) before level 2.

        Returns:
            The level-2 node the row belongs to

        Raises:
            PartitionCreationError: If a partition cannot be created for a
                reason other than a lost race
        """
        parent = self.level1(table, key_column, key_value)
        leaf = self.level2(table, key_column, key_value, bucket_id)
        self._ensure(parent, lambda conn: self._dialect.create_level1(conn, table, parent))
        self._ensure(leaf, lambda conn: self._dialect.create_level2(conn, parent.name, leaf))
        return leaf

    def _ensure(self, node: PartitionNode, create: Callable[[Connection], None]) -> bool:
        """Double-checked creation of one partition in its own transaction.

        Returns:
            True if this call created the partition
        """
        with self._db.connection() as conn:
            if self._dialect.relation_exists(conn, node.name):
                return False
            self._dialect.acquire_named_lock(conn, lock_name(node))
            # Another caller may have created it while we waited for the lock
            if self._dialect.relation_exists(conn, node.name):
                return False
            created = self._create(conn, node, create)
        if created:
            logger.info(
                "Created partition",
                table=node.table_name,
                partition=node.name,
                level=node.level,
                key_value=node.key_value,
                bucket_id=node.bucket_id,
            )
        return created

    def _create(self, conn: Connection, node: PartitionNode, create: Callable[[Connection], None]) -> bool:
        try:
            with conn.begin_nested():
                create(conn)
        except DBAPIError as exc:
            if self._dialect.is_duplicate_object(exc):
                logger.debug("Partition created concurrently", partition=node.name)
                return False
            raise PartitionCreationError(node.name, exc) from exc
        return True

    # === Bulk path ===

    def provision_from_distribution(
        self,
        target: MigrationTarget,
        distribution: Iterable[KeyDistribution],
        *,
        checkpoint: Callable[[], None] | None = None,
    ) -> int:
        """Create every partition historical data needs and seed cursors.

        For each key, creates the level-1 partition and buckets
        ``0 .. ceil(rows / capacity) - 1``, then sets the key's cursor to the
        position sequential allocation of those rows would have reached.

        Args:
            target: Table being migrated
            distribution: Row count per key value in the backup table
            checkpoint: Called before each batch; raises to abort between commits

        Returns:
            Number of level-2 partitions the distribution needs
        """
        keys = list(distribution)
        total_buckets = 0
        for start in range(0, len(keys), self._batch_size):
            if checkpoint is not None:
                checkpoint()
            batch = keys[start : start + self._batch_size]
            with self._db.connection() as conn:
                for entry in batch:
                    total_buckets += self._provision_key(conn, target, entry)
            logger.info(
                "Provisioned partition batch",
                table=target.table,
                keys_done=start + len(batch),
                keys_total=len(keys),
            )
        return total_buckets

    def _provision_key(self, conn: Connection, target: MigrationTarget, entry: KeyDistribution) -> int:
        table, key_column = target.table, target.key_column
        parent = self.level1(table, key_column, entry.key_value)
        if not self._dialect.relation_exists(conn, parent.name):
            self._create(conn, parent, lambda c: self._dialect.create_level1(c, table, parent))

        needed = buckets_needed(entry.row_count, target.bucket_capacity)
        for bucket_id in range(needed):
            leaf = self.level2(table, key_column, entry.key_value, bucket_id)
            if not self._dialect.relation_exists(conn, leaf.name):
                self._create(conn, leaf, lambda c, leaf=leaf: self._dialect.create_level2(c, parent.name, leaf))

        bucket_id, row_count = seed_position(entry.row_count, target.bucket_capacity)
        self._registry.seed_cursor(conn, table, entry.key_value, bucket_id, row_count)
        return needed
