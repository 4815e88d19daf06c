# src/partwise/migration/orchestrator.py
"""MigrationOrchestrator: drives one table at a time through the pipeline.

Per-table stages (each committed before the next starts):

    NONE -> RENAMED -> STRUCTURE_CREATED -> PROVISIONED -> (indexes)
         -> DATA_MIGRATED -> VERIFIED

Stage detection is catalog-derived, so a run that crashed at any point
can simply be started again:

- the backup exists: the rename already happened, resume after it
- the live table exists, no backup: rename it
- neither exists: SourceTableNotFoundError
- the table's registry entry carries ``cutover_at``: already migrated, skip

Data transfer copies one key per transaction, deleting any rows of that
key already present first, so re-running it never duplicates rows.
"""

import threading
import time
from collections.abc import Sequence

from sqlalchemy.exc import SQLAlchemyError

from partwise.contracts import (
    ConfigurationError,
    DataTransferError,
    IndexCloneResult,
    KeyDistribution,
    MigrationCancelledError,
    MigrationStage,
    MigrationTarget,
    PartwiseError,
    SourceTableNotFoundError,
    TableMigrationResult,
    TableOutcome,
)
from partwise.contracts.events import (
    IndexReplicated,
    KeyMigrated,
    StageCompleted,
    TableFailed,
    TableSkipped,
    TableStarted,
    VerificationCompleted,
)
from partwise.core.config import MigrationSettings
from partwise.core.database import PartwiseDB
from partwise.core.events import EventBusProtocol, NullEventBus
from partwise.core.logging import bind_stage, get_logger, table_context
from partwise.migration.indexes import IndexReplicator
from partwise.routing.allocator import buckets_needed
from partwise.routing.provisioner import PartitionProvisioner
from partwise.routing.registry import PartitionRegistry

logger = get_logger(__name__)


class MigrationOrchestrator:
    """Migrates flat tables into two-level partitioned tables.

    Usage:
        orchestrator = MigrationOrchestrator(db, settings.migration, event_bus=bus)
        for target in settings.migration_targets():
            result = orchestrator.migrate_table(target)

    Fatal errors propagate to the caller, which is expected to run the
    rollback coordinator. A row-count mismatch after transfer is not fatal;
    it is reported on the result and as a warning.
    """

    def __init__(
        self,
        db: PartwiseDB,
        settings: MigrationSettings | None = None,
        *,
        event_bus: EventBusProtocol | None = None,
        registry: PartitionRegistry | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            db: Database holding the target tables and the registry
            settings: Pipeline tuning (default: MigrationSettings())
            event_bus: Receives progress events (default: no-op)
            registry: Partition registry (default: new instance)
        """
        self._db = db
        self._dialect = db.dialect
        self._settings = settings or MigrationSettings()
        self._events: EventBusProtocol = event_bus or NullEventBus()
        self._registry = registry or PartitionRegistry()
        self._provisioner = PartitionProvisioner(
            db,
            registry=self._registry,
            batch_size=self._settings.provision_batch_size,
        )
        self._indexes = IndexReplicator(db)
        self._cancel_event = threading.Event()

    # === Cancellation ===

    def cancel(self) -> None:
        """Request cancellation; honored at the next stage, batch, or key boundary."""
        logger.warning("Cancellation requested")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise MigrationCancelledError("Migration cancelled by request")

    # === Pipeline ===

    def run(self, targets: Sequence[MigrationTarget]) -> list[TableMigrationResult]:
        """Migrate tables sequentially in the given order.

        Raises:
            PartwiseError: On the first fatal table failure
        """
        return [self.migrate_table(target) for target in targets]

    def migrate_table(self, target: MigrationTarget) -> TableMigrationResult:
        """Run one table's pipeline from its current stage to VERIFIED.

        Raises:
            SourceTableNotFoundError: If neither the table nor its backup exists
            ConfigurationError: If the key column does not exist
            DataTransferError: If copying a key's rows fails
            MigrationCancelledError: If cancel() was called
        """
        with table_context(target.table):
            return self._migrate_table(target)

    def _migrate_table(self, target: MigrationTarget) -> TableMigrationResult:
        stage = MigrationStage.NONE
        self._events.emit(TableStarted(table=target.table, key_column=target.key_column, bucket_capacity=target.bucket_capacity))
        try:
            with self._db.connection() as conn:
                live_exists = self._dialect.relation_exists(conn, target.table)
                backup_exists = self._dialect.relation_exists(conn, target.backup_table)
                config = self._registry.get_config(conn, target.table)

            if live_exists and config is not None and config.cutover_at is not None:
                logger.info("Table already migrated, skipping", cutover_at=str(config.cutover_at))
                self._events.emit(TableSkipped(table=target.table, reason="already migrated"))
                return TableMigrationResult(target.table, TableOutcome.ALREADY_MIGRATED, MigrationStage.VERIFIED)

            stage = self._rename(target, live_exists=live_exists, backup_exists=backup_exists)
            columns = self._create_structure(target)
            stage = MigrationStage.STRUCTURE_CREATED
            distribution, bucket_count = self._provision(target)
            stage = MigrationStage.PROVISIONED
            indexes = self._replicate_indexes(target)
            migrated = self._transfer(target, columns, distribution)
            stage = MigrationStage.DATA_MIGRATED
            source_rows, target_rows = self._verify(target)
            stage = MigrationStage.VERIFIED
        except (PartwiseError, SQLAlchemyError) as e:
            logger.error("Table migration failed", stage=stage.value, error=str(e))
            self._events.emit(TableFailed(table=target.table, stage=stage, error=e))
            raise

        logger.info("Table migrated", rows=migrated, keys=len(distribution), buckets=bucket_count)
        return TableMigrationResult(
            table=target.table,
            outcome=TableOutcome.MIGRATED,
            final_stage=stage,
            source_rows=source_rows,
            migrated_rows=target_rows,
            key_count=len(distribution),
            bucket_count=bucket_count,
            indexes=tuple(indexes),
        )

    def _stage_done(self, target: MigrationTarget, stage: MigrationStage, started: float, *, resumed: bool = False) -> None:
        self._events.emit(
            StageCompleted(
                table=target.table,
                stage=stage,
                duration_seconds=time.perf_counter() - started,
                resumed=resumed,
            )
        )
        bind_stage(stage.value)
        self._check_cancelled()

    def _rename(self, target: MigrationTarget, *, live_exists: bool, backup_exists: bool) -> MigrationStage:
        started = time.perf_counter()
        self._check_cancelled()
        if backup_exists:
            logger.warning("Backup already exists, resuming previous run", table=target.table, backup_table=target.backup_table)
        elif live_exists:
            with self._db.connection() as conn:
                self._dialect.rename_table(conn, target.table, target.backup_table)
            logger.info("Renamed table to backup", table=target.table, backup_table=target.backup_table)
        else:
            raise SourceTableNotFoundError(target.table)
        self._stage_done(target, MigrationStage.RENAMED, started, resumed=backup_exists)
        return MigrationStage.RENAMED

    def _create_structure(self, target: MigrationTarget) -> list[str]:
        started = time.perf_counter()
        try:
            with self._db.connection() as conn:
                columns = self._dialect.create_partitioned_table(conn, target.table, target.backup_table, target.key_column)
                self._registry.upsert_config(conn, target.table, target.key_column, target.bucket_capacity)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        logger.info("Created partitioned table", table=target.table, key_column=target.key_column, columns=len(columns))
        self._stage_done(target, MigrationStage.STRUCTURE_CREATED, started)
        return columns

    def _provision(self, target: MigrationTarget) -> tuple[list[KeyDistribution], int]:
        started = time.perf_counter()
        with self._db.connection() as conn:
            distribution = self._dialect.key_distribution(conn, target.backup_table, target.key_column)
            null_rows = self._dialect.count_null_keys(conn, target.backup_table, target.key_column)
        if null_rows:
            logger.warning(
                "Rows with NULL partition key cannot be migrated",
                table=target.table,
                key_column=target.key_column,
                rows=null_rows,
            )
        logger.info("Analyzed key distribution", table=target.table, keys=len(distribution))

        bucket_count = self._provisioner.provision_from_distribution(target, distribution, checkpoint=self._check_cancelled)
        self._stage_done(target, MigrationStage.PROVISIONED, started)
        return distribution, bucket_count

    def _replicate_indexes(self, target: MigrationTarget) -> list[IndexCloneResult]:
        results = self._indexes.replicate(target)
        for result in results:
            self._events.emit(
                IndexReplicated(table=target.table, index_name=result.index_name, outcome=result.outcome, detail=result.detail)
            )
        return results

    def _transfer(self, target: MigrationTarget, columns: list[str], distribution: list[KeyDistribution]) -> int:
        """Copy every key's rows, largest key first."""
        started = time.perf_counter()
        total = 0
        for entry in distribution:
            self._check_cancelled()
            level1 = self._provisioner.level1(target.table, target.key_column, entry.key_value)
            try:
                with self._db.connection() as conn:
                    self._dialect.clear_key_rows(conn, target.table, target.key_column, level1)
                    rows = self._dialect.copy_key_rows(
                        conn,
                        source_table=target.backup_table,
                        target_table=target.table,
                        columns=columns,
                        key_column=target.key_column,
                        key_value=entry.key_value,
                        bucket_capacity=target.bucket_capacity,
                    )
            except SQLAlchemyError as e:
                raise DataTransferError(target.table, entry.key_value, e) from e
            total += rows
            logger.debug("Migrated key", table=target.table, key_value=entry.key_value, rows=rows)
            self._events.emit(
                KeyMigrated(
                    table=target.table,
                    key_value=entry.key_value,
                    rows=rows,
                    buckets=buckets_needed(rows, target.bucket_capacity),
                )
            )
        self._stage_done(target, MigrationStage.DATA_MIGRATED, started)
        return total

    def _verify(self, target: MigrationTarget) -> tuple[int, int]:
        """Activate routing and compare row counts of backup and partitioned table."""
        started = time.perf_counter()
        with self._db.connection() as conn:
            self._registry.mark_cutover(conn, target.table)
            source_rows = self._dialect.count_rows(conn, target.backup_table)
            target_rows = self._dialect.count_rows(conn, target.table)

        if source_rows != target_rows:
            logger.warning(
                "Row count mismatch after migration, manual review required",
                table=target.table,
                source_rows=source_rows,
                migrated_rows=target_rows,
            )
        self._events.emit(VerificationCompleted(table=target.table, source_rows=source_rows, migrated_rows=target_rows))
        self._stage_done(target, MigrationStage.VERIFIED, started)
        return source_rows, target_rows

    # === Finalization ===

    def analyze(self, targets: Sequence[MigrationTarget]) -> None:
        """Refresh planner statistics on migrated tables. Failures are logged, not raised."""
        if not self._settings.analyze_after:
            return
        try:
            self._dialect.analyze(self._db.engine, [t.table for t in targets])
        except SQLAlchemyError as e:
            logger.warning("Statistics refresh failed", error=str(e))

    # === Status ===

    def derive_stage(self, target: MigrationTarget) -> MigrationStage:
        """Furthest stage observable in the catalog and registry."""
        with self._db.connection() as conn:
            live_exists = self._dialect.relation_exists(conn, target.table)
            backup_exists = self._dialect.relation_exists(conn, target.backup_table)
            config = self._registry.get_config(conn, target.table)
            if config is not None and config.cutover_at is not None and live_exists:
                return MigrationStage.VERIFIED
            if not backup_exists:
                return MigrationStage.NONE
            if not live_exists or config is None:
                return MigrationStage.RENAMED
            if not self._registry.list_cursors(conn, target.table):
                return MigrationStage.STRUCTURE_CREATED
            if self._dialect.count_rows(conn, target.table) == 0:
                return MigrationStage.PROVISIONED
            return MigrationStage.DATA_MIGRATED
