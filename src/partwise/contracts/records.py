"""Records passed between the registry, router, orchestrator, and coordinator.

Persisted records (PartitionConfig, PartitionCursor) mirror one row of the
registry tables. The rest are in-memory values describing partition
identities, source-table analysis, and migration outcomes.
"""

from dataclasses import dataclass, field
from datetime import datetime

from partwise.contracts.enums import (
    IndexCloneOutcome,
    MigrationStage,
    RollbackOutcome,
    RunStatus,
    TableOutcome,
)


@dataclass(frozen=True, slots=True)
class MigrationTarget:
    """One configured table to migrate: what to partition by and how full a bucket gets."""

    table: str
    key_column: str
    bucket_capacity: int
    backup_suffix: str = "_backup"

    @property
    def backup_table(self) -> str:
        return f"{self.table}{self.backup_suffix}"


@dataclass(frozen=True, slots=True)
class PartitionConfig:
    """Partitioning configuration of one managed table.

    Immutable once migration starts except bucket_capacity, which only
    affects future allocation decisions.
    """

    table_name: str
    partition_key_column: str
    bucket_capacity: int
    created_at: datetime
    # Set when the routing hook was attached (table fully migrated)
    cutover_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.bucket_capacity < 1:
            raise ValueError(f"bucket_capacity must be >= 1, got {self.bucket_capacity}")


@dataclass(frozen=True, slots=True)
class PartitionCursor:
    """Which bucket is currently being filled for one key value, and how full it is."""

    table_name: str
    key_value: str
    current_bucket_id: int = 0
    row_count_in_current_bucket: int = 0
    last_updated: datetime | None = None


@dataclass(frozen=True, slots=True)
class PartitionNode:
    """Identity of a partition in the storage engine's catalog.

    Level 1 nodes have bucket_id None; level 2 nodes carry the bucket.
    Existence is never tracked here - the catalog is the source of truth.
    """

    table_name: str
    key_column: str
    key_value: str
    name: str
    bucket_id: int | None = None

    @property
    def level(self) -> int:
        return 1 if self.bucket_id is None else 2


@dataclass(frozen=True, slots=True)
class KeyDistribution:
    """Row count of one distinct key value in a source table."""

    key_value: str
    row_count: int


@dataclass(frozen=True, slots=True)
class IndexDefinition:
    """A secondary index on a source table, as DDL the engine reported."""

    name: str
    sql: str
    unique: bool


@dataclass(slots=True)
class MigrationState:
    """In-memory progress record for one table, held by the rollback coordinator.

    Never trusted for rollback decisions - those are re-derived from the
    catalog. Used for reporting and for enforcing forward-only progress.
    """

    table_name: str
    backup_table_name: str
    stage: MigrationStage = MigrationStage.NONE

    def advance(self, stage: MigrationStage) -> None:
        """Move to a later stage.

        Raises:
            ValueError: If stage is earlier than the current stage
        """
        if stage.rank < self.stage.rank:
            raise ValueError(f"Cannot move {self.table_name} backwards from {self.stage.value} to {stage.value}")
        self.stage = stage


@dataclass(frozen=True, slots=True)
class IndexCloneResult:
    """Outcome of replicating one index."""

    index_name: str
    outcome: IndexCloneOutcome
    detail: str | None = None


@dataclass(frozen=True, slots=True)
class TableMigrationResult:
    """Outcome of one table's pipeline."""

    table: str
    outcome: TableOutcome
    final_stage: MigrationStage
    source_rows: int = 0
    migrated_rows: int = 0
    key_count: int = 0
    bucket_count: int = 0
    indexes: tuple[IndexCloneResult, ...] = ()

    @property
    def row_count_mismatch(self) -> bool:
        return self.outcome == TableOutcome.MIGRATED and self.source_rows != self.migrated_rows


@dataclass(frozen=True, slots=True)
class RollbackResult:
    """Outcome of the rollback pass for one table."""

    table: str
    outcome: RollbackOutcome
    manual_command: str | None = None
    error: str | None = None


@dataclass(slots=True)
class RunResult:
    """Outcome of a whole guarded migration run."""

    status: RunStatus
    tables: list[TableMigrationResult] = field(default_factory=list)
    rollbacks: list[RollbackResult] = field(default_factory=list)
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.COMPLETED
