"""Observability events for migration runs.

These domain events provide visibility into each table's pipeline, the
per-key data transfer, and the rollback pass. Events are emitted by the
orchestrator and rollback coordinator and consumed by CLI formatters for
human-readable or structured output.
"""

from dataclasses import dataclass

from partwise.contracts.enums import IndexCloneOutcome, MigrationStage, RollbackOutcome, RunStatus


@dataclass(frozen=True, slots=True)
class TableStarted:
    """Emitted when a table enters the pipeline."""

    table: str
    key_column: str
    bucket_capacity: int


@dataclass(frozen=True, slots=True)
class StageCompleted:
    """Emitted each time a table's pipeline commits a stage."""

    table: str
    stage: MigrationStage
    duration_seconds: float
    resumed: bool = False


@dataclass(frozen=True, slots=True)
class KeyMigrated:
    """Emitted after one key value's rows were copied into the partitioned table."""

    table: str
    key_value: str
    rows: int
    buckets: int


@dataclass(frozen=True, slots=True)
class IndexReplicated:
    """Emitted for every secondary index cloned (or skipped) on the partitioned table."""

    table: str
    index_name: str
    outcome: IndexCloneOutcome
    detail: str | None = None


@dataclass(frozen=True, slots=True)
class VerificationCompleted:
    """Emitted after row counts of backup and partitioned table were compared.

    A mismatch is an alarm for manual review, not a failure.
    """

    table: str
    source_rows: int
    migrated_rows: int

    @property
    def matches(self) -> bool:
        return self.source_rows == self.migrated_rows


@dataclass(frozen=True, slots=True)
class TableSkipped:
    """Emitted when a table needs no work (already migrated)."""

    table: str
    reason: str


@dataclass(frozen=True, slots=True)
class TableFailed:
    """Emitted when a table's pipeline hits a fatal error.

    Stores the full exception object to preserve traceback and chained causes.
    """

    table: str
    stage: MigrationStage
    error: BaseException

    @property
    def error_message(self) -> str:
        return str(self.error)


@dataclass(frozen=True, slots=True)
class RollbackCompleted:
    """Emitted for every table examined by the rollback pass."""

    table: str
    outcome: RollbackOutcome
    manual_command: str | None = None


@dataclass(frozen=True, slots=True)
class RunSummary:
    """Summary emitted when a migration run finishes (success or failure)."""

    status: RunStatus
    tables_total: int
    tables_migrated: int
    tables_failed: int
    tables_restored: int
    duration_seconds: float
    exit_code: int  # 0=success, 1=failure (rollback attempted)
