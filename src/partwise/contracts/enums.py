"""All status codes, stages, and modes used across subsystem boundaries."""

from enum import StrEnum


class MigrationStage(StrEnum):
    """Stage of one table's migration pipeline.

    Stages only ever move forward. The declaration order is the pipeline
    order, so ``rank`` can be used to compare two stages.
    """

    NONE = "none"
    RENAMED = "renamed"
    STRUCTURE_CREATED = "structure_created"
    PROVISIONED = "provisioned"
    DATA_MIGRATED = "data_migrated"
    VERIFIED = "verified"

    @property
    def rank(self) -> int:
        """Position of this stage in the pipeline (NONE is 0)."""
        return _STAGE_ORDER.index(self)


_STAGE_ORDER: tuple[MigrationStage, ...] = tuple(MigrationStage)


class RoutingMode(StrEnum):
    """How the row router treats a row presented for insert.

    Values:
        LIVE: Normal operation - allocate a bucket and provision partitions
        BACKFILL: Bulk transfer - the caller already computed the bucket id,
            skip all routing logic
    """

    LIVE = "live"
    BACKFILL = "backfill"


class TableOutcome(StrEnum):
    """Final outcome of one table in a migration run."""

    MIGRATED = "migrated"
    ALREADY_MIGRATED = "already_migrated"
    FAILED = "failed"


class IndexCloneOutcome(StrEnum):
    """Result of replicating one index onto the partitioned table."""

    CLONED = "cloned"
    PATCHED_NON_UNIQUE = "patched_non_unique"
    ALREADY_EXISTS = "already_exists"
    SKIPPED = "skipped"


class RollbackOutcome(StrEnum):
    """Result of the rollback pass for one table."""

    RESTORED = "restored"
    NOTHING_TO_REVERT = "nothing_to_revert"
    FAILED = "failed"


class RunStatus(StrEnum):
    """Final status of a whole multi-table migration run."""

    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
