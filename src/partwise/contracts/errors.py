"""Exception taxonomy for partitioning, migration, and rollback.

Structural failures (anything that leaves a table's pipeline unable to
finish) are fatal and trigger the rollback path for every table in the
run. Data-integrity discrepancies found during verification are not
exceptions at all: they are reported on the migration result.
"""


class PartwiseError(Exception):
    """Base class for all partwise errors."""


# =============================================================================
# Startup errors (nothing to roll back)
# =============================================================================


class ConfigurationError(PartwiseError):
    """Raised for invalid table names, key columns, or bucket capacities.

    Detected before any mutation of the storage engine.
    """


class ConnectivityError(PartwiseError):
    """Raised when the storage engine cannot be reached."""


# =============================================================================
# Routing errors
# =============================================================================


class NullPartitionKeyError(PartwiseError):
    """Raised when a row presented for insert has no value in the key column.

    The single insert fails. No partition is created and no cursor is
    mutated.
    """

    def __init__(self, table: str, key_column: str) -> None:
        super().__init__(f"Partition key '{key_column}' cannot be NULL (table '{table}')")
        self.table = table
        self.key_column = key_column


class PartitionCreationError(PartwiseError):
    """Raised when a partition cannot be created for a reason other than a race.

    On the insert path this is fatal to the insert: the row cannot be placed.
    """

    def __init__(self, partition_name: str, cause: BaseException) -> None:
        super().__init__(f"Failed to create partition '{partition_name}': {cause}")
        self.partition_name = partition_name
        self.cause = cause


class UniqueIndexIncompatibleError(PartwiseError):
    """Raised when an index cannot be unique on the partitioned table.

    The storage engine requires unique indexes on a partitioned table to
    include every partitioning column. Recovered locally by retrying the
    index as non-unique.
    """

    def __init__(self, index_name: str, detail: str) -> None:
        super().__init__(f"Index '{index_name}' cannot be unique on a partitioned table: {detail}")
        self.index_name = index_name
        self.detail = detail


# =============================================================================
# Migration errors (fatal, trigger rollback)
# =============================================================================


class SourceTableNotFoundError(PartwiseError):
    """Raised when neither the live table nor its backup exists."""

    def __init__(self, table: str) -> None:
        super().__init__(f"Source table not found: {table}")
        self.table = table


class DataTransferError(PartwiseError):
    """Raised when copying one key's rows into the partitioned table fails."""

    def __init__(self, table: str, key_value: str, cause: BaseException) -> None:
        super().__init__(f"Data transfer failed for {table} key '{key_value}': {cause}")
        self.table = table
        self.key_value = key_value
        self.cause = cause


class MigrationCancelledError(PartwiseError):
    """Raised at the next safe point after cancellation was requested."""


class MigrationInterrupted(PartwiseError):
    """Raised from a signal handler so interruption unwinds like any failure."""

    def __init__(self, signal_name: str) -> None:
        super().__init__(f"Migration interrupted by {signal_name}")
        self.signal_name = signal_name


class RollbackFailure(PartwiseError):
    """Raised when the rename-back step of a rollback fails.

    The backup table is preserved. ``manual_command`` is the SQL an
    operator must run to finish the restore.
    """

    def __init__(self, table: str, backup_table: str, manual_command: str, cause: BaseException) -> None:
        super().__init__(f"Automatic restore failed for {table}; backup retained as {backup_table}: {cause}")
        self.table = table
        self.backup_table = backup_table
        self.manual_command = manual_command
        self.cause = cause
