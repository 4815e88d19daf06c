"""Shared contracts: enums, records, errors, and events.

Everything that crosses a subsystem boundary (registry, router,
orchestrator, rollback coordinator, CLI) is declared here so the
subsystems never import each other just for a type.
"""

from partwise.contracts.enums import (
    IndexCloneOutcome,
    MigrationStage,
    RollbackOutcome,
    RoutingMode,
    RunStatus,
    TableOutcome,
)
from partwise.contracts.errors import (
    ConfigurationError,
    ConnectivityError,
    DataTransferError,
    MigrationCancelledError,
    MigrationInterrupted,
    NullPartitionKeyError,
    PartitionCreationError,
    PartwiseError,
    RollbackFailure,
    SourceTableNotFoundError,
    UniqueIndexIncompatibleError,
)
from partwise.contracts.records import (
    IndexCloneResult,
    IndexDefinition,
    KeyDistribution,
    MigrationState,
    MigrationTarget,
    PartitionConfig,
    PartitionCursor,
    PartitionNode,
    RollbackResult,
    RunResult,
    TableMigrationResult,
)

__all__ = [
    "ConfigurationError",
    "ConnectivityError",
    "DataTransferError",
    "IndexCloneOutcome",
    "IndexCloneResult",
    "IndexDefinition",
    "KeyDistribution",
    "MigrationCancelledError",
    "MigrationInterrupted",
    "MigrationStage",
    "MigrationState",
    "MigrationTarget",
    "NullPartitionKeyError",
    "PartitionConfig",
    "PartitionCreationError",
    "PartitionCursor",
    "PartitionNode",
    "PartwiseError",
    "RollbackFailure",
    "RollbackOutcome",
    "RollbackResult",
    "RoutingMode",
    "RunResult",
    "RunStatus",
    "SourceTableNotFoundError",
    "TableMigrationResult",
    "TableOutcome",
    "UniqueIndexIncompatibleError",
]
