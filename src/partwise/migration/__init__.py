"""Migration: per-table pipeline, index replication, and rollback."""

from partwise.migration.indexes import IndexReplicator
from partwise.migration.orchestrator import MigrationOrchestrator
from partwise.migration.rollback import RollbackCoordinator, manual_restore_command
from partwise.migration.runner import rollback_targets, run_migration

__all__ = [
    "IndexReplicator",
    "MigrationOrchestrator",
    "RollbackCoordinator",
    "manual_restore_command",
    "rollback_targets",
    "run_migration",
]
