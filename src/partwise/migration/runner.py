"""Guarded multi-table migration run.

Ties the orchestrator to the rollback coordinator: every target is
registered before the first table starts, the whole run executes inside
``RollbackCoordinator.guard()``, and the outcome of both (per-table
results, per-table rollback results) is folded into one RunResult.
"""

import time
from collections.abc import Sequence

from sqlalchemy.exc import SQLAlchemyError

from partwise.contracts import (
    MigrationCancelledError,
    MigrationInterrupted,
    MigrationTarget,
    PartwiseError,
    RollbackOutcome,
    RollbackResult,
    RunResult,
    RunStatus,
    TableMigrationResult,
    TableOutcome,
)
from partwise.contracts.events import RunSummary
from partwise.core.config import MigrationSettings
from partwise.core.database import PartwiseDB
from partwise.core.events import EventBus, EventBusProtocol
from partwise.core.logging import get_logger
from partwise.migration.orchestrator import MigrationOrchestrator
from partwise.migration.rollback import RollbackCoordinator

logger = get_logger(__name__)


def run_migration(
    db: PartwiseDB,
    targets: Sequence[MigrationTarget],
    settings: MigrationSettings | None = None,
    *,
    event_bus: EventBusProtocol | None = None,
    orchestrator: MigrationOrchestrator | None = None,
) -> RunResult:
    """Migrate every target, restoring all of them if the run does not finish.

    Args:
        db: Database holding the target tables and the registry
        targets: Tables to migrate, in order
        settings: Pipeline tuning
        event_bus: Receives progress events (default: private bus)
        orchestrator: Pre-built orchestrator (lets callers keep a handle for cancel())

    Returns:
        RunResult; status COMPLETED only if every table reached VERIFIED
        or was already migrated
    """
    bus: EventBusProtocol = event_bus or EventBus()
    orchestrator = orchestrator or MigrationOrchestrator(db, settings, event_bus=bus)
    coordinator = RollbackCoordinator(db, event_bus=bus)
    for target in targets:
        coordinator.register(target)

    results: list[TableMigrationResult] = []
    status = RunStatus.FAILED
    error: str | None = None
    started = time.perf_counter()
    try:
        with coordinator.guard():
            for target in targets:
                results.append(orchestrator.migrate_table(target))
            coordinator.mark_all_succeeded()
    except (MigrationInterrupted, MigrationCancelledError, KeyboardInterrupt) as e:
        status = RunStatus.INTERRUPTED
        error = str(e) or type(e).__name__
    except (PartwiseError, SQLAlchemyError) as e:
        error = str(e)
    else:
        status = RunStatus.COMPLETED
        orchestrator.analyze(_migrated_targets(targets, results))

    if status != RunStatus.COMPLETED:
        results.extend(_unfinished(targets, results, coordinator))

    run_result = RunResult(status=status, tables=results, rollbacks=coordinator.results, error=error)
    _emit_summary(bus, run_result, time.perf_counter() - started)
    return run_result


def rollback_targets(
    db: PartwiseDB,
    targets: Sequence[MigrationTarget],
    *,
    event_bus: EventBusProtocol | None = None,
) -> list[RollbackResult]:
    """Restore every target that still has a backup (manual rollback)."""
    coordinator = RollbackCoordinator(db, event_bus=event_bus)
    for target in targets:
        coordinator.register(target)
    return coordinator.rollback_all()


def _migrated_targets(targets: Sequence[MigrationTarget], results: list[TableMigrationResult]) -> list[MigrationTarget]:
    migrated = {r.table for r in results if r.outcome == TableOutcome.MIGRATED}
    return [t for t in targets if t.table in migrated]


def _unfinished(
    targets: Sequence[MigrationTarget],
    results: list[TableMigrationResult],
    coordinator: RollbackCoordinator,
) -> list[TableMigrationResult]:
    """Results for every table the run did not reach or did not finish.

    Tables an earlier run completed stay ALREADY_MIGRATED; the rest FAILED.
    """
    finished = {r.table for r in results}
    states = coordinator.states
    unfinished = []
    for t in targets:
        if t.table in finished:
            continue
        outcome = TableOutcome.ALREADY_MIGRATED if t.table in coordinator.excluded else TableOutcome.FAILED
        unfinished.append(TableMigrationResult(table=t.table, outcome=outcome, final_stage=states[t.table].stage))
    return unfinished


def _emit_summary(bus: EventBusProtocol, result: RunResult, duration_seconds: float) -> None:
    summary = RunSummary(
        status=result.status,
        tables_total=len(result.tables),
        tables_migrated=sum(1 for t in result.tables if t.outcome != TableOutcome.FAILED),
        tables_failed=sum(1 for t in result.tables if t.outcome == TableOutcome.FAILED),
        tables_restored=sum(1 for r in result.rollbacks if r.outcome == RollbackOutcome.RESTORED),
        duration_seconds=duration_seconds,
        exit_code=0 if result.succeeded else 1,
    )
    logger.info(
        "Migration run finished",
        status=summary.status.value,
        tables_migrated=summary.tables_migrated,
        tables_failed=summary.tables_failed,
        tables_restored=summary.tables_restored,
        duration_seconds=round(duration_seconds, 3),
    )
    bus.emit(summary)
