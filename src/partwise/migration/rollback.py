"""Rollback coordinator: restore every table if a run does not finish.

The coordinator is registered with every target before the first table
enters the pipeline. If the guarded block exits abnormally (an error, a
cancellation, SIGTERM/SIGHUP, Ctrl-C, ``sys.exit``) before
``mark_all_succeeded()``, every registered table is restored, not only
the one in flight.

Restore decisions are re-derived from the catalog, never from in-memory
progress: a table is restored if and only if its backup exists. Restoring
drops the partitioned table (with all partitions), renames the backup
back to the live name, and forgets the table's registry entries, all in
one transaction. If that transaction fails the backup is left in place
and an operator gets the exact commands to finish by hand.
"""

import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from types import FrameType
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from partwise.contracts import (
    MigrationInterrupted,
    MigrationStage,
    MigrationState,
    MigrationTarget,
    RollbackFailure,
    RollbackOutcome,
    RollbackResult,
)
from partwise.contracts.events import RollbackCompleted, StageCompleted
from partwise.core.database import PartwiseDB
from partwise.core.events import EventBusProtocol, NullEventBus
from partwise.core.logging import get_logger, table_context
from partwise.routing.registry import PartitionRegistry

logger = get_logger(__name__)

_GUARDED_SIGNALS: tuple[str, ...] = ("SIGTERM", "SIGHUP")


def manual_restore_command(db: PartwiseDB, target: MigrationTarget) -> str:
    """SQL an operator runs to finish a restore the coordinator could not."""
    return db.dialect.restore_sql(db.engine.dialect, target.table, target.backup_table)


class RollbackCoordinator:
    """Restores registered tables to their pre-migration state on abnormal exit.

    Usage:
        coordinator = RollbackCoordinator(db, event_bus=bus)
        for target in targets:
            coordinator.register(target)
        with coordinator.guard():
            for target in targets:
                orchestrator.migrate_table(target)
            coordinator.mark_all_succeeded()
    """

    def __init__(
        self,
        db: PartwiseDB,
        *,
        registry: PartitionRegistry | None = None,
        event_bus: EventBusProtocol | None = None,
    ) -> None:
        self._db = db
        self._registry = registry or PartitionRegistry()
        self._event_bus: EventBusProtocol = event_bus or NullEventBus()
        self._targets: dict[str, MigrationTarget] = {}
        self._states: dict[str, MigrationState] = {}
        # Tables completed by an earlier run; never reverted by this run's guard
        self._excluded: set[str] = set()
        self._all_succeeded = False
        self._rolling_back = False
        self._results: list[RollbackResult] = []

        self._event_bus.subscribe(StageCompleted, self._on_stage_completed)

    # === Registration and progress ===

    def register(self, target: MigrationTarget) -> MigrationState:
        """Put a table under the coordinator's protection.

        A table an earlier run already cut over (registry ``cutover_at`` set
        and the live table present) is excluded from the automatic rollback
        right away, before anything in this run can fail.
        """
        state = MigrationState(table_name=target.table, backup_table_name=target.backup_table)
        self._targets[target.table] = target
        self._states[target.table] = state
        with self._db.connection() as conn:
            config = self._registry.get_config(conn, target.table)
            cut_over = config is not None and config.cutover_at is not None and self._db.dialect.relation_exists(conn, target.table)
        if cut_over:
            state.advance(MigrationStage.VERIFIED)
            self.exclude(target.table)
            logger.info("Table already migrated, excluded from automatic rollback", table=target.table)
        return state

    def record_stage(self, table: str, stage: MigrationStage) -> None:
        """Advance a table's in-memory progress.

        Raises:
            KeyError: If the table was never registered
            ValueError: If stage is earlier than the recorded one
        """
        self._states[table].advance(stage)

    def exclude(self, table: str) -> None:
        """Leave a table out of this run's rollback (it was already migrated)."""
        self._excluded.add(table)

    @property
    def excluded(self) -> frozenset[str]:
        return frozenset(self._excluded)

    @property
    def states(self) -> dict[str, MigrationState]:
        return dict(self._states)

    @property
    def results(self) -> list[RollbackResult]:
        return list(self._results)

    @property
    def all_succeeded(self) -> bool:
        return self._all_succeeded

    def mark_all_succeeded(self) -> None:
        """Disarm the guard: every table finished its pipeline."""
        self._all_succeeded = True
        logger.info("All tables migrated, rollback disarmed", tables=len(self._targets))

    def _on_stage_completed(self, event: StageCompleted) -> None:
        if event.table in self._states:
            self.record_stage(event.table, event.stage)

    # === Guard ===

    @contextmanager
    def guard(self) -> Iterator["RollbackCoordinator"]:
        """Run the block with rollback armed.

        Signal handlers are installed only when called from the main thread
        (the only thread Python delivers signals to).
        """
        previous = self._install_signal_handlers()
        try:
            yield self
        except BaseException as exc:
            if not self._all_succeeded:
                logger.error("Migration aborted, rolling back all tables", error=str(exc), error_type=type(exc).__name__)
                self.rollback_all(include_excluded=False)
            raise
        finally:
            self._restore_signal_handlers(previous)

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        name = signal.Signals(signum).name
        if self._rolling_back:
            logger.warning("Signal received during rollback, ignoring until restore completes", signal=name)
            return
        raise MigrationInterrupted(name)

    def _install_signal_handlers(self) -> dict[int, Any]:
        if threading.current_thread() is not threading.main_thread():
            return {}
        previous: dict[int, Any] = {}
        for name in _GUARDED_SIGNALS:
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            previous[signum] = signal.signal(signum, self._handle_signal)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: dict[int, Any]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    # === Rollback ===

    def rollback_all(self, *, include_excluded: bool = True) -> list[RollbackResult]:
        """Restore every registered table whose backup exists.

        Idempotent: a second pass finds no backups and changes nothing.

        Args:
            include_excluded: Also restore tables an earlier run completed
                (explicit operator rollback). The guard passes False.

        Returns:
            One result per registered table, in registration order
        """
        self._rolling_back = True
        try:
            results = []
            for table, target in self._targets.items():
                if not include_excluded and table in self._excluded:
                    logger.info("Leaving previously migrated table in place", table=table)
                    continue
                results.append(self.rollback_table(target))
        finally:
            self._rolling_back = False
        self._results.extend(results)
        return results

    def rollback_table(self, target: MigrationTarget) -> RollbackResult:
        """Restore one table from its backup, if it has one."""
        with table_context(target.table, stage="rollback"):
            return self._rollback_table(target)

    def _rollback_table(self, target: MigrationTarget) -> RollbackResult:
        dialect = self._db.dialect
        manual_command = manual_restore_command(self._db, target)
        try:
            with self._db.connection() as conn:
                if not dialect.relation_exists(conn, target.backup_table):
                    result = RollbackResult(target.table, RollbackOutcome.NOTHING_TO_REVERT)
                else:
                    dialect.drop_table(conn, target.table)
                    dialect.rename_table(conn, target.backup_table, target.table)
                    self._registry.delete_table(conn, target.table)
                    result = RollbackResult(target.table, RollbackOutcome.RESTORED)
        except SQLAlchemyError as exc:
            failure = RollbackFailure(target.table, target.backup_table, manual_command, exc)
            logger.critical(
                "[URGENT] Automatic restore failed, backup retained; run the manual restore command",
                table=target.table,
                backup_table=target.backup_table,
                manual_command=manual_command,
                error=str(failure),
            )
            result = RollbackResult(target.table, RollbackOutcome.FAILED, manual_command=manual_command, error=str(failure))
        else:
            if result.outcome == RollbackOutcome.RESTORED:
                logger.warning("Table restored from backup", table=target.table, backup_table=target.backup_table)
            else:
                logger.info("No backup, nothing to revert", table=target.table)

        self._event_bus.emit(RollbackCompleted(table=target.table, outcome=result.outcome, manual_command=result.manual_command))
        return result
