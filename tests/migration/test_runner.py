# tests/migration/test_runner.py
"""Tests for guarded multi-table migration runs."""

import pytest
from sqlalchemy.exc import OperationalError

from partwise.contracts import (
    MigrationInterrupted,
    MigrationStage,
    MigrationTarget,
    RollbackOutcome,
    RunStatus,
    TableOutcome,
)
from partwise.contracts.events import KeyMigrated, RollbackCompleted, RunSummary
from partwise.core.database import PartwiseDB
from partwise.core.events import EventBus
from partwise.migration.orchestrator import MigrationOrchestrator
from partwise.migration.runner import rollback_targets, run_migration
from partwise.routing.registry import PartitionRegistry
from partwise.routing.router import RowRouter
from tests.helpers import SourceTableFactory, relation_exists, row_count, view_names


@pytest.fixture
def three_tables(source_table: SourceTableFactory) -> list[MigrationTarget]:
    return [
        source_table("a", {1: 6, 2: 2}, capacity=4),
        source_table("b", {1: 5, 2: 5, 3: 1}, capacity=4),
        source_table("c", {7: 3}, capacity=4),
    ]


def _registered(db: PartwiseDB) -> list[str]:
    with db.connection() as conn:
        return [c.table_name for c in PartitionRegistry().list_configs(conn)]


class TestSuccessfulRun:
    def test_all_tables_migrated(self, db: PartwiseDB, three_tables: list[MigrationTarget]) -> None:
        bus = EventBus()
        summaries: list[RunSummary] = []
        bus.subscribe(RunSummary, summaries.append)

        result = run_migration(db, three_tables, event_bus=bus)

        assert result.status == RunStatus.COMPLETED
        assert result.succeeded
        assert [t.outcome for t in result.tables] == [TableOutcome.MIGRATED] * 3
        assert result.rollbacks == []
        assert _registered(db) == ["a", "b", "c"]
        assert summaries[0].exit_code == 0
        assert summaries[0].tables_migrated == 3

    def test_rerun_reports_already_migrated(self, db: PartwiseDB, three_tables: list[MigrationTarget]) -> None:
        run_migration(db, three_tables)
        result = run_migration(db, three_tables)
        assert result.succeeded
        assert [t.outcome for t in result.tables] == [TableOutcome.ALREADY_MIGRATED] * 3


class TestInterruptedRun:
    def test_interrupt_mid_transfer_restores_every_table(self, db: PartwiseDB, three_tables: list[MigrationTarget]) -> None:
        bus = EventBus()

        def interrupt(event: KeyMigrated) -> None:
            if event.table == "b":
                raise MigrationInterrupted("SIGTERM")

        bus.subscribe(KeyMigrated, interrupt)
        summaries: list[RunSummary] = []
        bus.subscribe(RunSummary, summaries.append)

        result = run_migration(db, three_tables, event_bus=bus)

        assert result.status == RunStatus.INTERRUPTED
        assert result.error == "Migration interrupted by SIGTERM"
        assert [(t.table, t.outcome) for t in result.tables] == [
            ("a", TableOutcome.MIGRATED),
            ("b", TableOutcome.FAILED),
            ("c", TableOutcome.FAILED),
        ]
        # b got as far as provisioning before the transfer was interrupted
        assert result.tables[1].final_stage == MigrationStage.PROVISIONED
        assert result.tables[2].final_stage == MigrationStage.NONE
        assert {r.table: r.outcome for r in result.rollbacks} == {
            "a": RollbackOutcome.RESTORED,
            "b": RollbackOutcome.RESTORED,
            "c": RollbackOutcome.NOTHING_TO_REVERT,
        }
        assert (row_count(db, "a"), row_count(db, "b"), row_count(db, "c")) == (8, 11, 3)
        assert not any(relation_exists(db, f"{name}_backup") for name in "abc")
        assert view_names(db) == set()
        assert _registered(db) == []
        assert summaries[0].exit_code == 1
        assert summaries[0].tables_restored == 2

    def test_cancel_is_interrupted(self, db: PartwiseDB, three_tables: list[MigrationTarget]) -> None:
        bus = EventBus()
        orchestrator = MigrationOrchestrator(db, event_bus=bus)
        bus.subscribe(KeyMigrated, lambda event: orchestrator.cancel())

        result = run_migration(db, three_tables, event_bus=bus, orchestrator=orchestrator)

        assert result.status == RunStatus.INTERRUPTED
        assert _registered(db) == []
        assert row_count(db, "a") == 8

    def test_keyboard_interrupt(self, db: PartwiseDB, three_tables: list[MigrationTarget]) -> None:
        bus = EventBus()

        def ctrl_c(event: KeyMigrated) -> None:
            raise KeyboardInterrupt

        bus.subscribe(KeyMigrated, ctrl_c)
        result = run_migration(db, three_tables, event_bus=bus)

        assert result.status == RunStatus.INTERRUPTED
        assert result.error == "KeyboardInterrupt"
        assert row_count(db, "a") == 8


class TestFailedRun:
    def test_missing_table_fails_and_restores_earlier_tables(self, db: PartwiseDB, three_tables: list[MigrationTarget]) -> None:
        targets = [*three_tables[:1], MigrationTarget("missing", "customer_id", 4)]

        result = run_migration(db, targets)

        assert result.status == RunStatus.FAILED
        assert result.error == "Source table not found: missing"
        assert [r.outcome for r in result.rollbacks] == [RollbackOutcome.RESTORED, RollbackOutcome.NOTHING_TO_REVERT]
        assert row_count(db, "a") == 8

    def test_database_error_fails(
        self, db: PartwiseDB, three_tables: list[MigrationTarget], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def fail(conn: object, table_name: str, key_column: str) -> list[object]:
            raise OperationalError("SELECT", {}, Exception("no such function"))

        monkeypatch.setattr(db.dialect, "key_distribution", fail)
        result = run_migration(db, three_tables)

        assert result.status == RunStatus.FAILED
        assert result.tables[0].final_stage == MigrationStage.STRUCTURE_CREATED
        assert result.rollbacks[0].outcome == RollbackOutcome.RESTORED
        monkeypatch.undo()
        assert row_count(db, "a") == 8

    def test_previously_migrated_table_is_kept(self, db: PartwiseDB, three_tables: list[MigrationTarget]) -> None:
        run_migration(db, three_tables[:1])
        targets = [three_tables[0], MigrationTarget("missing", "customer_id", 4)]

        result = run_migration(db, targets)

        assert result.status == RunStatus.FAILED
        assert [(r.table, r.outcome) for r in result.rollbacks] == [("missing", RollbackOutcome.NOTHING_TO_REVERT)]
        assert relation_exists(db, "a_backup")
        assert _registered(db) == ["a"]

    def test_completed_table_after_failing_one_is_kept(self, db: PartwiseDB, three_tables: list[MigrationTarget]) -> None:
        """The failure happens before the orchestrator ever reaches the completed table."""
        run_migration(db, three_tables[:1])
        RowRouter(db).insert("a", {"id": 100, "customer_id": 1, "email": "live@example.com", "total": 1.0})
        targets = [MigrationTarget("missing", "customer_id", 4), three_tables[0]]

        result = run_migration(db, targets)

        assert result.status == RunStatus.FAILED
        assert [(r.table, r.outcome) for r in result.rollbacks] == [("missing", RollbackOutcome.NOTHING_TO_REVERT)]
        assert [(t.table, t.outcome) for t in result.tables] == [
            ("missing", TableOutcome.FAILED),
            ("a", TableOutcome.ALREADY_MIGRATED),
        ]
        assert row_count(db, "a") == 9
        assert relation_exists(db, "a_backup")
        assert _registered(db) == ["a"]


class TestRollbackTargets:
    def test_explicit_rollback_includes_completed_tables(self, db: PartwiseDB, three_tables: list[MigrationTarget]) -> None:
        run_migration(db, three_tables)
        bus = EventBus()
        completed: list[RollbackCompleted] = []
        bus.subscribe(RollbackCompleted, completed.append)

        results = rollback_targets(db, three_tables, event_bus=bus)

        assert [r.outcome for r in results] == [RollbackOutcome.RESTORED] * 3
        assert [e.table for e in completed] == ["a", "b", "c"]
        assert _registered(db) == []
        assert row_count(db, "b") == 11
