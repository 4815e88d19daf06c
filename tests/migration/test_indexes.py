# tests/migration/test_indexes.py
"""Tests for secondary index replication."""

import pytest
from sqlalchemy import text

from partwise.contracts import IndexCloneOutcome, IndexDefinition, MigrationTarget
from partwise.core.database import PartwiseDB
from partwise.migration.indexes import IndexReplicator
from tests.helpers import SourceTableFactory, index_names


@pytest.fixture
def renamed(db: PartwiseDB, source_table: SourceTableFactory) -> MigrationTarget:
    """``orders`` renamed to its backup with an empty partitioned table in its place."""
    target = source_table("orders", {1: 2})
    with db.connection() as conn:
        db.dialect.rename_table(conn, target.table, target.backup_table)
        db.dialect.create_partitioned_table(conn, target.table, target.backup_table, target.key_column)
    return target


class TestIndexReplicator:
    def test_replicates_every_index(self, db: PartwiseDB, renamed: MigrationTarget) -> None:
        results = IndexReplicator(db).replicate(renamed)

        outcomes = {r.index_name: r.outcome for r in results}
        assert outcomes == {
            "ix_orders_customer_part": IndexCloneOutcome.CLONED,
            "ux_orders_email_part": IndexCloneOutcome.PATCHED_NON_UNIQUE,
        }
        assert index_names(db, "orders") == {"ix_orders_customer_part", "ux_orders_email_part"}

    def test_unique_index_recreated_non_unique(self, db: PartwiseDB, renamed: MigrationTarget) -> None:
        IndexReplicator(db).replicate(renamed)
        with db.connection() as conn:
            definitions = {d.name: d for d in db.dialect.index_definitions(conn, "orders")}
        assert definitions["ux_orders_email_part"].unique is False
        patched = next(r for r in IndexReplicator(db).replicate(renamed) if r.index_name == "ux_orders_email_part")
        assert patched.outcome == IndexCloneOutcome.ALREADY_EXISTS

    def test_covering_unique_index_stays_unique(self, db: PartwiseDB, renamed: MigrationTarget) -> None:
        with db.connection() as conn:
            conn.execute(text("ALTER TABLE orders_backup ADD COLUMN bucket_id INTEGER NOT NULL DEFAULT 0"))
            conn.execute(text("CREATE UNIQUE INDEX ux_covering ON orders_backup (id, customer_id, bucket_id)"))

        results = {r.index_name: r.outcome for r in IndexReplicator(db).replicate(renamed)}
        assert results["ux_covering_part"] == IndexCloneOutcome.CLONED
        with db.connection() as conn:
            definitions = {d.name: d for d in db.dialect.index_definitions(conn, "orders")}
        assert definitions["ux_covering_part"].unique is True

    def test_rerun_reports_already_exists(self, db: PartwiseDB, renamed: MigrationTarget) -> None:
        replicator = IndexReplicator(db)
        replicator.replicate(renamed)
        results = replicator.replicate(renamed)
        assert {r.outcome for r in results} == {IndexCloneOutcome.ALREADY_EXISTS}

    def test_unparseable_definition_skipped(self, db: PartwiseDB, renamed: MigrationTarget) -> None:
        definition = IndexDefinition(name="weird", sql="CREATE TABLE nonsense (x int)", unique=False)
        result = IndexReplicator(db).clone(renamed, definition)
        assert result.outcome == IndexCloneOutcome.SKIPPED
        assert result.detail is not None
        assert "Not a CREATE INDEX" in result.detail

    def test_failing_index_does_not_block_others(self, db: PartwiseDB, renamed: MigrationTarget) -> None:
        definition = IndexDefinition(name="ix_missing_col", sql="CREATE INDEX ix_missing_col ON orders_backup (no_such_column)", unique=False)
        replicator = IndexReplicator(db)
        result = replicator.clone(renamed, definition)
        assert result.outcome == IndexCloneOutcome.SKIPPED
        assert {r.outcome for r in replicator.replicate(renamed)} <= {IndexCloneOutcome.CLONED, IndexCloneOutcome.PATCHED_NON_UNIQUE}

    def test_backup_table_without_indexes(self, db: PartwiseDB, renamed: MigrationTarget) -> None:
        with db.connection() as conn:
            conn.execute(text("DROP INDEX ix_orders_customer"))
            conn.execute(text("DROP INDEX ux_orders_email"))
        assert IndexReplicator(db).replicate(renamed) == []
