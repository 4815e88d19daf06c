"""Tests for the partwise CLI."""

import json
from pathlib import Path
from typing import Any

import yaml
from typer.testing import CliRunner

from partwise.cli import app
from partwise.core.database import PartwiseDB
from tests.helpers import bucket_counts, relation_exists, row_count

from .conftest import write_settings

# Stderr output is combined with stdout in result.output
runner = CliRunner()


def _invoke(*args: str) -> Any:
    return runner.invoke(app, ["--no-dotenv", *args])


def _json_events(output: str) -> list[dict[str, Any]]:
    """CLI event lines (log lines are skipped)."""
    return [json.loads(line) for line in output.splitlines() if line.startswith("{")]


class TestCLIBasics:
    def test_version_flag(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "partwise version" in result.stdout

    def test_help_lists_commands(self) -> None:
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("migrate", "rollback", "status", "cursors"):
            assert command in result.stdout


class TestConfigErrors:
    def test_missing_settings_file(self, tmp_path: Path) -> None:
        result = _invoke("status", "-s", str(tmp_path / "nope.yaml"))
        assert result.exit_code == 1
        assert "Settings file not found" in result.output

    def test_yaml_syntax_error(self, tmp_path: Path) -> None:
        settings_file = tmp_path / "settings.yaml"
        settings_file.write_text("database:\n  url: sqlite://\ntargets: [unclosed")

        result = _invoke("status", "-s", str(settings_file))

        assert result.exit_code == 1
        output = result.output.lower()
        assert ("yaml" in output and "syntax" in output) or "error" in output
        assert "traceback" not in output

    def test_validation_errors_listed(self, tmp_path: Path, cli_db_path: Path) -> None:
        settings_file = write_settings(tmp_path, cli_db_path, capacity=0)

        result = _invoke("migrate", "-s", str(settings_file), "--dry-run")

        assert result.exit_code == 1
        assert "Configuration errors:" in result.output
        assert "targets.0.bucket_capacity" in result.output


class TestMigrateCommand:
    def test_dry_run_shows_plan(self, settings_file: Path, cli_db_path: Path) -> None:
        result = _invoke("migrate", "-s", str(settings_file), "--dry-run")

        assert result.exit_code == 0
        assert "orders: partition by customer_id, bucket capacity 10 (current stage: none)" in result.output
        assert "Dry run mode" in result.output
        with PartwiseDB(f"sqlite:///{cli_db_path}") as db:
            assert not relation_exists(db, "orders_backup")

    def test_dry_run_json(self, settings_file: Path) -> None:
        result = _invoke("migrate", "-s", str(settings_file), "--dry-run", "--format", "json")

        assert result.exit_code == 0
        plan = next(e for e in _json_events(result.output) if e.get("event") == "plan")
        assert plan["targets"][0]["table"] == "orders"
        assert plan["targets"][0]["stage"] == "none"

    def test_requires_execute(self, settings_file: Path, cli_db_path: Path) -> None:
        result = _invoke("migrate", "-s", str(settings_file))

        assert result.exit_code == 1
        assert "--execute" in result.output
        with PartwiseDB(f"sqlite:///{cli_db_path}") as db:
            assert not relation_exists(db, "orders_backup")

    def test_execute_migrates(self, settings_file: Path, cli_db_path: Path) -> None:
        result = _invoke("migrate", "-s", str(settings_file), "--execute", "--show-keys")

        assert result.exit_code == 0, result.output
        assert "Migration COMPLETED" in result.output
        assert "1: 25 rows in 3 bucket(s)" in result.output
        with PartwiseDB(f"sqlite:///{cli_db_path}") as db:
            assert row_count(db, "orders") == 38
            assert bucket_counts(db, "orders", 1) == {0: 10, 1: 10, 2: 5}

    def test_execute_json_events(self, settings_file: Path) -> None:
        result = _invoke("migrate", "-s", str(settings_file), "--execute", "--format", "json")

        assert result.exit_code == 0, result.output
        events = _json_events(result.output)
        stages = [e["stage"] for e in events if e.get("event") == "stage_completed"]
        assert stages == ["renamed", "structure_created", "provisioned", "data_migrated", "verified"]
        summary = next(e for e in events if e.get("event") == "run_completed")
        assert summary["status"] == "completed"
        assert summary["exit_code"] == 0

    def test_failure_restores_and_exits_nonzero(self, tmp_path: Path, cli_db_path: Path) -> None:
        settings_file = write_settings(tmp_path, cli_db_path, tables=("orders", "missing"))

        result = _invoke("migrate", "-s", str(settings_file), "--execute")

        assert result.exit_code == 1
        assert "Source table not found: missing" in result.output
        assert "rollback: restored" in result.output
        with PartwiseDB(f"sqlite:///{cli_db_path}") as db:
            assert row_count(db, "orders") == 38
            assert not relation_exists(db, "orders_backup")


class TestStatusCommand:
    def test_console_before_and_after(self, settings_file: Path) -> None:
        before = _invoke("status", "-s", str(settings_file))
        assert before.exit_code == 0
        assert "orders: stage=none live=✓ backup=✗ cursors=0" in before.output

        _invoke("migrate", "-s", str(settings_file), "--execute")
        after = _invoke("status", "-s", str(settings_file))
        assert "orders: stage=verified live=✓ backup=✓ cursors=3" in after.output

    def test_json(self, settings_file: Path) -> None:
        result = _invoke("status", "-s", str(settings_file), "--format", "json")
        assert result.exit_code == 0
        payload = json.loads(result.stdout[result.stdout.index("{") :])
        assert payload["targets"][0]["stage"] == "none"
        assert payload["targets"][0]["live_exists"] is True

    def test_yaml(self, settings_file: Path) -> None:
        _invoke("migrate", "-s", str(settings_file), "--execute")
        result = _invoke("status", "-s", str(settings_file), "--format", "yaml")
        assert result.exit_code == 0
        assert yaml.safe_load(result.stdout)["targets"][0]["stage"] == "verified"


class TestCursorsCommand:
    def test_unmanaged_table(self, settings_file: Path) -> None:
        result = _invoke("cursors", "-s", str(settings_file), "--table", "orders")
        assert result.exit_code == 1
        assert "orders is not a partitioned table" in result.output

    def test_console(self, settings_file: Path) -> None:
        _invoke("migrate", "-s", str(settings_file), "--execute")
        result = _invoke("cursors", "-s", str(settings_file), "-t", "orders")
        assert result.exit_code == 0
        assert "1: bucket 2 (5/10)" in result.output
        assert "2: bucket 0 (10/10)" in result.output

    def test_json(self, settings_file: Path) -> None:
        _invoke("migrate", "-s", str(settings_file), "--execute")
        result = _invoke("cursors", "-s", str(settings_file), "-t", "orders", "--format", "json")
        assert result.exit_code == 0
        payload = json.loads(result.stdout[result.stdout.index("{") :])
        assert payload["bucket_capacity"] == 10
        assert {c["key_value"]: c["current_bucket_id"] for c in payload["cursors"]} == {"1": 2, "2": 0, "3": 0}


class TestRollbackCommand:
    def test_requires_execute(self, settings_file: Path) -> None:
        result = _invoke("rollback", "-s", str(settings_file))
        assert result.exit_code == 1
        assert "orders <- orders_backup" in result.output

    def test_restores_migrated_table(self, settings_file: Path, cli_db_path: Path) -> None:
        _invoke("migrate", "-s", str(settings_file), "--execute")

        result = _invoke("rollback", "-s", str(settings_file), "--execute")

        assert result.exit_code == 0
        assert "orders] rollback: restored" in result.output
        with PartwiseDB(f"sqlite:///{cli_db_path}") as db:
            assert not relation_exists(db, "orders_backup")
            assert row_count(db, "orders") == 38

    def test_nothing_to_revert_json(self, settings_file: Path) -> None:
        result = _invoke("rollback", "-s", str(settings_file), "--execute", "--format", "json")
        assert result.exit_code == 0
        event = next(e for e in _json_events(result.output) if e.get("event") == "rollback_completed")
        assert event["outcome"] == "nothing_to_revert"
