# src/partwise/cli.py
"""partwise Command Line Interface.

Entry point for the partwise CLI tool.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Literal

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from partwise import __version__
from partwise.contracts import ConnectivityError, MigrationStage
from partwise.core.config import PartwiseSettings, load_settings, mask_url

if TYPE_CHECKING:
    from partwise.core.database import PartwiseDB

__all__ = [
    "app",
    "load_settings",  # Re-exported from config for convenience
]


app = typer.Typer(
    name="partwise",
    help="partwise: Two-level partitioning for large flat tables.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"partwise version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from .env file.

    Args:
        env_file: Explicit path to .env file. If None, searches for .env
                 in current directory and parent directories.

    Returns:
        True if .env was found and loaded, False otherwise.

    Raises:
        typer.Exit: If explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(
                f"Error: .env file not found: {env_file}",
                fg=typer.colors.RED,
                err=True,
            )
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)

    # load_dotenv searches current dir and parents by default
    return load_dotenv(override=False)  # Don't override existing env vars


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
        exists=False,  # We handle existence check ourselves for better error message
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """partwise: Two-level partitioning for large flat tables."""
    # Configure logging at entry point (before any subcommands run)
    from partwise.core.logging import configure_logging

    log_level = "DEBUG" if verbose else "INFO"
    configure_logging(json_output=json_logs, level=log_level)

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho(
            "Warning: --env-file ignored because --no-dotenv is set.",
            fg=typer.colors.YELLOW,
            err=True,
        )


def _load_config(settings: str) -> PartwiseSettings:
    """Load and validate settings, exiting with a message on any error."""
    settings_path = Path(settings).expanduser()
    try:
        return load_settings(settings_path)
    except (YamlParserError, YamlScannerError) as e:
        # e.problem contains the specific error (e.g., "expected ']'", "found a tab")
        typer.echo(f"YAML syntax error in {settings}: {e.problem}", err=True)
        raise typer.Exit(1) from None
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None


def _open_db(config: PartwiseSettings, *, create_tables: bool = True) -> PartwiseDB:
    """Connect to the configured database, exiting with a message if unreachable."""
    from partwise.core.database import PartwiseDB, SchemaCompatibilityError

    try:
        db = PartwiseDB.from_settings(
            config.database,
            max_identifier_length=config.migration.max_identifier_length,
            create_tables=create_tables,
        )
        db.check_connection()
    except ConnectivityError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
    except SchemaCompatibilityError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
    except ValueError as e:
        # Unsupported backend
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
    return db


@app.command()
def migrate(
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        "-n",
        help="Validate and show the migration plan without executing.",
    ),
    execute: bool = typer.Option(
        False,
        "--execute",
        "-x",
        help="Actually execute the migration (required for safety).",
    ),
    show_keys: bool = typer.Option(
        False,
        "--show-keys",
        help="Print a progress line per migrated key value.",
    ),
    output_format: Literal["console", "json"] = typer.Option(
        "console",
        "--format",
        "-f",
        help="Output format: 'console' (human-readable) or 'json' (structured JSON).",
    ),
) -> None:
    """Partition every configured table.

    Requires --execute flag to actually run (safety feature).
    Use --dry-run to validate configuration and show the plan.
    If any table fails, every table of the run is restored from its backup.
    """
    config = _load_config(settings)

    if dry_run or not execute:
        db = _open_db(config, create_tables=False)
        try:
            plan = _status_rows(db, config)
        finally:
            db.close()
        if output_format == "json":
            if dry_run:
                typer.echo(json.dumps({"event": "plan", "database": mask_url(config.database.url), "targets": plan}))
            raise typer.Exit(0 if dry_run else 1)

        typer.echo(f"Database: {mask_url(config.database.url)}")
        for row in plan:
            typer.echo(
                f"  {row['table']}: partition by {row['key_column']}, "
                f"bucket capacity {row['bucket_capacity']:,} (current stage: {row['stage']})"
            )
        if dry_run:
            typer.echo("Dry run mode - nothing was changed.")
            return
        typer.echo("")
        typer.echo("To execute, add --execute (or -x) flag:", err=True)
        typer.echo(f"  partwise migrate -s {settings} --execute", err=True)
        raise typer.Exit(1)

    from partwise.cli_formatters import create_console_formatters, create_json_formatters, subscribe_formatters
    from partwise.core.events import EventBus
    from partwise.migration.runner import run_migration

    db = _open_db(config)
    event_bus = EventBus()
    if output_format == "json":
        subscribe_formatters(event_bus, create_json_formatters())
    else:
        subscribe_formatters(event_bus, create_console_formatters(show_keys=show_keys))

    try:
        result = run_migration(db, config.migration_targets(), config.migration, event_bus=event_bus)
    finally:
        db.close()

    if not result.succeeded:
        if output_format == "console" and result.error:
            typer.echo(f"Error during migration: {result.error}", err=True)
        raise typer.Exit(1)


@app.command()
def rollback(
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
    execute: bool = typer.Option(
        False,
        "--execute",
        "-x",
        help="Actually restore the tables (required for safety).",
    ),
    output_format: Literal["console", "json"] = typer.Option(
        "console",
        "--format",
        "-f",
        help="Output format: 'console' (human-readable) or 'json' (structured JSON).",
    ),
) -> None:
    """Restore every configured table that still has a backup.

    The partitioned table (and every row inserted since cutover) is dropped.
    """
    from partwise.cli_formatters import create_console_formatters, create_json_formatters, subscribe_formatters
    from partwise.contracts import RollbackOutcome
    from partwise.core.events import EventBus
    from partwise.migration.runner import rollback_targets

    config = _load_config(settings)
    if not execute:
        typer.echo("Rollback drops the partitioned tables and restores their backups:", err=True)
        for target in config.migration_targets():
            typer.echo(f"  {target.table} <- {target.backup_table}", err=True)
        typer.echo(f"To proceed: partwise rollback -s {settings} --execute", err=True)
        raise typer.Exit(1)

    db = _open_db(config)
    event_bus = EventBus()
    if output_format == "json":
        subscribe_formatters(event_bus, create_json_formatters())
    else:
        subscribe_formatters(event_bus, create_console_formatters())

    try:
        results = rollback_targets(db, config.migration_targets(), event_bus=event_bus)
    finally:
        db.close()

    if any(r.outcome == RollbackOutcome.FAILED for r in results):
        raise typer.Exit(1)


def _status_rows(db: PartwiseDB, config: PartwiseSettings) -> list[dict[str, object]]:
    from partwise.migration.orchestrator import MigrationOrchestrator
    from partwise.routing.registry import PartitionRegistry

    orchestrator = MigrationOrchestrator(db, config.migration)
    registry = PartitionRegistry()
    rows: list[dict[str, object]] = []
    for target in config.migration_targets():
        with db.connection() as conn:
            live_exists = db.dialect.relation_exists(conn, target.table)
            backup_exists = db.dialect.relation_exists(conn, target.backup_table)
            registered = db.dialect.relation_exists(conn, "partition_cursor")
            cursors = len(registry.list_cursors(conn, target.table)) if registered else 0
        stage = orchestrator.derive_stage(target) if registered else MigrationStage.NONE
        rows.append(
            {
                "table": target.table,
                "key_column": target.key_column,
                "bucket_capacity": target.bucket_capacity,
                "live_exists": live_exists,
                "backup_exists": backup_exists,
                "stage": stage.value,
                "cursors": cursors,
            }
        )
    return rows


@app.command()
def status(
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
    output_format: Literal["console", "json", "yaml"] = typer.Option(
        "console",
        "--format",
        "-f",
        help="Output format: 'console', 'json', or 'yaml'.",
    ),
) -> None:
    """Show the migration stage of every configured table."""
    config = _load_config(settings)
    db = _open_db(config, create_tables=False)
    try:
        rows = _status_rows(db, config)
    finally:
        db.close()

    if output_format == "json":
        typer.echo(json.dumps({"targets": rows}, indent=2))
        return
    if output_format == "yaml":
        import yaml

        typer.echo(yaml.safe_dump({"targets": rows}, default_flow_style=False, sort_keys=False))
        return

    for row in rows:
        live = "✓" if row["live_exists"] else "✗"
        backup = "✓" if row["backup_exists"] else "✗"
        typer.echo(f"{row['table']}: stage={row['stage']} live={live} backup={backup} cursors={row['cursors']}")


@app.command()
def cursors(
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
    table: str = typer.Option(
        ...,
        "--table",
        "-t",
        help="Managed table whose cursors to show.",
    ),
    output_format: Literal["console", "json"] = typer.Option(
        "console",
        "--format",
        "-f",
        help="Output format: 'console' (human-readable) or 'json' (structured JSON).",
    ),
) -> None:
    """Show which bucket each key value of a table is filling."""
    from partwise.routing.registry import PartitionRegistry

    config = _load_config(settings)
    db = _open_db(config)
    registry = PartitionRegistry()
    try:
        with db.connection() as conn:
            partition_config = registry.get_config(conn, table)
            entries = registry.list_cursors(conn, table)
    finally:
        db.close()

    if partition_config is None:
        typer.echo(f"Error: {table} is not a partitioned table", err=True)
        raise typer.Exit(1)

    if output_format == "json":
        typer.echo(
            json.dumps(
                {
                    "table": table,
                    "key_column": partition_config.partition_key_column,
                    "bucket_capacity": partition_config.bucket_capacity,
                    "cursors": [
                        {
                            "key_value": c.key_value,
                            "current_bucket_id": c.current_bucket_id,
                            "row_count_in_current_bucket": c.row_count_in_current_bucket,
                        }
                        for c in entries
                    ],
                },
                indent=2,
            )
        )
        return

    typer.echo(f"{table} (key {partition_config.partition_key_column}, capacity {partition_config.bucket_capacity:,}):")
    if not entries:
        typer.echo("  no cursors")
    for c in entries:
        typer.echo(f"  {c.key_value}: bucket {c.current_bucket_id} ({c.row_count_in_current_bucket:,}/{partition_config.bucket_capacity:,})")


if __name__ == "__main__":
    app()
