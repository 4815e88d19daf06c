# src/partwise/cli_formatters.py
"""CLI event formatter factories for migration output.

Provides factory functions that return event handler maps for console
(human-readable) and JSON (structured) output formats. Each factory
returns a dict mapping event types to handler callables, suitable for
subscribing to an EventBus.
"""

from __future__ import annotations

import json
from collections.abc import Callable

import typer

from partwise.contracts.events import (
    IndexReplicated,
    KeyMigrated,
    RollbackCompleted,
    RunSummary,
    StageCompleted,
    TableFailed,
    TableSkipped,
    TableStarted,
    VerificationCompleted,
)
from partwise.core.events import EventBusProtocol


def _duration(seconds: float) -> str:
    return f"{seconds:.2f}s" if seconds < 60 else f"{seconds / 60:.1f}m"


def create_console_formatters(*, show_keys: bool = False) -> dict[type, Callable[..., None]]:
    """Create console formatters for human-readable CLI output.

    Args:
        show_keys: Print a line per migrated key (noisy for tables with many keys).
    """

    def _format_table_started(event: TableStarted) -> None:
        typer.echo(f"[{event.table}] Partitioning by {event.key_column} (bucket capacity {event.bucket_capacity:,})")

    def _format_stage_completed(event: StageCompleted) -> None:
        resumed = " (resumed)" if event.resumed else ""
        typer.echo(f"[{event.table}] ✓ {event.stage.value}{resumed} in {_duration(event.duration_seconds)}")

    def _format_key_migrated(event: KeyMigrated) -> None:
        typer.echo(f"  {event.key_value}: {event.rows:,} rows in {event.buckets} bucket(s)")

    def _format_index_replicated(event: IndexReplicated) -> None:
        detail = f" ({event.detail})" if event.detail else ""
        typer.echo(f"[{event.table}] index {event.index_name}: {event.outcome.value}{detail}")

    def _format_verification(event: VerificationCompleted) -> None:
        if event.matches:
            typer.echo(f"[{event.table}] ✓ Row counts match: {event.migrated_rows:,}")
        else:
            typer.echo(
                f"[{event.table}] ⚠ Row count mismatch: backup {event.source_rows:,}, partitioned {event.migrated_rows:,} "
                "(manual review required)",
                err=True,
            )

    def _format_table_skipped(event: TableSkipped) -> None:
        typer.echo(f"[{event.table}] - Skipped: {event.reason}")

    def _format_table_failed(event: TableFailed) -> None:
        typer.echo(f"[{event.table}] ✗ Failed after {event.stage.value}: {event.error_message}", err=True)

    def _format_rollback(event: RollbackCompleted) -> None:
        if event.manual_command:
            typer.echo(f"[{event.table}] ✗ [URGENT] Restore failed, backup retained. Run manually:", err=True)
            typer.echo(f"    {event.manual_command}", err=True)
        else:
            typer.echo(f"[{event.table}] rollback: {event.outcome.value}")

    def _format_run_summary(event: RunSummary) -> None:
        status_symbols = {
            "completed": "✓",
            "interrupted": "⚠",
            "failed": "✗",
        }
        symbol = status_symbols[event.status.value]
        typer.echo(
            f"\n{symbol} Migration {event.status.value.upper()}: "
            f"{event.tables_total} table(s) | "
            f"✓{event.tables_migrated} migrated | "
            f"✗{event.tables_failed} failed | "
            f"↺{event.tables_restored} restored | "
            f"{event.duration_seconds:.2f}s total"
        )

    formatters: dict[type, Callable[..., None]] = {
        TableStarted: _format_table_started,
        StageCompleted: _format_stage_completed,
        IndexReplicated: _format_index_replicated,
        VerificationCompleted: _format_verification,
        TableSkipped: _format_table_skipped,
        TableFailed: _format_table_failed,
        RollbackCompleted: _format_rollback,
        RunSummary: _format_run_summary,
    }
    if show_keys:
        formatters[KeyMigrated] = _format_key_migrated
    return formatters


def create_json_formatters() -> dict[type, Callable[..., None]]:
    """Create JSON formatters for structured CLI output (one object per line)."""

    def _format_stage_completed_json(event: StageCompleted) -> None:
        typer.echo(
            json.dumps(
                {
                    "event": "stage_completed",
                    "table": event.table,
                    "stage": event.stage.value,
                    "duration_seconds": event.duration_seconds,
                    "resumed": event.resumed,
                }
            )
        )

    def _format_key_migrated_json(event: KeyMigrated) -> None:
        typer.echo(
            json.dumps(
                {
                    "event": "key_migrated",
                    "table": event.table,
                    "key_value": event.key_value,
                    "rows": event.rows,
                    "buckets": event.buckets,
                }
            )
        )

    def _format_index_replicated_json(event: IndexReplicated) -> None:
        typer.echo(
            json.dumps(
                {
                    "event": "index_replicated",
                    "table": event.table,
                    "index": event.index_name,
                    "outcome": event.outcome.value,
                    "detail": event.detail,
                }
            )
        )

    def _format_verification_json(event: VerificationCompleted) -> None:
        typer.echo(
            json.dumps(
                {
                    "event": "verification_completed",
                    "table": event.table,
                    "source_rows": event.source_rows,
                    "migrated_rows": event.migrated_rows,
                    "matches": event.matches,
                }
            )
        )

    def _format_table_skipped_json(event: TableSkipped) -> None:
        typer.echo(json.dumps({"event": "table_skipped", "table": event.table, "reason": event.reason}))

    def _format_table_failed_json(event: TableFailed) -> None:
        typer.echo(
            json.dumps(
                {
                    "event": "table_failed",
                    "table": event.table,
                    "stage": event.stage.value,
                    "error": event.error_message,
                    "error_type": type(event.error).__name__,
                }
            ),
            err=True,
        )

    def _format_rollback_json(event: RollbackCompleted) -> None:
        typer.echo(
            json.dumps(
                {
                    "event": "rollback_completed",
                    "table": event.table,
                    "outcome": event.outcome.value,
                    "manual_command": event.manual_command,
                }
            )
        )

    def _format_run_summary_json(event: RunSummary) -> None:
        typer.echo(
            json.dumps(
                {
                    "event": "run_completed",
                    "status": event.status.value,
                    "tables_total": event.tables_total,
                    "tables_migrated": event.tables_migrated,
                    "tables_failed": event.tables_failed,
                    "tables_restored": event.tables_restored,
                    "duration_seconds": event.duration_seconds,
                    "exit_code": event.exit_code,
                }
            )
        )

    return {
        StageCompleted: _format_stage_completed_json,
        KeyMigrated: _format_key_migrated_json,
        IndexReplicated: _format_index_replicated_json,
        VerificationCompleted: _format_verification_json,
        TableSkipped: _format_table_skipped_json,
        TableFailed: _format_table_failed_json,
        RollbackCompleted: _format_rollback_json,
        RunSummary: _format_run_summary_json,
    }


def subscribe_formatters(
    event_bus: EventBusProtocol,
    formatters: dict[type, Callable[..., None]],
) -> None:
    """Subscribe all formatters to the event bus.

    Args:
        event_bus: The event bus to subscribe handlers to.
        formatters: Mapping from event type to handler callable.
    """
    for event_type, handler in formatters.items():
        event_bus.subscribe(event_type, handler)
