# tests/core/test_logging.py
"""Tests for structured logging configuration."""

import json
import logging
from collections.abc import Iterator

import pytest
import structlog

from partwise.core.database import PartwiseDB
from tests.helpers import SourceTableFactory


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    yield
    logging.getLogger().handlers = []
    structlog.reset_defaults()


class TestConfigureLogging:
    def test_json_output(self, capsys: pytest.CaptureFixture[str]) -> None:
        from partwise.core.logging import configure_logging, get_logger

        configure_logging(json_output=True, level="INFO")
        get_logger("partwise.test").info("Created partition", table="orders", bucket_id=3)

        line = capsys.readouterr().out.strip().splitlines()[-1]
        payload = json.loads(line)
        assert payload["event"] == "Created partition"
        assert payload["table"] == "orders"
        assert payload["bucket_id"] == 3
        assert payload["level"] == "info"
        assert "_record" not in payload
        assert "_from_structlog" not in payload

    def test_level_filters(self, capsys: pytest.CaptureFixture[str]) -> None:
        from partwise.core.logging import configure_logging, get_logger

        configure_logging(json_output=True, level="WARNING")
        logger = get_logger("partwise.test")
        logger.info("hidden")
        logger.warning("shown")

        out = capsys.readouterr().out
        assert "hidden" not in out
        assert "shown" in out

    def test_stdlib_records_use_same_format(self, capsys: pytest.CaptureFixture[str]) -> None:
        from partwise.core.logging import configure_logging

        configure_logging(json_output=True, level="INFO")
        logging.getLogger("some.library").warning("driver notice")

        payload = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert payload["event"] == "driver notice"

    def test_noisy_loggers_quieted(self) -> None:
        from partwise.core.logging import configure_logging

        configure_logging(level="DEBUG")
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING

    def test_get_logger_returns_bound_logger(self) -> None:
        from partwise.core.logging import configure_logging, get_logger

        configure_logging()
        logger = get_logger(__name__)
        assert isinstance(logger.bind(table="orders"), structlog.stdlib.BoundLogger)


class TestTableContext:
    def test_binds_table_and_stage(self, capsys: pytest.CaptureFixture[str]) -> None:
        from partwise.core.logging import bind_stage, configure_logging, get_logger, table_context

        configure_logging(json_output=True, level="INFO")
        logger = get_logger("partwise.test")
        with table_context("orders"):
            logger.info("starting")
            bind_stage("renamed")
            logging.getLogger("some.library").warning("driver notice")
        logger.info("outside")

        starting, notice, outside = (json.loads(line) for line in capsys.readouterr().out.strip().splitlines()[-3:])
        assert (starting["table"], starting["stage"]) == ("orders", "none")
        assert (notice["table"], notice["stage"]) == ("orders", "renamed")
        assert "table" not in outside
        assert "stage" not in outside

    def test_migration_records_carry_stage(self, capsys: pytest.CaptureFixture[str], db: PartwiseDB, source_table: SourceTableFactory) -> None:
        from partwise.core.logging import configure_logging
        from partwise.migration.orchestrator import MigrationOrchestrator

        target = source_table("orders", {1: 3})
        configure_logging(json_output=True, level="INFO")
        MigrationOrchestrator(db).migrate_table(target)

        records = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.startswith("{")]
        batches = [r for r in records if r["event"] == "Provisioned partition batch"]
        assert batches
        assert {r["stage"] for r in batches} == {"structure_created"}
        assert next(r for r in records if r["event"] == "Table migrated")["stage"] == "verified"
