# tests/cli/conftest.py
"""Shared fixtures for CLI tests."""

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

from partwise.core.database import PartwiseDB
from tests.helpers import create_orders_table, insert_orders

ROWS_PER_KEY = {1: 25, 2: 10, 3: 3}


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    """The CLI points the root handler at the runner's stdout; detach it afterwards."""
    yield
    logging.getLogger().handlers = []
    structlog.reset_defaults()


@pytest.fixture
def cli_db_path(tmp_path: Path) -> Path:
    """SQLite database with a populated ``orders`` table."""
    path = tmp_path / "app.db"
    with PartwiseDB(f"sqlite:///{path}") as db:
        create_orders_table(db)
        insert_orders(db, "orders", ROWS_PER_KEY)
    return path


def write_settings(tmp_path: Path, db_path: Path, *, tables: tuple[str, ...] = ("orders",), capacity: int = 10) -> Path:
    targets = "".join(f"  - table: {t}\n    key_column: customer_id\n    bucket_capacity: {capacity}\n" for t in tables)
    settings_file = tmp_path / "settings.yaml"
    settings_file.write_text(f'database:\n  url: "sqlite:///{db_path}"\ntargets:\n{targets}')
    return settings_file


@pytest.fixture
def settings_file(tmp_path: Path, cli_db_path: Path) -> Path:
    return write_settings(tmp_path, cli_db_path)
