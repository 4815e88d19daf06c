# tests/conftest.py
"""Shared test fixtures.

Every database test runs against a file-backed SQLite database in
``tmp_path``. File-backed (not in-memory) so that threaded tests get one
connection per thread and exercise the real BEGIN IMMEDIATE serialization.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

import os
from collections.abc import Iterator, Mapping
from pathlib import Path

import pytest
from hypothesis import Phase, Verbosity, settings

from partwise.contracts import MigrationTarget
from partwise.core.database import PartwiseDB
from tests.helpers import SourceTableFactory, create_orders_table, insert_orders

# =============================================================================
# Hypothesis profiles
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output for debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Load profile from environment, default to "ci"
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "partwise.db"


@pytest.fixture
def db(db_path: Path) -> Iterator[PartwiseDB]:
    """File-backed SQLite database with registry tables created."""
    database = PartwiseDB(f"sqlite:///{db_path}")
    yield database
    database.close()


@pytest.fixture
def source_table(db: PartwiseDB) -> SourceTableFactory:
    """Factory creating a populated source table and returning its migration target.

    Usage:
        target = source_table("orders", {1: 30, 2: 5}, capacity=10)
    """

    def _create(
        name: str = "orders",
        rows_per_key: Mapping[int | None, int] | None = None,
        *,
        capacity: int = 10,
        first_id: int = 1,
    ) -> MigrationTarget:
        create_orders_table(db, name)
        insert_orders(db, name, rows_per_key or {}, first_id=first_id)
        return MigrationTarget(table=name, key_column="customer_id", bucket_capacity=capacity)

    return _create
