# src/partwise/core/__init__.py
"""Core infrastructure: Configuration, Database, Dialects, Naming, Events, Logging."""

from partwise.core.config import (
    DatabaseSettings,
    MigrationSettings,
    PartwiseSettings,
    TargetSettings,
    load_settings,
    mask_url,
)
from partwise.core.database import PartwiseDB, SchemaCompatibilityError
from partwise.core.dialects import PostgresDialect, SQLiteDialect, StorageDialect, dialect_for
from partwise.core.events import EventBus, EventBusProtocol, NullEventBus
from partwise.core.logging import bind_stage, configure_logging, get_logger, table_context
from partwise.core.naming import (
    level1_name,
    level1_node,
    level2_name,
    level2_node,
    lock_name,
    normalize_key_value,
    safe_identifier,
)

__all__ = [
    "DatabaseSettings",
    "EventBus",
    "EventBusProtocol",
    "MigrationSettings",
    "NullEventBus",
    "PartwiseDB",
    "PartwiseSettings",
    "PostgresDialect",
    "SQLiteDialect",
    "SchemaCompatibilityError",
    "StorageDialect",
    "TargetSettings",
    "bind_stage",
    "configure_logging",
    "dialect_for",
    "get_logger",
    "level1_name",
    "level1_node",
    "level2_name",
    "level2_node",
    "load_settings",
    "lock_name",
    "mask_url",
    "normalize_key_value",
    "safe_identifier",
    "table_context",
]
