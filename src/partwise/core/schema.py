# src/partwise/core/schema.py
"""SQLAlchemy table definitions for the partition registry.

Uses SQLAlchemy Core (not ORM) for explicit control over queries
and compatibility with multiple database backends.

The registry is the only state partwise keeps besides the storage
engine's own catalog: which tables are managed (and how), and which
bucket is currently being filled for every key value.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
)

# Shared metadata for all registry tables
metadata = MetaData()

# Name of the bucket column added to every partitioned table
BUCKET_COLUMN = "bucket_id"

# === Partition Configuration (one row per managed table) ===

partition_config_table = Table(
    "partition_config",
    metadata,
    Column("table_name", String(255), primary_key=True),
    Column("partition_key_column", String(255), nullable=False),
    Column("bucket_capacity", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    # When the routing hook was attached; NULL while migration is in flight
    Column("cutover_at", DateTime(timezone=True)),
    CheckConstraint("bucket_capacity > 0", name="ck_partition_config_capacity_positive"),
)

# === Partition Cursors (one row per table and key value) ===

partition_cursor_table = Table(
    "partition_cursor",
    metadata,
    Column("table_name", String(255), ForeignKey("partition_config.table_name", ondelete="CASCADE"), nullable=False),
    Column("key_value", Text, nullable=False),
    Column("current_bucket_id", Integer, nullable=False, default=0),
    Column("row_count_in_bucket", Integer, nullable=False, default=0),
    Column("last_updated", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("table_name", "key_value", name="pk_partition_cursor"),
    CheckConstraint("current_bucket_id >= 0", name="ck_partition_cursor_bucket_non_negative"),
    CheckConstraint("row_count_in_bucket >= 0", name="ck_partition_cursor_count_non_negative"),
)

REGISTRY_TABLES: frozenset[str] = frozenset(metadata.tables.keys())
