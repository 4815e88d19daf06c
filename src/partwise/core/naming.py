"""Partition naming.

Level-1 partitions are named ``{table}_{key_column}_{key_value}`` and
level-2 partitions ``{level1}_bucket_id_{bucket}``. Names that contain
characters outside ``[A-Za-z0-9_]`` or exceed the storage engine's
identifier limit are made safe by sanitizing, truncating, and appending a
digest of the full readable name, so distinct key values never collide.

Naming is a pure function of its inputs: every concurrent caller derives
the same name for the same partition, which is what makes the name usable
as a lock key.
"""

import hashlib
import re

from partwise.contracts import PartitionNode

# PostgreSQL's NAMEDATALEN - 1
DEFAULT_MAX_IDENTIFIER_LENGTH = 63

_SAFE_NAME = re.compile(r"^[A-Za-z0-9_]+$")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_]")
_DIGEST_CHARS = 10


def safe_identifier(readable: str, max_length: int = DEFAULT_MAX_IDENTIFIER_LENGTH) -> str:
    """Return ``readable`` if it is a safe identifier, else a hashed equivalent.

    Args:
        readable: The human-readable name
        max_length: Longest identifier (in bytes) the engine accepts

    Returns:
        An identifier of at most max_length ASCII characters

    Example:
        >>> safe_identifier("orders_customer_id_42")
        'orders_customer_id_42'
        >>> len(safe_identifier("orders_customer_id_" + "x" * 80))
        63
    """
    if _SAFE_NAME.match(readable) and len(readable.encode("utf-8")) <= max_length:
        return readable
    digest = hashlib.sha256(readable.encode("utf-8")).hexdigest()[:_DIGEST_CHARS]
    suffix = f"_h{digest}"
    prefix = _UNSAFE_CHARS.sub("_", readable)[: max_length - len(suffix)]
    return f"{prefix}{suffix}"


def level1_name(
    table: str,
    key_column: str,
    key_value: str,
    max_length: int = DEFAULT_MAX_IDENTIFIER_LENGTH,
) -> str:
    """Name of the level-1 partition holding every row with ``key_value``."""
    return safe_identifier(f"{table}_{key_column}_{key_value}", max_length)


def level2_name(
    table: str,
    key_column: str,
    key_value: str,
    bucket_id: int,
    max_length: int = DEFAULT_MAX_IDENTIFIER_LENGTH,
) -> str:
    """Name of the level-2 partition for one bucket of ``key_value``."""
    parent = level1_name(table, key_column, key_value, max_length)
    return safe_identifier(f"{parent}_bucket_id_{bucket_id}", max_length)


def level1_node(
    table: str,
    key_column: str,
    key_value: str,
    max_length: int = DEFAULT_MAX_IDENTIFIER_LENGTH,
) -> PartitionNode:
    return PartitionNode(
        table_name=table,
        key_column=key_column,
        key_value=key_value,
        name=level1_name(table, key_column, key_value, max_length),
    )


def level2_node(
    table: str,
    key_column: str,
    key_value: str,
    bucket_id: int,
    max_length: int = DEFAULT_MAX_IDENTIFIER_LENGTH,
) -> PartitionNode:
    return PartitionNode(
        table_name=table,
        key_column=key_column,
        key_value=key_value,
        name=level2_name(table, key_column, key_value, bucket_id, max_length),
        bucket_id=bucket_id,
    )


def lock_name(node: PartitionNode) -> str:
    """Named-lock key scoped to one partition's identity.

    Level prefixes keep a level-1 and a level-2 name that happen to be
    equal from sharing a lock.
    """
    return f"L{node.level}_{node.name}"


def normalize_key_value(value: object) -> str:
    """Engine-independent text form of a partition key value.

    Dialects refine this in ``StorageDialect.key_text`` wherever the
    engine's ``CAST(key AS TEXT)`` of the stored value renders otherwise.
    Booleans render lowercase as PostgreSQL prints them.

    Raises:
        ValueError: If value is None (NULL keys are never routed)
    """
    if value is None:
        raise ValueError("Partition key value cannot be None")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
