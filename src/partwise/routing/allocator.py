"""Bucket allocation policy.

Pure functions, no I/O. ``allocate`` decides where the next row of a key
goes; ``seed_position`` computes the cursor that allocating ``n`` rows one
at a time would have produced, so bulk provisioning can write it directly.

For one key, the n-th allocated row (1-based) always lands in bucket
``(n - 1) // capacity``, which keeps every bucket at or below capacity.
"""

from dataclasses import dataclass, replace

from partwise.contracts import PartitionCursor


@dataclass(frozen=True, slots=True)
class Allocation:
    """Bucket chosen for one row and the cursor to persist afterwards."""

    bucket_id: int
    cursor: PartitionCursor

    @property
    def rolled_over(self) -> bool:
        """True if this row opened a new bucket."""
        return self.cursor.row_count_in_current_bucket == 1 and self.bucket_id > 0


def allocate(cursor: PartitionCursor, capacity: int) -> Allocation:
    """Assign the next row of a key to a bucket.

    Args:
        cursor: Current position of the key (read under its row lock)
        capacity: Maximum rows per bucket

    Returns:
        Allocation with the bucket id and the advanced cursor

    Raises:
        ValueError: If capacity is below 1
    """
    if capacity < 1:
        raise ValueError(f"capacity must be >= 1, got {capacity}")

    if cursor.row_count_in_current_bucket < capacity:
        bucket_id = cursor.current_bucket_id
        row_count = cursor.row_count_in_current_bucket + 1
    else:
        bucket_id = cursor.current_bucket_id + 1
        row_count = 1

    return Allocation(
        bucket_id=bucket_id,
        cursor=replace(cursor, current_bucket_id=bucket_id, row_count_in_current_bucket=row_count),
    )


def buckets_needed(row_count: int, capacity: int) -> int:
    """Number of buckets ``row_count`` rows occupy (ceiling division)."""
    if capacity < 1:
        raise ValueError(f"capacity must be >= 1, got {capacity}")
    return -(-row_count // capacity)


def seed_position(row_count: int, capacity: int) -> tuple[int, int]:
    """Cursor position after ``row_count`` sequential allocations.

    A last bucket that is exactly full is recorded as full (not as an
    empty next bucket), so the next allocation rolls over.

    Returns:
        (current_bucket_id, row_count_in_current_bucket)

    Example:
        >>> seed_position(100_000, 100_000)
        (0, 100000)
        >>> seed_position(150_000, 100_000)
        (1, 50000)
    """
    if row_count < 0:
        raise ValueError(f"row_count must be >= 0, got {row_count}")
    if row_count == 0:
        return 0, 0
    last_bucket = buckets_needed(row_count, capacity) - 1
    return last_bucket, row_count - last_bucket * capacity
