# tests/routing/test_allocator.py
"""Tests for the bucket allocation policy."""

import pytest

from partwise.contracts import PartitionCursor


def _cursor(bucket: int = 0, count: int = 0) -> PartitionCursor:
    return PartitionCursor(table_name="orders", key_value="42", current_bucket_id=bucket, row_count_in_current_bucket=count)


class TestAllocate:
    def test_first_row_goes_to_bucket_zero(self) -> None:
        from partwise.routing.allocator import allocate

        allocation = allocate(_cursor(), capacity=3)
        assert allocation.bucket_id == 0
        assert allocation.cursor.row_count_in_current_bucket == 1
        assert not allocation.rolled_over

    def test_fills_current_bucket(self) -> None:
        from partwise.routing.allocator import allocate

        allocation = allocate(_cursor(bucket=2, count=2), capacity=3)
        assert allocation.bucket_id == 2
        assert allocation.cursor.current_bucket_id == 2
        assert allocation.cursor.row_count_in_current_bucket == 3

    def test_full_bucket_rolls_over(self) -> None:
        from partwise.routing.allocator import allocate

        allocation = allocate(_cursor(bucket=2, count=3), capacity=3)
        assert allocation.bucket_id == 3
        assert allocation.cursor.current_bucket_id == 3
        assert allocation.cursor.row_count_in_current_bucket == 1
        assert allocation.rolled_over

    def test_capacity_one(self) -> None:
        from partwise.routing.allocator import allocate

        cursor = _cursor()
        buckets = []
        for _ in range(4):
            allocation = allocate(cursor, capacity=1)
            buckets.append(allocation.bucket_id)
            cursor = allocation.cursor
        assert buckets == [0, 1, 2, 3]

    def test_lowered_capacity_rolls_over_immediately(self) -> None:
        """A capacity reduced below the current fill only affects future decisions."""
        from partwise.routing.allocator import allocate

        allocation = allocate(_cursor(bucket=0, count=8), capacity=5)
        assert allocation.bucket_id == 1

    def test_input_cursor_unchanged(self) -> None:
        from partwise.routing.allocator import allocate

        cursor = _cursor(bucket=1, count=1)
        allocate(cursor, capacity=3)
        assert cursor.row_count_in_current_bucket == 1

    def test_capacity_must_be_positive(self) -> None:
        from partwise.routing.allocator import allocate

        with pytest.raises(ValueError, match="capacity"):
            allocate(_cursor(), capacity=0)


class TestBucketsNeeded:
    @pytest.mark.parametrize(
        ("rows", "capacity", "expected"),
        [(0, 10, 0), (1, 10, 1), (10, 10, 1), (11, 10, 2), (250_000, 100_000, 3)],
    )
    def test_ceiling(self, rows: int, capacity: int, expected: int) -> None:
        from partwise.routing.allocator import buckets_needed

        assert buckets_needed(rows, capacity) == expected


class TestSeedPosition:
    @pytest.mark.parametrize(
        ("rows", "capacity", "expected"),
        [
            (0, 10, (0, 0)),
            (1, 10, (0, 1)),
            (10, 10, (0, 10)),
            (11, 10, (1, 1)),
            (100_000, 100_000, (0, 100_000)),
            (150_000, 100_000, (1, 50_000)),
        ],
    )
    def test_position(self, rows: int, capacity: int, expected: tuple[int, int]) -> None:
        from partwise.routing.allocator import seed_position

        assert seed_position(rows, capacity) == expected

    def test_negative_rows_rejected(self) -> None:
        from partwise.routing.allocator import seed_position

        with pytest.raises(ValueError, match="row_count"):
            seed_position(-1, 10)
