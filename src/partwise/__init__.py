"""
partwise: self-organizing two-level partitioning for large flat tables.

Converts an unpartitioned table into a table partitioned first by a key
column and then by a bounded-size bucket index, and keeps it organized
by routing every new row to the bucket currently being filled.
"""

__version__ = "0.1.0"
