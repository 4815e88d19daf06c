"""Routing: partition registry, bucket allocation, provisioning, and the row router."""

from partwise.routing.allocator import Allocation, allocate, buckets_needed, seed_position
from partwise.routing.provisioner import PartitionProvisioner
from partwise.routing.registry import PartitionRegistry
from partwise.routing.router import RowRouter

__all__ = [
    "Allocation",
    "PartitionProvisioner",
    "PartitionRegistry",
    "RowRouter",
    "allocate",
    "buckets_needed",
    "seed_position",
]
