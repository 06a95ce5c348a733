"""Domain Models: request descriptors, statistics snapshots and shared value objects."""
