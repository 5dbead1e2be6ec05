"""Storage backends: Redis metadata, JSON local store, filesystem objects."""
