"""Calendar synchronization engine: routing, fetching, reconciling and mirroring."""
