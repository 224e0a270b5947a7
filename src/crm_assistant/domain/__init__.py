"""Domain entities, value objects and ports."""
