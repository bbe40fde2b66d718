"""Domain layer - library and sync business logic."""
