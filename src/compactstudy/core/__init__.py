"""Core data model, layout primitives and shared utilities."""
