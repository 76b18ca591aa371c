"""Content processors: one per pipeline stage plus the domain specialists."""
