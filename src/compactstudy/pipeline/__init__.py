"""Orchestration, auditing, cross-referencing and resource control for runs."""
