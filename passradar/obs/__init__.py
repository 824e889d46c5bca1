"""Observability helpers (logging, metrics)."""
