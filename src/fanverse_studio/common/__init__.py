"""Shared infrastructure: logging, database, errors, and caller identity."""
