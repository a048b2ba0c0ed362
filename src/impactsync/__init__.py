"""Ingest merged GitHub pull requests and compute per-author impact statistics."""

__version__ = "0.1.0"
