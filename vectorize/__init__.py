"""Vectorize — hybrid semantic search over a project's code, docs and database schema."""

__version__ = "0.1.0"
