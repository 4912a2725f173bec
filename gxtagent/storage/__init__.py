"""Persistence: SQLite store and row codecs."""

from .sqlite_store import SqliteStore

__all__ = ["SqliteStore"]
