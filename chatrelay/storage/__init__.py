"""Relational storage for the chat pipeline."""
from chatrelay.storage.sqlite_store import SQLiteStore

__all__ = ["SQLiteStore"]
