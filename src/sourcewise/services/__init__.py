"""Service layer helpers (storage, settings, cache, connectivity)."""

from .storage import COLLECTIONS, MemoryStore, PersistenceError, SQLiteStore, Store

__all__ = ["COLLECTIONS", "MemoryStore", "PersistenceError", "SQLiteStore", "Store"]
