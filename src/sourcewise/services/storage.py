"""Keyed persistent collections backing chat history, policy, approvals and cache.

Every collection stores JSON-compatible dictionaries keyed by a single field
and exposes equality lookups on a fixed set of indexed fields. Two
implementations ship: :class:`MemoryStore` for tests and ephemeral sessions,
and :class:`SQLiteStore` which keeps one table per collection with the record
body serialized as JSON.
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol, runtime_checkable

LOGGER = logging.getLogger(__name__)

CHAT_EVENTS = "chat_events"
SETTINGS = "settings"
APPROVAL_REQUESTS = "approval_requests"
RESPONSE_CACHE = "response_cache"


class PersistenceError(RuntimeError):
    """Raised when a store operation cannot be completed."""

    def __init__(self, message: str, *, collection: str | None = None) -> None:
        super().__init__(message)
        self.collection = collection


@dataclass(slots=True, frozen=True)
class CollectionSchema:
    """Key and index layout for a single collection."""

    name: str
    key: str = "id"
    indexes: tuple[str, ...] = field(default_factory=tuple)


COLLECTIONS: Mapping[str, CollectionSchema] = {
    CHAT_EVENTS: CollectionSchema(CHAT_EVENTS, "id", ("notebook_id", "timestamp", "type")),
    SETTINGS: CollectionSchema(SETTINGS, "key"),
    APPROVAL_REQUESTS: CollectionSchema(APPROVAL_REQUESTS, "id", ("status",)),
    RESPONSE_CACHE: CollectionSchema(RESPONSE_CACHE, "id", ("notebook_id", "created_at")),
}


@runtime_checkable
class Store(Protocol):
    """Keyed collections with secondary index lookups."""

    def get(self, collection: str, key: str) -> dict[str, Any] | None:
        ...

    def get_all(self, collection: str) -> list[dict[str, Any]]:
        ...

    def get_by_index(self, collection: str, index: str, value: Any) -> list[dict[str, Any]]:
        ...

    def put(self, collection: str, value: Mapping[str, Any]) -> None:
        ...

    def delete(self, collection: str, key: str) -> None:
        ...

    def delete_by_index(self, collection: str, index: str, value: Any) -> int:
        ...

    def clear(self, collection: str) -> None:
        ...


def _schema_for(collection: str) -> CollectionSchema:
    schema = COLLECTIONS.get(collection)
    if schema is None:
        raise PersistenceError(f"Unknown collection '{collection}'", collection=collection)
    return schema


def _require_index(schema: CollectionSchema, index: str) -> None:
    if index != schema.key and index not in schema.indexes:
        raise PersistenceError(
            f"Collection '{schema.name}' has no index '{index}'",
            collection=schema.name,
        )


def _record_key(schema: CollectionSchema, value: Mapping[str, Any]) -> str:
    key = value.get(schema.key)
    if key is None or key == "":
        raise PersistenceError(
            f"Record for '{schema.name}' is missing key field '{schema.key}'",
            collection=schema.name,
        )
    return str(key)


class MemoryStore:
    """Dictionary-backed store; values are deep-copied on the way in and out."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {name: {} for name in COLLECTIONS}

    def get(self, collection: str, key: str) -> dict[str, Any] | None:
        _schema_for(collection)
        record = self._collections[collection].get(key)
        return copy.deepcopy(record) if record is not None else None

    def get_all(self, collection: str) -> list[dict[str, Any]]:
        _schema_for(collection)
        return [copy.deepcopy(record) for record in self._collections[collection].values()]

    def get_by_index(self, collection: str, index: str, value: Any) -> list[dict[str, Any]]:
        schema = _schema_for(collection)
        _require_index(schema, index)
        return [
            copy.deepcopy(record)
            for record in self._collections[collection].values()
            if record.get(index) == value
        ]

    def put(self, collection: str, value: Mapping[str, Any]) -> None:
        schema = _schema_for(collection)
        key = _record_key(schema, value)
        self._collections[collection][key] = copy.deepcopy(dict(value))

    def delete(self, collection: str, key: str) -> None:
        _schema_for(collection)
        self._collections[collection].pop(key, None)

    def delete_by_index(self, collection: str, index: str, value: Any) -> int:
        schema = _schema_for(collection)
        _require_index(schema, index)
        records = self._collections[collection]
        doomed = [key for key, record in records.items() if record.get(index) == value]
        for key in doomed:
            del records[key]
        return len(doomed)

    def clear(self, collection: str) -> None:
        _schema_for(collection)
        self._collections[collection].clear()


class SQLiteStore:
    """SQLite-backed store holding one ``(key, body)`` table per collection."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path).expanduser() if str(path) != ":memory:" else path
        self._lock = threading.RLock()
        try:
            if isinstance(self._path, Path):
                self._path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
            self._initialize()
        except (OSError, sqlite3.Error) as exc:
            raise PersistenceError(f"Unable to open store at {path}: {exc}") from exc
        LOGGER.debug("SQLite store opened at %s", self._path)

    @property
    def path(self) -> Path | str:
        return self._path

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _initialize(self) -> None:
        with self._lock, self._conn:
            for schema in COLLECTIONS.values():
                self._conn.execute(
                    f'CREATE TABLE IF NOT EXISTS "{schema.name}" (key TEXT PRIMARY KEY, body TEXT NOT NULL)'
                )
                for index in schema.indexes:
                    self._conn.execute(
                        f'CREATE INDEX IF NOT EXISTS "ix_{schema.name}_{index}" '
                        f"ON \"{schema.name}\" (json_extract(body, '$.{index}'))"
                    )

    def _query(self, sql: str, params: Iterable[Any] = (), *, collection: str) -> list[dict[str, Any]]:
        try:
            with self._lock:
                rows = self._conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Read from '{collection}' failed: {exc}", collection=collection) from exc
        return [json.loads(row[0]) for row in rows]

    def _execute(self, sql: str, params: Iterable[Any] = (), *, collection: str) -> int:
        try:
            with self._lock, self._conn:
                cursor = self._conn.execute(sql, tuple(params))
                return cursor.rowcount
        except sqlite3.Error as exc:
            raise PersistenceError(f"Write to '{collection}' failed: {exc}", collection=collection) from exc

    def get(self, collection: str, key: str) -> dict[str, Any] | None:
        schema = _schema_for(collection)
        rows = self._query(f'SELECT body FROM "{schema.name}" WHERE key = ?', (key,), collection=collection)
        return rows[0] if rows else None

    def get_all(self, collection: str) -> list[dict[str, Any]]:
        schema = _schema_for(collection)
        return self._query(f'SELECT body FROM "{schema.name}" ORDER BY rowid', collection=collection)

    def get_by_index(self, collection: str, index: str, value: Any) -> list[dict[str, Any]]:
        schema = _schema_for(collection)
        _require_index(schema, index)
        if index == schema.key:
            record = self.get(collection, str(value))
            return [record] if record is not None else []
        return self._query(
            f"SELECT body FROM \"{schema.name}\" WHERE json_extract(body, '$.{index}') = ? ORDER BY rowid",
            (value,),
            collection=collection,
        )

    def put(self, collection: str, value: Mapping[str, Any]) -> None:
        schema = _schema_for(collection)
        key = _record_key(schema, value)
        try:
            body = json.dumps(dict(value), ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"Record for '{collection}' is not JSON serializable: {exc}", collection=collection) from exc
        self._execute(
            f'INSERT INTO "{schema.name}" (key, body) VALUES (?, ?) '
            "ON CONFLICT(key) DO UPDATE SET body = excluded.body",
            (key, body),
            collection=collection,
        )

    def delete(self, collection: str, key: str) -> None:
        schema = _schema_for(collection)
        self._execute(f'DELETE FROM "{schema.name}" WHERE key = ?', (key,), collection=collection)

    def delete_by_index(self, collection: str, index: str, value: Any) -> int:
        schema = _schema_for(collection)
        _require_index(schema, index)
        if index == schema.key:
            return self._execute(f'DELETE FROM "{schema.name}" WHERE key = ?', (str(value),), collection=collection)
        return self._execute(
            f"DELETE FROM \"{schema.name}\" WHERE json_extract(body, '$.{index}') = ?",
            (value,),
            collection=collection,
        )

    def clear(self, collection: str) -> None:
        schema = _schema_for(collection)
        self._execute(f'DELETE FROM "{schema.name}"', collection=collection)


__all__ = [
    "APPROVAL_REQUESTS",
    "CHAT_EVENTS",
    "COLLECTIONS",
    "CollectionSchema",
    "MemoryStore",
    "PersistenceError",
    "RESPONSE_CACHE",
    "SETTINGS",
    "SQLiteStore",
    "Store",
]
