"""Fallback cache of answers keyed by (query, source set).

Entries are written after every successful turn and read only when the
model is unreachable. The key normalizes the query (trimmed, lower-cased)
and treats source ids as a set, so reordering sources or changing the
query's case still hits the same entry.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from ..ai.ai_types import Citation
from .storage import RESPONSE_CACHE, Store

LOGGER = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "cache_"
_KEY_DIGEST_CHARS = 16


def normalize_query(query: str) -> str:
    return (query or "").strip().lower()


def make_cache_key(query: str, source_ids: Iterable[str]) -> str:
    """Return a deterministic fingerprint for ``query`` over the set ``source_ids``."""

    ids = ",".join(sorted({str(source_id) for source_id in source_ids}))
    material = f"{normalize_query(query)}:{ids}"
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()
    return f"{CACHE_KEY_PREFIX}{digest[:_KEY_DIGEST_CHARS]}"


@dataclass(slots=True)
class CachedResponse:
    """A previously computed answer."""

    id: str
    query: str
    response: str
    notebook_id: str = ""
    source_ids: list[str] = field(default_factory=list)
    citations: list[Citation] = field(default_factory=list)
    created_at: int = 0

    @property
    def cache_key(self) -> str:
        return self.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "notebook_id": self.notebook_id,
            "query": self.query,
            "source_ids": list(self.source_ids),
            "response": self.response,
            "citations": [citation.to_dict() for citation in self.citations],
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CachedResponse":
        return cls(
            id=str(payload["id"]),
            notebook_id=str(payload.get("notebook_id", "")),
            query=str(payload.get("query", "")),
            source_ids=[str(item) for item in payload.get("source_ids") or ()],
            response=str(payload.get("response", "")),
            citations=[Citation.from_dict(item) for item in payload.get("citations") or ()],
            created_at=int(payload.get("created_at") or 0),
        )


class ResponseCache:
    """Upsert/read access to cached answers."""

    def __init__(self, store: Store) -> None:
        self._store = store

    def get(self, cache_key: str) -> CachedResponse | None:
        record = self._store.get(RESPONSE_CACHE, cache_key)
        if record is None:
            return None
        LOGGER.debug("Response cache hit for %s", cache_key)
        return CachedResponse.from_dict(record)

    def put(
        self,
        cache_key: str,
        *,
        query: str,
        source_ids: Sequence[str],
        response: str,
        citations: Sequence[Citation] = (),
        notebook_id: str = "",
    ) -> CachedResponse:
        entry = CachedResponse(
            id=cache_key,
            notebook_id=notebook_id,
            query=query,
            source_ids=sorted({str(source_id) for source_id in source_ids}),
            response=response,
            citations=list(citations),
            created_at=int(time.time() * 1000),
        )
        self._store.put(RESPONSE_CACHE, entry.to_dict())
        LOGGER.debug("Cached response %s for notebook %s", cache_key, notebook_id or "-")
        return entry

    def list_for_notebook(self, notebook_id: str) -> list[CachedResponse]:
        records = self._store.get_by_index(RESPONSE_CACHE, "notebook_id", notebook_id)
        entries = [CachedResponse.from_dict(record) for record in records]
        entries.sort(key=lambda entry: entry.created_at, reverse=True)
        return entries

    def clear_notebook(self, notebook_id: str) -> int:
        removed = self._store.delete_by_index(RESPONSE_CACHE, "notebook_id", notebook_id)
        LOGGER.info("Cleared %s cached response(s) for notebook %s", removed, notebook_id)
        return removed


__all__ = [
    "CachedResponse",
    "ResponseCache",
    "make_cache_key",
    "normalize_query",
]
