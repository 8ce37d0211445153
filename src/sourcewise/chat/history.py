"""Per-notebook chat history repository."""

from __future__ import annotations

import logging

from ..ai.ai_types import HistoryMessage
from ..services.storage import CHAT_EVENTS, Store
from .events import ChatEvent, chat_event_from_dict, to_history_message

LOGGER = logging.getLogger(__name__)


class ChatHistory:
    """Appends chat events and reads them back in timestamp order."""

    def __init__(self, store: Store) -> None:
        self._store = store

    def save_event(self, event: ChatEvent) -> None:
        self._store.put(CHAT_EVENTS, event.to_dict())
        LOGGER.debug("Saved %s event %s for notebook %s", event.type, event.id, event.notebook_id)

    def get_history(self, notebook_id: str) -> list[ChatEvent]:
        records = self._store.get_by_index(CHAT_EVENTS, "notebook_id", notebook_id)
        events = [chat_event_from_dict(record) for record in records]
        # Stable sort keeps insertion order for events stamped in the same millisecond.
        events.sort(key=lambda event: event.timestamp)
        return events

    def get_messages(self, notebook_id: str, *, limit: int | None = None) -> list[HistoryMessage]:
        """Return user/assistant messages for replay, newest ``limit`` only."""

        messages = [
            message
            for message in (to_history_message(event) for event in self.get_history(notebook_id))
            if message is not None
        ]
        if limit is not None and limit >= 0:
            messages = messages[-limit:] if limit else []
        return messages

    def clear_history(self, notebook_id: str) -> int:
        removed = self._store.delete_by_index(CHAT_EVENTS, "notebook_id", notebook_id)
        LOGGER.info("Cleared %s chat event(s) for notebook %s", removed, notebook_id)
        return removed


__all__ = ["ChatHistory"]
