"""Tests for chat events and the per-notebook history repository."""

from __future__ import annotations

import pytest

from sourcewise.ai.ai_types import Citation, HistoryMessage
from sourcewise.chat.events import (
    AssistantEvent,
    ToolCallDescriptor,
    ToolResultEvent,
    UserEvent,
    chat_event_from_dict,
    to_history_message,
)
from sourcewise.chat.history import ChatHistory


class TestChatEvents:
    """Tests for event serialization."""

    def test_assistant_event_round_trips_through_dict(self) -> None:
        event = AssistantEvent(
            notebook_id="nb",
            content="Answer",
            citations=[Citation("s1", "T1", "quote")],
            tool_calls=[ToolCallDescriptor("c1", "listSources", {"limit": 2}, timestamp=5)],
            metadata={"from_cache": True},
        )

        rebuilt = chat_event_from_dict(event.to_dict())

        assert rebuilt == event
        assert rebuilt.from_cache

    def test_tool_result_event_omits_absent_fields(self) -> None:
        event = ToolResultEvent(notebook_id="nb", tool_call_id="c1", tool_name="listTabs", status="skipped")

        payload = event.to_dict()

        assert payload["type"] == "tool-result"
        assert "error" not in payload
        assert "duration_ms" not in payload
        assert chat_event_from_dict(payload) == event

    def test_unknown_type_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown chat event type"):
            chat_event_from_dict({"type": "system", "id": "x"})

    def test_history_projection_skips_tool_results(self) -> None:
        assert to_history_message(UserEvent("nb", "Q")) == HistoryMessage("user", "Q")
        assert to_history_message(AssistantEvent("nb", "A")) == HistoryMessage("assistant", "A")
        assert to_history_message(ToolResultEvent("nb", "c1", "listTabs", "success")) is None


class TestChatHistory:
    """Tests for the history repository."""

    def test_events_are_returned_in_timestamp_order(self, history: ChatHistory) -> None:
        history.save_event(AssistantEvent("nb", "second", timestamp=20))
        history.save_event(UserEvent("nb", "first", timestamp=10))
        history.save_event(ToolResultEvent("nb", "c1", "listTabs", "success", timestamp=20))

        events = history.get_history("nb")

        assert [event.type for event in events] == ["user", "assistant", "tool-result"]

    def test_notebooks_are_isolated(self, history: ChatHistory) -> None:
        history.save_event(UserEvent("nb-1", "one"))
        history.save_event(UserEvent("nb-2", "two"))

        assert [event.content for event in history.get_history("nb-2")] == ["two"]

    def test_messages_respect_limit(self, history: ChatHistory) -> None:
        for index in range(4):
            history.save_event(UserEvent("nb", str(index), timestamp=index))
        history.save_event(ToolResultEvent("nb", "c1", "listTabs", "success", timestamp=9))

        assert [message.content for message in history.get_messages("nb", limit=2)] == ["2", "3"]
        assert history.get_messages("nb", limit=0) == []
        assert len(history.get_messages("nb")) == 4

    def test_clear_history_removes_only_that_notebook(self, history: ChatHistory) -> None:
        history.save_event(UserEvent("nb-1", "one"))
        history.save_event(AssistantEvent("nb-1", "uno"))
        history.save_event(UserEvent("nb-2", "two"))

        assert history.clear_history("nb-1") == 2
        assert history.get_history("nb-1") == []
        assert len(history.get_history("nb-2")) == 1
