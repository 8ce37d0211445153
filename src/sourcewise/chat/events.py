"""Chat event data models persisted per notebook."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Mapping, TypeAlias, assert_never

from ..ai.ai_types import Citation, HistoryMessage, ToolResultStatus

ChatEventType = Literal["user", "assistant", "tool-result"]


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""

    return int(time.time() * 1000)


def new_event_id() -> str:
    return uuid.uuid4().hex


@dataclass(slots=True)
class ToolCallDescriptor:
    """A tool call observed during an assistant turn."""

    tool_call_id: str
    tool_name: str
    args: Dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "args": dict(self.args),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ToolCallDescriptor":
        return cls(
            tool_call_id=str(payload["tool_call_id"]),
            tool_name=str(payload["tool_name"]),
            args=dict(payload.get("args") or {}),
            timestamp=int(payload.get("timestamp") or 0),
        )


@dataclass(slots=True)
class UserEvent:
    """The query a user submitted."""

    notebook_id: str
    content: str
    id: str = field(default_factory=new_event_id)
    timestamp: int = field(default_factory=now_ms)
    type: Literal["user"] = "user"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "id": self.id,
            "notebook_id": self.notebook_id,
            "timestamp": self.timestamp,
            "content": self.content,
        }


@dataclass(slots=True)
class AssistantEvent:
    """The model's answer, or the fallback recorded in its place."""

    notebook_id: str
    content: str
    citations: list[Citation] = field(default_factory=list)
    tool_calls: list[ToolCallDescriptor] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_event_id)
    timestamp: int = field(default_factory=now_ms)
    type: Literal["assistant"] = "assistant"

    @property
    def from_cache(self) -> bool:
        return bool(self.metadata.get("from_cache"))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type,
            "id": self.id,
            "notebook_id": self.notebook_id,
            "timestamp": self.timestamp,
            "content": self.content,
            "citations": [citation.to_dict() for citation in self.citations],
            "tool_calls": [call.to_dict() for call in self.tool_calls],
        }
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload


@dataclass(slots=True)
class ToolResultEvent:
    """Outcome of one tool call, whatever the policy decided."""

    notebook_id: str
    tool_call_id: str
    tool_name: str
    status: ToolResultStatus
    result: Any = None
    error: str | None = None
    duration_ms: float | None = None
    id: str = field(default_factory=new_event_id)
    timestamp: int = field(default_factory=now_ms)
    type: Literal["tool-result"] = "tool-result"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type,
            "id": self.id,
            "notebook_id": self.notebook_id,
            "timestamp": self.timestamp,
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "status": self.status,
            "result": self.result,
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.duration_ms is not None:
            payload["duration_ms"] = self.duration_ms
        return payload


ChatEvent: TypeAlias = UserEvent | AssistantEvent | ToolResultEvent


def chat_event_from_dict(payload: Mapping[str, Any]) -> ChatEvent:
    """Rebuild a chat event from its persisted form."""

    event_type = payload.get("type")
    common = {
        "id": str(payload["id"]),
        "notebook_id": str(payload.get("notebook_id", "")),
        "timestamp": int(payload.get("timestamp") or 0),
    }
    match event_type:
        case "user":
            return UserEvent(content=str(payload.get("content", "")), **common)
        case "assistant":
            return AssistantEvent(
                content=str(payload.get("content", "")),
                citations=[Citation.from_dict(item) for item in payload.get("citations") or ()],
                tool_calls=[ToolCallDescriptor.from_dict(item) for item in payload.get("tool_calls") or ()],
                metadata=dict(payload.get("metadata") or {}),
                **common,
            )
        case "tool-result":
            duration = payload.get("duration_ms")
            return ToolResultEvent(
                tool_call_id=str(payload.get("tool_call_id", "")),
                tool_name=str(payload.get("tool_name", "")),
                status=payload.get("status", "success"),
                result=payload.get("result"),
                error=payload.get("error"),
                duration_ms=float(duration) if duration is not None else None,
                **common,
            )
    raise ValueError(f"Unknown chat event type: {event_type!r}")


def to_history_message(event: ChatEvent) -> HistoryMessage | None:
    """Project a chat event onto the conversation replayed to the model."""

    match event:
        case UserEvent():
            return HistoryMessage(role="user", content=event.content)
        case AssistantEvent():
            return HistoryMessage(role="assistant", content=event.content)
        case ToolResultEvent():
            return None
        case _:
            assert_never(event)


__all__ = [
    "AssistantEvent",
    "ChatEvent",
    "ChatEventType",
    "ToolCallDescriptor",
    "ToolResultEvent",
    "UserEvent",
    "chat_event_from_dict",
    "new_event_id",
    "now_ms",
    "to_history_message",
]
