"""Shared typing contracts for the model adapter boundary."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Literal, Mapping, Protocol, Sequence, TypeAlias

LOGGER = logging.getLogger(__name__)

ContextMode = Literal["agentic", "classic"]
HistoryRole = Literal["user", "assistant"]
ToolResultStatus = Literal["success", "error", "rejected", "skipped", "cancelled"]


@dataclass(slots=True, frozen=True)
class Source:
    """A notebook source the model may ground its answer in."""

    id: str
    title: str
    url: str = ""
    content: str = ""


@dataclass(slots=True, frozen=True)
class Citation:
    """A reference from an answer back to one source."""

    source_id: str
    source_title: str
    excerpt: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "source_title": self.source_title,
            "excerpt": self.excerpt,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Citation":
        return cls(
            source_id=str(payload.get("source_id", "")),
            source_title=str(payload.get("source_title", "")),
            excerpt=str(payload.get("excerpt", "")),
        )


@dataclass(slots=True, frozen=True)
class HistoryMessage:
    """Prior conversation message replayed to the model."""

    role: HistoryRole
    content: str


# -----------------------------------------------------------------------------
# Stream events
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TextDelta:
    """Incremental answer text."""

    text: str


@dataclass(slots=True, frozen=True)
class ToolCallRequested:
    """The model asked for a tool invocation."""

    tool_call_id: str
    tool_name: str
    args: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class ToolResultReported:
    """The adapter observed the outcome of a tool call it requested."""

    tool_call_id: str
    tool_name: str
    result: Any = None
    error: str | None = None


@dataclass(slots=True, frozen=True)
class StreamCompleted:
    """Terminal event carrying the cleaned answer and parsed citations."""

    content: str
    citations: tuple[Citation, ...] = ()


StreamEvent: TypeAlias = TextDelta | ToolCallRequested | ToolResultReported | StreamCompleted


# -----------------------------------------------------------------------------
# Tool outcome rendezvous
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolOutcome:
    """Final outcome of a gated tool call, as fed back to the model."""

    tool_call_id: str
    tool_name: str
    status: ToolResultStatus
    result: Any = None
    error: str | None = None

    def as_model_content(self) -> str:
        """Render the outcome as the content of a ``tool`` role message."""

        if self.status == "success":
            try:
                return json.dumps(self.result, ensure_ascii=False, default=str)
            except (TypeError, ValueError):
                return str(self.result)
        return json.dumps({"status": self.status, "error": self.error or ""}, ensure_ascii=False)


class ToolOutcomeBoard:
    """Per-turn futures keyed by tool call id.

    The orchestrator publishes every gated outcome here; adapters that feed
    tool results back to the model await them. Either side may arrive first.
    """

    def __init__(self) -> None:
        self._futures: dict[str, asyncio.Future[ToolOutcome]] = {}

    def _future(self, tool_call_id: str) -> asyncio.Future[ToolOutcome]:
        future = self._futures.get(tool_call_id)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._futures[tool_call_id] = future
        return future

    def publish(self, outcome: ToolOutcome) -> None:
        future = self._future(outcome.tool_call_id)
        if future.done():
            LOGGER.debug("Ignoring duplicate outcome for tool call %s", outcome.tool_call_id)
            return
        future.set_result(outcome)

    def peek(self, tool_call_id: str) -> ToolOutcome | None:
        future = self._futures.get(tool_call_id)
        if future is None or not future.done() or future.cancelled():
            return None
        return future.result()

    async def wait(self, tool_call_id: str) -> ToolOutcome:
        return await asyncio.shield(self._future(tool_call_id))

    def cancel_pending(self) -> None:
        for future in self._futures.values():
            if not future.done():
                future.cancel()


StatusCallback: TypeAlias = Callable[[str], None]


@dataclass(slots=True)
class StreamOptions:
    """Per-call knobs handed to :meth:`ModelAdapter.stream_chat`."""

    tools: Sequence[Mapping[str, Any]] = ()
    context_mode: ContextMode = "agentic"
    on_status: StatusCallback | None = None
    tool_outcomes: ToolOutcomeBoard | None = None

    def report_status(self, message: str) -> None:
        if self.on_status is None:
            return
        try:
            self.on_status(message)
        except Exception:  # pragma: no cover - listener failures must not break streaming
            LOGGER.debug("Status callback failed", exc_info=True)


class ModelAdapter(Protocol):
    """Streams a model answer for a query grounded in notebook sources."""

    def stream_chat(
        self,
        sources: Sequence[Source],
        query: str,
        history: Sequence[HistoryMessage],
        options: StreamOptions,
    ) -> AsyncIterator[StreamEvent]:
        """Yield stream events ending with exactly one :class:`StreamCompleted`."""
        ...


__all__ = [
    "Citation",
    "ContextMode",
    "HistoryMessage",
    "ModelAdapter",
    "Source",
    "StatusCallback",
    "StreamCompleted",
    "StreamEvent",
    "StreamOptions",
    "TextDelta",
    "ToolCallRequested",
    "ToolOutcome",
    "ToolOutcomeBoard",
    "ToolResultReported",
    "ToolResultStatus",
]
