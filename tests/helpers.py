"""Shared test helpers and stub classes.

This module contains reusable test stubs that are used across multiple test files.
Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping, Sequence

from sourcewise.ai.ai_types import (
    HistoryMessage,
    Source,
    StreamEvent,
    StreamOptions,
    ToolResultReported,
)
from sourcewise.services.storage import PersistenceError, MemoryStore


@dataclass(slots=True, frozen=True)
class AwaitOutcome:
    """Script step: wait for the gated outcome of a tool call, then report it."""

    tool_call_id: str


@dataclass(slots=True, frozen=True)
class Raise:
    """Script step: raise ``error`` from inside the stream."""

    error: BaseException


@dataclass(slots=True, frozen=True)
class Pause:
    """Script step: block until ``event`` is set."""

    event: asyncio.Event


@dataclass(slots=True)
class AdapterCall:
    sources: list[Source]
    query: str
    history: list[HistoryMessage]
    options: StreamOptions


class ScriptedAdapter:
    """Model adapter that replays a fixed script of stream events.

    Example:
        adapter = ScriptedAdapter([TextDelta("Hi"), StreamCompleted("Hi")])
    """

    def __init__(self, script: Sequence[Any] = ()) -> None:
        self.script = list(script)
        self.calls: list[AdapterCall] = []
        self.closed = False
        self.paused = 0

    async def stream_chat(
        self,
        sources: Sequence[Source],
        query: str,
        history: Sequence[HistoryMessage],
        options: StreamOptions,
    ) -> AsyncIterator[StreamEvent]:
        self.calls.append(AdapterCall(list(sources), query, list(history), options))
        try:
            for step in self.script:
                if isinstance(step, AwaitOutcome):
                    assert options.tool_outcomes is not None
                    outcome = await options.tool_outcomes.wait(step.tool_call_id)
                    yield ToolResultReported(step.tool_call_id, outcome.tool_name, outcome.result, outcome.error)
                elif isinstance(step, Raise):
                    raise step.error
                elif isinstance(step, Pause):
                    self.paused += 1
                    await step.event.wait()
                else:
                    yield step
        finally:
            self.closed = True


class RecordingExecutor:
    """Tool executor that records calls and returns canned results."""

    def __init__(
        self,
        results: Mapping[str, Any] | None = None,
        *,
        errors: Mapping[str, BaseException] | None = None,
    ) -> None:
        self.results = dict(results or {})
        self.errors = dict(errors or {})
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def execute(self, tool_name: str, args: Mapping[str, Any]) -> Any:
        self.calls.append((tool_name, dict(args)))
        await asyncio.sleep(0)
        if tool_name in self.errors:
            raise self.errors[tool_name]
        return self.results.get(tool_name, {"tool": tool_name, "ok": True})


class FlakyStore(MemoryStore):
    """Memory store whose writes to selected collections fail on demand."""

    def __init__(self) -> None:
        super().__init__()
        self.failing: set[str] = set()

    def put(self, collection: str, value: Mapping[str, Any]) -> None:
        if collection in self.failing:
            raise PersistenceError(f"disk full while writing {collection}", collection=collection)
        super().put(collection, value)


async def wait_until(predicate, *, attempts: int = 200) -> None:
    """Yield to the event loop until ``predicate()`` holds."""

    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition was not met")
