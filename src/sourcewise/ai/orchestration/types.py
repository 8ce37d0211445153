"""Core type definitions for chat turns.

A turn moves through a small state machine driven by the orchestrator's
consumer loop. Tool calls observed during the turn progress through their
own, shorter lifecycle because their gates run concurrently with the
stream; :class:`TurnTracker` records both.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..ai_types import ContextMode, StatusCallback
from ..tools.permissions import DEFAULT_SESSION, SessionContext
from ...chat.citations import CitationGroup
from ...chat.events import AssistantEvent, ToolResultEvent, UserEvent

__all__ = [
    "CancellationToken",
    "TurnInProgressError",
    "TurnOptions",
    "TurnResult",
    "TurnState",
    "TurnTracker",
]


# -----------------------------------------------------------------------------
# State machine
# -----------------------------------------------------------------------------


class TurnState(Enum):
    """Lifecycle of a turn and of the tool calls it dispatches."""

    IDLE = "idle"
    SUBMITTED = "submitted"
    STREAMING = "streaming"
    TOOL_CALL_PENDING = "tool_call_pending"
    AWAITING_APPROVAL = "awaiting_approval"
    TOOL_EXECUTING = "tool_executing"
    FINALIZING = "finalizing"
    FAILED = "failed"
    DONE = "done"


_TURN_TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    TurnState.IDLE: frozenset({TurnState.SUBMITTED}),
    TurnState.SUBMITTED: frozenset({TurnState.STREAMING, TurnState.FAILED, TurnState.DONE}),
    TurnState.STREAMING: frozenset(
        {TurnState.TOOL_CALL_PENDING, TurnState.FINALIZING, TurnState.FAILED, TurnState.DONE}
    ),
    TurnState.TOOL_CALL_PENDING: frozenset({TurnState.STREAMING, TurnState.FAILED, TurnState.DONE}),
    TurnState.FINALIZING: frozenset({TurnState.DONE}),
    TurnState.FAILED: frozenset({TurnState.DONE}),
    TurnState.DONE: frozenset(),
}

# Tool calls skip the streaming states; DONE covers success, error, skip and cancellation.
_TOOL_TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    TurnState.TOOL_CALL_PENDING: frozenset(
        {TurnState.AWAITING_APPROVAL, TurnState.TOOL_EXECUTING, TurnState.DONE}
    ),
    TurnState.AWAITING_APPROVAL: frozenset({TurnState.TOOL_EXECUTING, TurnState.DONE}),
    TurnState.TOOL_EXECUTING: frozenset({TurnState.DONE}),
    TurnState.DONE: frozenset(),
}


class TurnTracker:
    """Validates and records state transitions for one turn."""

    def __init__(self) -> None:
        self._state = TurnState.IDLE
        self._history: list[TurnState] = [TurnState.IDLE]
        self._tool_history: dict[str, list[TurnState]] = {}

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def history(self) -> tuple[TurnState, ...]:
        return tuple(self._history)

    @property
    def finished(self) -> bool:
        return self._state is TurnState.DONE

    def advance(self, target: TurnState) -> None:
        if target not in _TURN_TRANSITIONS[self._state]:
            raise ValueError(f"Illegal turn transition {self._state.value} -> {target.value}")
        self._state = target
        self._history.append(target)

    def begin_tool(self, tool_call_id: str) -> None:
        if tool_call_id in self._tool_history:
            raise ValueError(f"Tool call '{tool_call_id}' is already tracked")
        self._tool_history[tool_call_id] = [TurnState.TOOL_CALL_PENDING]

    def advance_tool(self, tool_call_id: str, target: TurnState) -> None:
        states = self._tool_history.get(tool_call_id)
        if states is None:
            raise ValueError(f"Tool call '{tool_call_id}' is not tracked")
        current = states[-1]
        if target not in _TOOL_TRANSITIONS.get(current, frozenset()):
            raise ValueError(f"Illegal tool transition {current.value} -> {target.value}")
        states.append(target)

    def tool_state(self, tool_call_id: str) -> TurnState | None:
        states = self._tool_history.get(tool_call_id)
        return states[-1] if states else None

    def tool_history(self, tool_call_id: str) -> tuple[TurnState, ...]:
        return tuple(self._tool_history.get(tool_call_id, ()))


# -----------------------------------------------------------------------------
# Inputs
# -----------------------------------------------------------------------------


class CancellationToken:
    """Cooperative cancellation signal shared between a host and one turn."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(slots=True)
class TurnOptions:
    """Per-call knobs for :meth:`TurnOrchestrator.submit_query`.

    Attributes:
        context_mode: Overrides the orchestrator's default source delivery mode.
        on_status: Receives human-readable progress messages.
        cancel: Token the host may trigger to stop the turn early.
        allow_overlap: Skip the one-active-turn-per-notebook check.
        session: Session whose approvals apply to this turn's tool calls.
    """

    context_mode: ContextMode | None = None
    on_status: StatusCallback | None = None
    cancel: CancellationToken | None = None
    allow_overlap: bool = False
    session: SessionContext = DEFAULT_SESSION


# -----------------------------------------------------------------------------
# Outputs
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class TurnResult:
    """Everything a turn produced, including how it ended."""

    turn_id: str
    notebook_id: str
    user_event: UserEvent
    assistant_event: AssistantEvent | None = None
    tool_results: list[ToolResultEvent] = field(default_factory=list)
    citation_groups: list[CitationGroup] = field(default_factory=list)
    from_cache: bool = False
    cache_reason: str | None = None
    error: str | None = None
    degraded: bool = False
    warnings: list[str] = field(default_factory=list)
    cancelled: bool = False
    states: tuple[TurnState, ...] = ()
    started_at: float = field(default_factory=time.perf_counter)
    duration_ms: float = 0.0

    @property
    def content(self) -> str:
        return self.assistant_event.content if self.assistant_event is not None else ""

    @property
    def succeeded(self) -> bool:
        return self.error is None and not self.cancelled

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for telemetry/logging."""
        return {
            "turn_id": self.turn_id,
            "notebook_id": self.notebook_id,
            "content": self.content,
            "tool_results": [event.to_dict() for event in self.tool_results],
            "citation_groups": [group.to_dict() for group in self.citation_groups],
            "from_cache": self.from_cache,
            "cache_reason": self.cache_reason,
            "error": self.error,
            "degraded": self.degraded,
            "warnings": list(self.warnings),
            "cancelled": self.cancelled,
            "states": [state.value for state in self.states],
            "duration_ms": self.duration_ms,
        }


class TurnInProgressError(RuntimeError):
    """Raised when a notebook already has an active turn."""

    def __init__(self, notebook_id: str, *, active_turn: str | None = None) -> None:
        super().__init__(f"A turn is already running for notebook '{notebook_id}'")
        self.notebook_id = notebook_id
        self.active_turn = active_turn
