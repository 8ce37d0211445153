"""Chat turn orchestration: state machine, tool gate and the orchestrator facade."""

from .event_log import ChatEventLogger, ChatEventLogRun
from .tool_gate import GateResult, ToolGate
from .turn_orchestrator import PROVIDER_FAILURES, TurnOrchestrator
from .types import (
    CancellationToken,
    TurnInProgressError,
    TurnOptions,
    TurnResult,
    TurnState,
    TurnTracker,
)

__all__ = [
    "CancellationToken",
    "ChatEventLogRun",
    "ChatEventLogger",
    "GateResult",
    "PROVIDER_FAILURES",
    "ToolGate",
    "TurnInProgressError",
    "TurnOptions",
    "TurnResult",
    "TurnState",
    "TurnTracker",
    "TurnOrchestrator",
]
