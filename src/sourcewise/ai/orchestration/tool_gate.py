"""Permission, approval and execution gate for model-requested tool calls."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from ...services.storage import PersistenceError
from ..ai_types import ToolCallRequested, ToolOutcome
from ..tools.approvals import ApprovalRequestManager
from ..tools.errors import PolicyViolationError, ToolError, ToolExecutionError, ToolRejectedError
from ..tools.executor import ToolExecutor
from ..tools.permissions import DEFAULT_SESSION, SessionContext, ToolPermissionRegistry
from .types import TurnState

LOGGER = logging.getLogger(__name__)

StateListener = Callable[[str, TurnState], None]


@dataclass(slots=True, frozen=True)
class GateResult:
    """Outcome of one gated call plus bookkeeping for the tool-result event."""

    outcome: ToolOutcome
    duration_ms: float | None = None
    request_id: str | None = None
    persistence_error: PersistenceError | None = None


class ToolGate:
    """Decides whether a tool call runs, asks the user when needed, and runs it.

    One gate serves one turn. It remembers the approval requests it opened so
    a cancelled turn can reject whatever is still pending.
    """

    def __init__(
        self,
        permissions: ToolPermissionRegistry,
        approvals: ApprovalRequestManager,
        executor: ToolExecutor,
        *,
        session: SessionContext = DEFAULT_SESSION,
        on_state: StateListener | None = None,
    ) -> None:
        self._permissions = permissions
        self._approvals = approvals
        self._executor = executor
        self._session = session
        self._on_state = on_state
        self._open_requests: dict[str, str] = {}

    @property
    def open_requests(self) -> dict[str, str]:
        """Tool call id to approval request id for requests still awaiting a decision."""
        return dict(self._open_requests)

    async def run(self, call: ToolCallRequested) -> GateResult:
        request_id: str | None = None
        started: float | None = None
        try:
            if not self._permissions.is_visible(call.tool_name):
                raise PolicyViolationError(
                    message=f"Tool '{call.tool_name}' is not available",
                    details={"tool_name": call.tool_name},
                )
            if not self._permissions.is_auto_approved(call.tool_name, self._session):
                request_id = await self._await_approval(call)
            self._transition(call, TurnState.TOOL_EXECUTING)
            started = time.perf_counter()
            result = await self._executor.execute(call.tool_name, dict(call.args))
        except PersistenceError as exc:
            # Permission or approval records are unavailable, so the call cannot be authorized.
            LOGGER.warning("Tool %s (%s) not run; storage failed: %s", call.tool_name, call.tool_call_id, exc)
            outcome = ToolOutcome(call.tool_call_id, call.tool_name, "error", error=str(exc))
            return GateResult(outcome=outcome, request_id=request_id, persistence_error=exc)
        except ToolError as exc:
            LOGGER.debug("Tool %s (%s) finished with %s: %s", call.tool_name, call.tool_call_id, exc.status, exc)
            outcome = ToolOutcome(
                tool_call_id=call.tool_call_id,
                tool_name=call.tool_name,
                status=exc.status,  # type: ignore[arg-type]
                error=exc.message,
            )
        except Exception as exc:
            # Executors outside the registry may raise anything; the turn still records it.
            LOGGER.warning("Tool %s raised an unexpected error", call.tool_name, exc_info=True)
            wrapped = ToolExecutionError.from_exception(exc, tool_name=call.tool_name)
            outcome = ToolOutcome(call.tool_call_id, call.tool_name, "error", error=wrapped.message)
        else:
            outcome = ToolOutcome(call.tool_call_id, call.tool_name, "success", result=result)
        duration = (time.perf_counter() - started) * 1000.0 if started is not None else None
        return GateResult(outcome=outcome, duration_ms=duration, request_id=request_id)

    async def _await_approval(self, call: ToolCallRequested) -> str:
        request = self._approvals.create_request(
            call.tool_name,
            call.args,
            _approval_reason(call.tool_name, call.args),
            tool_call_id=call.tool_call_id,
        )
        self._open_requests[call.tool_call_id] = request.id
        self._transition(call, TurnState.AWAITING_APPROVAL)
        try:
            approved = await self._approvals.wait_for_decision(request.id)
        finally:
            self._open_requests.pop(call.tool_call_id, None)
        if not approved:
            raise ToolRejectedError(request_id=request.id)
        return request.id

    def _transition(self, call: ToolCallRequested, state: TurnState) -> None:
        if self._on_state is not None:
            self._on_state(call.tool_call_id, state)


def _approval_reason(tool_name: str, args: Any) -> str:
    if args:
        keys = ", ".join(sorted(str(key) for key in args))
        return f"The assistant wants to run '{tool_name}' with arguments: {keys}"
    return f"The assistant wants to run '{tool_name}'"


__all__ = ["GateResult", "StateListener", "ToolGate"]
