"""Standardized error types for notebook tools.

Tool failures never abort a chat turn: the gate converts every
:class:`ToolError` into a ``tool-result`` chat event. Each subclass fixes the
error code, the default wording and the result status recorded on that event.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


class ErrorCode:
    """Machine-readable codes reported in tool results."""

    TOOL_NOT_FOUND = "tool_not_found"
    INVALID_PARAMETER = "invalid_parameter"
    POLICY_VIOLATION = "policy_violation"
    REJECTED_BY_USER = "rejected_by_user"
    EXECUTION_FAILED = "execution_failed"
    OPERATION_CANCELLED = "operation_cancelled"
    INTERNAL_ERROR = "internal_error"


@dataclass(eq=False)
class ToolError(Exception):
    """Base class for tool failures.

    Any of ``error_code``, ``message`` or ``suggestion`` left empty falls back
    to the subclass default.
    """

    error_code: str = ""
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    code: ClassVar[str] = ErrorCode.INTERNAL_ERROR
    default_message: ClassVar[str] = "Tool failed"
    default_suggestion: ClassVar[str] = ""
    status: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        self.error_code = self.error_code or self.code
        self.message = self.message or self.default_message
        self.suggestion = self.suggestion or self.default_suggestion
        Exception.__init__(self, self.message)

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def context(self) -> dict[str, Any]:
        """Subclass-specific identifiers merged into :meth:`to_dict`."""

        return {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        if self.suggestion:
            payload["suggestion"] = self.suggestion
        payload.update((key, value) for key, value in self.context().items() if value)
        return payload


@dataclass(eq=False)
class ToolNotFoundError(ToolError):
    tool_name: str | None = None

    code = ErrorCode.TOOL_NOT_FOUND
    default_message = "The requested tool is not registered"
    default_suggestion = "Only call tools listed in the request"

    def context(self) -> dict[str, Any]:
        return {"tool_name": self.tool_name}


@dataclass(eq=False)
class InvalidToolArgumentsError(ToolError):
    """Arguments failed JSON Schema validation; ``path`` locates the first issue."""

    path: str | None = None

    code = ErrorCode.INVALID_PARAMETER
    default_message = "Tool arguments do not match the tool schema"
    default_suggestion = "Check the parameter names and types and retry"

    def context(self) -> dict[str, Any]:
        return {"path": self.path}


@dataclass(eq=False)
class PolicyViolationError(ToolError):
    """The model asked for a tool the permission policy hides or does not know."""

    code = ErrorCode.POLICY_VIOLATION
    default_message = "Tool is not available in this notebook"
    default_suggestion = "Answer without this tool"
    status = "skipped"


@dataclass(eq=False)
class ToolRejectedError(ToolError):
    request_id: str | None = None

    code = ErrorCode.REJECTED_BY_USER
    default_message = "Tool execution rejected by user"
    default_suggestion = "Continue without the tool output"
    status = "rejected"

    def context(self) -> dict[str, Any]:
        return {"request_id": self.request_id}


@dataclass(eq=False)
class ToolExecutionError(ToolError):
    code = ErrorCode.EXECUTION_FAILED
    default_message = "Tool execution failed"

    @classmethod
    def from_exception(cls, exc: BaseException, *, tool_name: str) -> "ToolExecutionError":
        return cls(
            message=str(exc) or type(exc).__name__,
            details={"tool_name": tool_name, "exception": type(exc).__name__},
        )


@dataclass(eq=False)
class ToolCancelledError(ToolError):
    """Recorded for tool calls still running when their turn was cancelled."""

    code = ErrorCode.OPERATION_CANCELLED
    default_message = "Tool call cancelled"
    status = "cancelled"


__all__ = [
    "ErrorCode",
    "InvalidToolArgumentsError",
    "PolicyViolationError",
    "ToolCancelledError",
    "ToolError",
    "ToolExecutionError",
    "ToolNotFoundError",
    "ToolRejectedError",
]
