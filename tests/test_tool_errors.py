"""Tests for the tool error types."""

from __future__ import annotations

from sourcewise.ai.tools.errors import (
    ErrorCode,
    InvalidToolArgumentsError,
    PolicyViolationError,
    ToolCancelledError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolRejectedError,
)


class TestToolError:
    """Tests for the base error."""

    def test_str_includes_code(self) -> None:
        error = ToolError(error_code="custom", message="Something broke")

        assert str(error) == "[custom] Something broke"
        assert error.status == "error"

    def test_to_dict_omits_empty_fields(self) -> None:
        error = ToolError(error_code="custom", message="m")

        assert error.to_dict() == {"error": "custom", "message": "m"}

    def test_to_dict_includes_details_and_suggestion(self) -> None:
        error = ToolError(error_code="custom", message="m", details={"k": 1}, suggestion="retry")

        assert error.to_dict() == {"error": "custom", "message": "m", "details": {"k": 1}, "suggestion": "retry"}


class TestStatuses:
    """Each error maps onto the status recorded on its tool-result event."""

    def test_policy_violation_is_skipped(self) -> None:
        error = PolicyViolationError()

        assert error.status == "skipped"
        assert error.error_code == ErrorCode.POLICY_VIOLATION

    def test_rejection(self) -> None:
        error = ToolRejectedError(request_id="req-1")

        assert error.status == "rejected"
        assert error.message == "Tool execution rejected by user"
        assert error.to_dict()["request_id"] == "req-1"

    def test_cancelled(self) -> None:
        assert ToolCancelledError().status == "cancelled"

    def test_runtime_failures_are_errors(self) -> None:
        assert ToolNotFoundError(tool_name="x").status == "error"
        assert InvalidToolArgumentsError(path="a.b").to_dict()["path"] == "a.b"
        assert ToolNotFoundError(tool_name="x").to_dict()["tool_name"] == "x"


class TestToolExecutionError:
    def test_from_exception_wraps_message(self) -> None:
        error = ToolExecutionError.from_exception(ValueError("bad input"), tool_name="readSource")

        assert error.message == "bad input"
        assert error.details == {"tool_name": "readSource", "exception": "ValueError"}

    def test_from_exception_without_message_uses_type(self) -> None:
        error = ToolExecutionError.from_exception(RuntimeError(), tool_name="readSource")

        assert error.message == "RuntimeError"


def test_subclass_defaults_can_be_overridden() -> None:
    default = ToolNotFoundError()
    custom = ToolNotFoundError(message="No such tool: listTabs", suggestion="Use listSources")

    assert default.error_code == ErrorCode.TOOL_NOT_FOUND
    assert default.message == "The requested tool is not registered"
    assert "tool_name" not in default.to_dict()
    assert custom.to_dict()["suggestion"] == "Use listSources"
    assert str(custom) == "[tool_not_found] No such tool: listTabs"
