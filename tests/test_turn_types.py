"""Tests for turn state tracking and turn inputs/outputs."""

from __future__ import annotations

import asyncio

import pytest

from sourcewise.ai.orchestration import CancellationToken, TurnInProgressError, TurnResult, TurnState, TurnTracker
from sourcewise.chat.events import UserEvent


class TestTurnTracker:
    """Tests for the turn state machine."""

    def test_starts_idle(self) -> None:
        tracker = TurnTracker()

        assert tracker.state is TurnState.IDLE
        assert tracker.history == (TurnState.IDLE,)
        assert not tracker.finished

    def test_records_legal_path(self) -> None:
        tracker = TurnTracker()
        for state in (
            TurnState.SUBMITTED,
            TurnState.STREAMING,
            TurnState.TOOL_CALL_PENDING,
            TurnState.STREAMING,
            TurnState.FINALIZING,
            TurnState.DONE,
        ):
            tracker.advance(state)

        assert tracker.finished
        assert tracker.history[-2:] == (TurnState.FINALIZING, TurnState.DONE)

    @pytest.mark.parametrize(
        "path",
        [
            (TurnState.STREAMING,),
            (TurnState.SUBMITTED, TurnState.FINALIZING),
            (TurnState.SUBMITTED, TurnState.STREAMING, TurnState.AWAITING_APPROVAL),
            (TurnState.SUBMITTED, TurnState.DONE, TurnState.STREAMING),
        ],
    )
    def test_rejects_illegal_transition(self, path: tuple[TurnState, ...]) -> None:
        tracker = TurnTracker()
        *legal, illegal = path
        for state in legal:
            tracker.advance(state)

        with pytest.raises(ValueError, match="Illegal turn transition"):
            tracker.advance(illegal)

    def test_failed_turn_still_finishes(self) -> None:
        tracker = TurnTracker()
        for state in (TurnState.SUBMITTED, TurnState.STREAMING, TurnState.FAILED, TurnState.DONE):
            tracker.advance(state)

        assert tracker.finished

    def test_tool_lifecycle_is_tracked_per_call(self) -> None:
        tracker = TurnTracker()
        tracker.begin_tool("c1")
        tracker.begin_tool("c2")
        tracker.advance_tool("c1", TurnState.AWAITING_APPROVAL)
        tracker.advance_tool("c1", TurnState.TOOL_EXECUTING)
        tracker.advance_tool("c1", TurnState.DONE)
        tracker.advance_tool("c2", TurnState.DONE)

        assert tracker.tool_history("c1") == (
            TurnState.TOOL_CALL_PENDING,
            TurnState.AWAITING_APPROVAL,
            TurnState.TOOL_EXECUTING,
            TurnState.DONE,
        )
        assert tracker.tool_state("c2") is TurnState.DONE
        assert tracker.tool_state("missing") is None

    def test_tool_errors(self) -> None:
        tracker = TurnTracker()
        tracker.begin_tool("c1")

        with pytest.raises(ValueError, match="already tracked"):
            tracker.begin_tool("c1")
        with pytest.raises(ValueError, match="not tracked"):
            tracker.advance_tool("c2", TurnState.DONE)
        tracker.advance_tool("c1", TurnState.DONE)
        with pytest.raises(ValueError, match="Illegal tool transition"):
            tracker.advance_tool("c1", TurnState.TOOL_EXECUTING)


class TestCancellationToken:
    """Tests for the cooperative cancellation token."""

    @pytest.mark.asyncio
    async def test_wait_returns_after_cancel(self) -> None:
        token = CancellationToken()
        waiter = asyncio.create_task(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()

        token.cancel("stop")
        await asyncio.wait_for(waiter, timeout=1)

        assert token.cancelled
        assert token.reason == "stop"

    def test_first_reason_wins(self) -> None:
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")

        assert token.reason == "first"


class TestTurnResult:
    """Tests for the turn result container."""

    def test_empty_result_has_no_content(self) -> None:
        result = TurnResult(turn_id="t1", notebook_id="nb", user_event=UserEvent("nb", "Q"))

        assert result.content == ""
        assert result.succeeded
        assert result.to_dict()["turn_id"] == "t1"

    def test_error_marks_failure(self) -> None:
        result = TurnResult(turn_id="t1", notebook_id="nb", user_event=UserEvent("nb", "Q"), error="boom")

        assert not result.succeeded

    def test_in_progress_error_names_notebook(self) -> None:
        error = TurnInProgressError("nb-9", active_turn="t1")

        assert "nb-9" in str(error)
        assert error.active_turn == "t1"
