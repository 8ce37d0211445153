"""Tests for turn-tagged logging."""

from __future__ import annotations

import asyncio
import logging

import pytest

from sourcewise.utils.logging import LOG_FORMAT, TurnContextFilter, current_turn, describe_turn, turn_context


def _record(message: str = "hello") -> logging.LogRecord:
    return logging.LogRecord("sourcewise.test", logging.INFO, __file__, 1, message, None, None)


def test_describe_turn_shortens_turn_id() -> None:
    assert describe_turn("nb", "0123456789abcdef") == "nb/01234567"
    assert describe_turn("", "abc") == "~/abc"


def test_filter_tags_records_inside_turn_context() -> None:
    context_filter = TurnContextFilter()
    outside = _record()
    context_filter.filter(outside)

    with turn_context("nb", "feedfacecafe") as tag:
        inside = _record()
        context_filter.filter(inside)

    assert outside.turn == "-"
    assert inside.turn == tag == "nb/feedface"
    assert current_turn() == "-"


def test_filter_keeps_explicit_turn() -> None:
    record = _record()
    record.turn = "manual"

    with turn_context("nb", "abc"):
        TurnContextFilter().filter(record)

    assert record.turn == "manual"


def test_formatted_line_includes_turn() -> None:
    record = _record("streaming")
    with turn_context("nb", "abcdef123456"):
        TurnContextFilter().filter(record)

    line = logging.Formatter(LOG_FORMAT).format(record)

    assert "[nb/abcdef12] sourcewise.test: streaming" in line


@pytest.mark.asyncio
async def test_tasks_inherit_turn_context() -> None:
    async def capture() -> str:
        await asyncio.sleep(0)
        return current_turn()

    with turn_context("nb", "task0001"):
        task = asyncio.create_task(capture())
    concurrent = await asyncio.gather(task, capture())

    assert concurrent == ["nb/task0001", "-"]
