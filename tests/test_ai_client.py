"""Tests for the OpenAI-compatible AI client and chat adapter."""

from __future__ import annotations

import json
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any, Iterable, Sequence, cast

import httpx
import pytest
from openai import APIConnectionError, AsyncOpenAI

from sourcewise.ai.ai_types import (
    HistoryMessage,
    Source,
    StreamCompleted,
    StreamOptions,
    TextDelta,
    ToolCallRequested,
    ToolOutcome,
    ToolOutcomeBoard,
    ToolResultReported,
)
from sourcewise.ai.client import AIClient, AIStreamEvent, ClientSettings, OpenAIChatAdapter
from sourcewise.ai.errors import ProviderError


@dataclass
class _FakeEvent:
    """Simple structure emulating ChatCompletionStreamEvent attributes."""

    type: str
    delta: str | None = None
    content: str | None = None
    name: str | None = None
    index: int | None = None
    arguments: str | None = None
    parsed_arguments: Any | None = None
    refusal: str | None = None
    chunk: Any | None = None


class _FakeStream:
    def __init__(self, events: Iterable[Any]):
        self._iterator = iter(list(events))

    def __aiter__(self) -> "_FakeStream":
        return self

    async def __anext__(self) -> _FakeEvent:
        try:
            item = next(self._iterator)
        except StopIteration as exc:
            raise StopAsyncIteration from exc
        if isinstance(item, BaseException):
            raise item
        return item


class _FakeStreamContext:
    def __init__(self, events: Iterable[Any], error: BaseException | None = None):
        self._events = list(events)
        self._error = error

    async def __aenter__(self) -> _FakeStream:
        if self._error is not None:
            raise self._error
        return _FakeStream(self._events)

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


class _FakeCompletions:
    """Replays one scripted step per ``stream`` call; exceptions fail the call."""

    def __init__(self, steps: Sequence[Any]):
        self._steps = list(steps)
        self.calls: list[dict[str, Any]] = []

    def stream(self, **kwargs: Any) -> _FakeStreamContext:
        self.calls.append(json.loads(json.dumps(kwargs)))
        step = self._steps.pop(0) if self._steps else []
        if isinstance(step, BaseException):
            return _FakeStreamContext([], error=step)
        return _FakeStreamContext(step)


class _FakeModels:
    def __init__(self, payload: list[SimpleNamespace]):
        self._payload = payload
        self.calls = 0

    async def list(self) -> SimpleNamespace:
        self.calls += 1
        return SimpleNamespace(data=self._payload)


class _FakeOpenAI(SimpleNamespace):
    closed = False

    async def close(self) -> None:
        self.closed = True


def _make_client(*steps: Any, **settings: Any) -> tuple[AIClient, _FakeCompletions]:
    completions = _FakeCompletions(steps)
    fake = _FakeOpenAI(
        chat=SimpleNamespace(completions=completions),
        models=_FakeModels([SimpleNamespace(id="test-model")]),
    )
    options = {"max_retries": 1, "retry_min_seconds": 0.0, "retry_max_seconds": 0.0, **settings}
    client = AIClient(
        ClientSettings(base_url="http://local", api_key="test", model="gpt-4o-mini", **options),
        client=cast(AsyncOpenAI, fake),
    )
    return client, completions


def _tool_call_chunk(call_id: str, index: int = 0) -> _FakeEvent:
    call = SimpleNamespace(id=call_id, index=index)
    return _FakeEvent(
        type="chunk",
        chunk=SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(tool_calls=[call]))]),
    )


def _connection_error() -> APIConnectionError:
    return APIConnectionError(request=httpx.Request("POST", "http://local/chat/completions"))


SOURCES = [
    Source(id="s1", title="Tidal Power", content="Tides move water."),
    Source(id="s2", title="Wave Farms", content="Waves carry energy."),
]


# =============================================================================
# AIClient
# =============================================================================


class TestAIClient:
    """Tests for the streaming client wrapper."""

    @pytest.mark.asyncio
    async def test_list_models_caches_results(self) -> None:
        client, _ = _make_client()

        first = await client.list_models()
        second = await client.list_models()
        refreshed = await client.list_models(force_refresh=True)

        assert first == second == refreshed == ["test-model"]
        assert client._client.models.calls == 2  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_stream_chat_normalizes_events(self) -> None:
        client, completions = _make_client(
            [
                _FakeEvent(type="content.delta", delta="Hello"),
                _tool_call_chunk("call_7"),
                _FakeEvent(
                    type="tool_calls.function.arguments.done",
                    name="readSource",
                    index=0,
                    arguments='{"sourceId": "s1"}',
                    parsed_arguments={"sourceId": "s1"},
                ),
                _FakeEvent(type="content.done", content="Hello"),
                _FakeEvent(type="unknown.event"),
            ],
            metadata={"app": "sourcewise"},
        )

        events = [
            event
            async for event in client.stream_chat(
                [{"role": "user", "content": "hi"}],
                tools=[{"type": "function", "function": {"name": "readSource"}}],
                metadata={"turn": "t1"},
            )
        ]

        assert [event.type for event in events] == [
            "content.delta",
            "tool_call.id",
            "tool_calls.function.arguments.done",
            "content.done",
        ]
        assert events[1] == AIStreamEvent(type="tool_call.id", tool_index=0, tool_call_id="call_7")
        assert events[2].parsed == {"sourceId": "s1"}
        payload = completions.calls[0]
        assert payload["model"] == "gpt-4o-mini"
        assert payload["metadata"] == {"app": "sourcewise", "turn": "t1"}
        assert payload["tools"][0]["function"]["name"] == "readSource"
        assert payload["temperature"] == pytest.approx(0.2)

    @pytest.mark.asyncio
    async def test_requires_at_least_one_message(self) -> None:
        client, _ = _make_client()

        with pytest.raises(ValueError):
            async for _ in client.stream_chat([]):
                pass

    @pytest.mark.asyncio
    async def test_retries_failures_before_first_event(self) -> None:
        client, completions = _make_client(
            _connection_error(),
            [_FakeEvent(type="content.delta", delta="ok")],
            max_retries=2,
        )

        events = [event async for event in client.stream_chat([{"role": "user", "content": "hi"}])]

        assert [event.content for event in events] == ["ok"]
        assert len(completions.calls) == 2

    @pytest.mark.asyncio
    async def test_failure_after_output_is_not_retried(self) -> None:
        client, completions = _make_client(
            [_FakeEvent(type="content.delta", delta="partial"), _connection_error()],
            [_FakeEvent(type="content.delta", delta="duplicate")],
            max_retries=3,
        )
        seen: list[str | None] = []

        with pytest.raises(ProviderError):
            async for event in client.stream_chat([{"role": "user", "content": "hi"}]):
                seen.append(event.content)

        assert seen == ["partial"]
        assert len(completions.calls) == 1

    @pytest.mark.asyncio
    async def test_aclose_closes_underlying_client(self) -> None:
        client, _ = _make_client()

        await client.aclose()

        assert client._client.closed is True  # type: ignore[attr-defined]


# =============================================================================
# OpenAIChatAdapter
# =============================================================================


async def _drive(adapter: OpenAIChatAdapter, options: StreamOptions, *, history: Sequence[HistoryMessage] = ()) -> list[Any]:
    """Collect adapter events, answering each tool request on the options' board."""

    events: list[Any] = []
    async for event in adapter.stream_chat(SOURCES, "What moves water?", history, options):
        events.append(event)
        if isinstance(event, ToolCallRequested) and options.tool_outcomes is not None:
            options.tool_outcomes.publish(
                ToolOutcome(event.tool_call_id, event.tool_name, "success", result=[{"id": "s1"}])
            )
    return events


class TestOpenAIChatAdapter:
    """Tests for turning model steps into stream events."""

    @pytest.mark.asyncio
    async def test_answer_hides_citation_block_and_parses_citations(self) -> None:
        raw = 'Tides move water [Source 1].\n---CITATIONS---\n[Source 1]: "Tides move water."\n---END CITATIONS---'
        chunks = [raw[index:index + 7] for index in range(0, len(raw), 7)]
        client, completions = _make_client([_FakeEvent(type="content.delta", delta=chunk) for chunk in chunks])
        adapter = OpenAIChatAdapter(client)

        events = await _drive(
            adapter,
            StreamOptions(context_mode="classic"),
            history=[HistoryMessage("user", "Hi"), HistoryMessage("assistant", "Hello")],
        )

        streamed = "".join(event.text for event in events if isinstance(event, TextDelta))
        assert "CITATIONS" not in streamed
        assert "-" not in streamed
        assert streamed.strip() == "Tides move water [Source 1]."
        completed = events[-1]
        assert isinstance(completed, StreamCompleted)
        assert completed.content == "Tides move water [Source 1]."
        assert [citation.source_id for citation in completed.citations] == ["s1"]
        messages = completions.calls[0]["messages"]
        assert [message["role"] for message in messages] == ["system", "user", "assistant", "user"]
        assert "Tides move water." in messages[0]["content"]
        assert messages[-1]["content"] == "What moves water?"
        assert "tools" not in completions.calls[0]

    @pytest.mark.asyncio
    async def test_tool_step_waits_for_outcome_and_replays_it(self) -> None:
        tools = [{"type": "function", "function": {"name": "listSources", "parameters": {"type": "object"}}}]
        client, completions = _make_client(
            [
                _tool_call_chunk("call_1"),
                _FakeEvent(type="tool_calls.function.arguments.done", name="listSources", index=0, arguments="{}"),
            ],
            [_FakeEvent(type="content.delta", delta="You have one source.")],
        )
        statuses: list[str] = []
        board = ToolOutcomeBoard()

        events = await _drive(
            OpenAIChatAdapter(client),
            StreamOptions(tools=tools, tool_outcomes=board, on_status=statuses.append),
        )

        assert events[0] == ToolCallRequested("call_1", "listSources", {})
        assert events[1] == ToolResultReported("call_1", "listSources", [{"id": "s1"}], None)
        assert events[-1] == StreamCompleted("You have one source.", ())
        assert len(completions.calls) == 2
        assert completions.calls[0]["tools"] == tools
        follow_up = completions.calls[1]["messages"]
        assert follow_up[-2]["role"] == "assistant"
        assert follow_up[-2]["tool_calls"][0]["id"] == "call_1"
        assert follow_up[-1] == {"role": "tool", "tool_call_id": "call_1", "content": '[{"id": "s1"}]'}
        assert statuses == ["Thinking...", "Calling listSources...", "Reading tool results...", ""]

    @pytest.mark.asyncio
    async def test_without_board_stops_after_tool_request(self) -> None:
        client, completions = _make_client(
            [_FakeEvent(type="tool_calls.function.arguments.done", name="listSources", index=0, arguments="{}")],
        )

        events = await _drive(OpenAIChatAdapter(client), StreamOptions(tools=[{"type": "function"}]))

        assert isinstance(events[0], ToolCallRequested)
        assert events[0].tool_call_id.startswith("call_")
        assert events[-1] == StreamCompleted("", ())
        assert len(completions.calls) == 1

    @pytest.mark.asyncio
    async def test_last_step_offers_no_tools(self) -> None:
        client, completions = _make_client(
            [_FakeEvent(type="tool_calls.function.arguments.done", name="listSources", index=0, arguments="{}")],
            [_FakeEvent(type="content.delta", delta="Done.")],
            max_tool_iterations=2,
        )

        await _drive(
            OpenAIChatAdapter(client),
            StreamOptions(tools=[{"type": "function"}], tool_outcomes=ToolOutcomeBoard()),
        )

        assert "tools" in completions.calls[0]
        assert "tools" not in completions.calls[1]

    @pytest.mark.asyncio
    async def test_invalid_tool_arguments_are_kept_raw(self) -> None:
        client, _ = _make_client(
            [_FakeEvent(type="tool_calls.function.arguments.done", name="readSource", index=0, arguments="{oops")],
        )

        events = await _drive(OpenAIChatAdapter(client), StreamOptions(tools=[{"type": "function"}]))

        assert events[0].args == {"raw_arguments": "{oops"}

    @pytest.mark.asyncio
    async def test_transport_failures_become_provider_errors(self) -> None:
        client, _ = _make_client(httpx.ConnectError("connection refused"))

        with pytest.raises(ProviderError, match="connection refused"):
            await _drive(OpenAIChatAdapter(client), StreamOptions())
