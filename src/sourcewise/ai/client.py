"""Async AI client wrapper and the OpenAI-compatible model adapter."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Sequence, cast

import httpx
from openai import AsyncOpenAI, APIConnectionError, APIError, APIStatusError, RateLimitError
from openai.lib.streaming.chat import ChatCompletionStreamEvent
from openai.types.chat import ChatCompletionMessageParam, ChatCompletionToolParam
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .ai_types import (
    HistoryMessage,
    Source,
    StreamCompleted,
    StreamEvent,
    StreamOptions,
    TextDelta,
    ToolCallRequested,
    ToolResultReported,
)
from .errors import ProviderError
from .prompts import (
    CITATIONS_START,
    DEFAULT_HISTORY_WINDOW,
    build_history_messages,
    build_system_prompt,
    parse_citations,
    strip_partial_citations,
)

LOGGER = logging.getLogger(__name__)

_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    APIError,
    APIStatusError,
    APIConnectionError,
    RateLimitError,
    httpx.TimeoutException,
)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    temperature: float | None = 0.2
    max_tool_iterations: int = 8
    history_window: int = DEFAULT_HISTORY_WINDOW
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(slots=True)
class AIStreamEvent:
    """Normalized representation of streaming deltas."""

    type: str
    content: str | None = None
    parsed: Any | None = None
    tool_name: str | None = None
    tool_index: int | None = None
    tool_arguments: str | None = None
    tool_call_id: str | None = None


class AIClient:
    """Streams chat completions from an OpenAI-compatible endpoint.

    Connection-level failures are retried with exponential backoff until the
    first event arrives. After that a failure surfaces as
    :class:`ProviderError` so callers never see duplicated text.
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=dict(settings.default_headers or {}) or None,
        )
        self._models: List[str] | None = None
        self._models_lock = asyncio.Lock()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        tools: Iterable[ChatCompletionToolParam | Mapping[str, Any]] | None = None,
        temperature: float | None = None,
        metadata: Mapping[str, str] | None = None,
        **extra_params: Any,
    ) -> AsyncIterator[AIStreamEvent]:
        request = self._request(messages, tools, temperature, metadata, extra_params)
        LOGGER.debug("Streaming %s with %s message(s)", self._settings.model, len(request["messages"]))
        if self._settings.debug_logging:
            LOGGER.debug("Chat request:\n%s", json.dumps(request, ensure_ascii=False, indent=2, default=repr))

        async for attempt in AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(multiplier=self._settings.retry_min_seconds, max=self._settings.retry_max_seconds),
            retry=retry_if_exception_type(_RETRYABLE_ERRORS),
        ):
            with attempt:
                started = False
                try:
                    async with self._client.chat.completions.stream(**request) as stream:
                        async for raw in stream:
                            for event in _normalize(raw):
                                started = True
                                yield event
                except _RETRYABLE_ERRORS as exc:
                    if started:
                        raise ProviderError(str(exc), status_code=getattr(exc, "status_code", None)) from exc
                    LOGGER.debug("Chat request failed before output (attempt %s): %s", attempt.retry_state.attempt_number, exc)
                    raise
                break

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Model ids offered by the endpoint; hosts use this as a connection test."""

        async with self._models_lock:
            if self._models is None or force_refresh:
                page = await self._client.models.list()
                self._models = [item.id for item in page.data if getattr(item, "id", None)]
            return list(self._models)

    async def aclose(self) -> None:
        close = getattr(self._client, "close", None)
        if close is not None:
            outcome = close()
            if inspect.isawaitable(outcome):
                await outcome

    def _request(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        tools: Iterable[ChatCompletionToolParam | Mapping[str, Any]] | None,
        temperature: float | None,
        metadata: Mapping[str, str] | None,
        extra_params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        message_list: List[ChatCompletionMessageParam] = []
        for message in messages:
            if not isinstance(message, Mapping):
                raise TypeError("Messages must be mapping-like objects")
            message_list.append(cast(ChatCompletionMessageParam, dict(message)))
        if not message_list:
            raise ValueError("At least one message is required to start a chat")

        request: Dict[str, Any] = {"model": self._settings.model, "messages": message_list}
        tagged = {**(self._settings.metadata or {}), **(metadata or {})}
        if tagged:
            request["metadata"] = tagged
        tool_list = [dict(tool) for tool in tools or ()]
        if tool_list:
            request["tools"] = tool_list
        chosen = self._settings.temperature if temperature is None else temperature
        if chosen is not None:
            request["temperature"] = chosen
        request.update(extra_params)
        return request


def _normalize(event: ChatCompletionStreamEvent[Any]) -> list[AIStreamEvent]:
    """Reduce an SDK stream event to the fields the adapter consumes."""

    kind = getattr(event, "type", None)
    match kind:
        case "chunk":
            # Tool call ids only appear on raw chunks.
            return [
                AIStreamEvent(type="tool_call.id", tool_index=index, tool_call_id=call_id)
                for index, call_id in _chunk_tool_call_ids(event)
            ]
        case "content.delta":
            text = getattr(event, "delta", None)
            return [AIStreamEvent(type=kind, content=str(text))] if text else []
        case "content.done":
            return [AIStreamEvent(type=kind, content=getattr(event, "content", None))]
        case "refusal.done":
            return [AIStreamEvent(type=kind, content=getattr(event, "refusal", None))]
        case "tool_calls.function.arguments.done":
            return [
                AIStreamEvent(
                    type=kind,
                    tool_name=getattr(event, "name", None),
                    tool_index=getattr(event, "index", None),
                    tool_arguments=getattr(event, "arguments", None),
                    parsed=getattr(event, "parsed_arguments", None),
                    tool_call_id=getattr(event, "id", None) or getattr(event, "tool_call_id", None),
                )
            ]
    return []


def _chunk_tool_call_ids(event: Any) -> list[tuple[int, str]]:
    chunk = getattr(event, "chunk", None)
    found: list[tuple[int, str]] = []
    for choice in getattr(chunk, "choices", None) or ():
        delta = getattr(choice, "delta", None)
        for call in getattr(delta, "tool_calls", None) or ():
            call_id = getattr(call, "id", None)
            index = getattr(call, "index", None)
            if call_id and index is not None:
                found.append((int(index), str(call_id)))
    return found


# -----------------------------------------------------------------------------
# Model adapter
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class _PendingCall:
    index: int
    tool_call_id: str
    tool_name: str
    arguments: str
    args: Dict[str, Any] = field(default_factory=dict)


class _VisibleText:
    """Tracks how much answer text has been shown, hiding the citations block."""

    def __init__(self) -> None:
        self.raw = ""
        self._shown = 0

    def feed(self, delta: str) -> str:
        self.raw += delta
        return self._advance(_hold_back_marker(strip_partial_citations(self.raw)))

    def flush(self) -> str:
        return self._advance(strip_partial_citations(self.raw))

    def _advance(self, visible: str) -> str:
        if len(visible) <= self._shown:
            return ""
        delta = visible[self._shown:]
        self._shown = len(visible)
        return delta


def _hold_back_marker(text: str) -> str:
    for size in range(min(len(CITATIONS_START) - 1, len(text)), 0, -1):
        if CITATIONS_START.startswith(text[-size:]):
            return text[:-size]
    return text


class OpenAIChatAdapter:
    """Model adapter streaming grounded answers through :class:`AIClient`.

    Each model step may request tools. The adapter yields the requests,
    waits for their gated outcomes on ``options.tool_outcomes`` and replays
    them to the model as ``tool`` messages before the next step. Without an
    outcome board the adapter stops after the first step that requests tools.
    """

    def __init__(self, client: AIClient) -> None:
        self._client = client

    @property
    def client(self) -> AIClient:
        return self._client

    async def stream_chat(
        self,
        sources: Sequence[Source],
        query: str,
        history: Sequence[HistoryMessage],
        options: StreamOptions,
    ) -> AsyncIterator[StreamEvent]:
        settings = self._client.settings
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": build_system_prompt(sources, context_mode=options.context_mode)},
            *build_history_messages(history, window=settings.history_window),
            {"role": "user", "content": query},
        ]
        tools = list(options.tools)
        board = options.tool_outcomes
        max_steps = max(1, settings.max_tool_iterations)
        answer = ""

        for step in range(max_steps):
            step_tools = tools if tools and step < max_steps - 1 else None
            options.report_status("Thinking..." if step == 0 else "Reading tool results...")
            text = _VisibleText()
            pending: list[_PendingCall] = []
            async for delta in self._stream_step(messages, step_tools, text, pending):
                yield TextDelta(delta)
            tail = text.flush()
            if tail:
                yield TextDelta(tail)
            answer += text.raw

            if not pending:
                break
            for call in pending:
                options.report_status(f"Calling {call.tool_name}...")
                yield ToolCallRequested(call.tool_call_id, call.tool_name, call.args)
            if board is None:
                LOGGER.debug("No tool outcome board; ending after %s tool call(s)", len(pending))
                break

            messages.append(_assistant_tool_message(text.raw, pending))
            for call in pending:
                outcome = await board.wait(call.tool_call_id)
                yield ToolResultReported(call.tool_call_id, call.tool_name, outcome.result, outcome.error)
                messages.append(
                    {"role": "tool", "tool_call_id": call.tool_call_id, "content": outcome.as_model_content()}
                )

        clean, citations = parse_citations(answer, sources)
        options.report_status("")
        yield StreamCompleted(clean, tuple(citations))

    async def _stream_step(
        self,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None,
        text: _VisibleText,
        pending: list[_PendingCall],
    ) -> AsyncIterator[str]:
        """Yield visible text for one model step, collecting requested tool calls into ``pending``."""

        ids_by_index: dict[int, str] = {}
        try:
            async for event in self._client.stream_chat(messages, tools=tools):
                if event.type == "content.delta" and event.content:
                    delta = text.feed(event.content)
                    if delta:
                        yield delta
                elif event.type == "tool_call.id" and event.tool_index is not None and event.tool_call_id:
                    ids_by_index[event.tool_index] = event.tool_call_id
                elif event.type == "tool_calls.function.arguments.done":
                    index = event.tool_index if event.tool_index is not None else len(pending)
                    call_id = event.tool_call_id or ids_by_index.get(index) or f"call_{uuid.uuid4().hex[:12]}"
                    pending.append(
                        _PendingCall(
                            index=index,
                            tool_call_id=call_id,
                            tool_name=event.tool_name or "",
                            arguments=event.tool_arguments or "",
                            args=_coerce_arguments(event.parsed, event.tool_arguments),
                        )
                    )
        except ProviderError:
            raise
        except (APIError, httpx.HTTPError) as exc:
            raise ProviderError(str(exc), status_code=getattr(exc, "status_code", None)) from exc


def _coerce_arguments(parsed: Any, raw: str | None) -> Dict[str, Any]:
    if isinstance(parsed, Mapping):
        return dict(parsed)
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        LOGGER.warning("Tool arguments were not valid JSON: %.200s", raw)
        return {"raw_arguments": raw}
    return dict(decoded) if isinstance(decoded, Mapping) else {"value": decoded}


def _assistant_tool_message(content: str, calls: Sequence[_PendingCall]) -> dict[str, Any]:
    return {
        "role": "assistant",
        "content": content or None,
        "tool_calls": [
            {
                "id": call.tool_call_id,
                "type": "function",
                "function": {"name": call.tool_name, "arguments": call.arguments or json.dumps(call.args)},
            }
            for call in calls
        ],
    }


__all__ = [
    "AIClient",
    "AIStreamEvent",
    "ClientSettings",
    "OpenAIChatAdapter",
]
