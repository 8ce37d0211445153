"""Turn Orchestrator: drives one user query through to a persisted answer.

The orchestrator wires the collaborators of a chat turn together:

* the :class:`~sourcewise.chat.history.ChatHistory` that persists user,
  assistant and tool-result events,
* the :class:`~sourcewise.ai.tools.permissions.ToolPermissionRegistry` and
  :class:`~sourcewise.ai.tools.approvals.ApprovalRequestManager` that gate
  tool calls,
* the :class:`~sourcewise.services.response_cache.ResponseCache` used when the
  host is offline or the model call fails,
* a :class:`~sourcewise.ai.ai_types.ModelAdapter` producing stream events and
  a :class:`~sourcewise.ai.tools.executor.ToolExecutor` running tools.

Example::

    orchestrator = TurnOrchestrator(store=store, adapter=adapter, executor=executor)
    result = await orchestrator.submit_query("nb-1", "What is X?", sources=sources)
    print(result.content)
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Sequence, assert_never

import httpx

from ..ai_types import (
    Citation,
    ContextMode,
    HistoryMessage,
    ModelAdapter,
    Source,
    StreamCompleted,
    StreamEvent,
    StreamOptions,
    TextDelta,
    ToolCallRequested,
    ToolOutcome,
    ToolOutcomeBoard,
    ToolResultReported,
)
from ..errors import ProviderError, classify_error, format_error_for_user
from ..prompts import DEFAULT_HISTORY_WINDOW
from ..tools.approvals import ApprovalError, ApprovalRequestManager, ApprovalResponse
from ..tools.errors import ToolCancelledError
from ..tools.executor import ToolExecutor
from ..tools.permissions import SessionContext, ToolPermissionRegistry
from ..tools.tool_registry import ToolRegistry
from ...chat.citations import group_citations
from ...chat.events import AssistantEvent, ChatEvent, ToolCallDescriptor, ToolResultEvent, UserEvent
from ...chat.history import ChatHistory
from ...services.connectivity import ConnectivityMonitor, StaticConnectivity
from ...services.response_cache import CachedResponse, ResponseCache, make_cache_key
from ...services.storage import PersistenceError, Store
from ...utils.logging import turn_context
from .event_log import ChatEventLogger, ChatEventLogRun
from .tool_gate import GateResult, ToolGate
from .types import CancellationToken, TurnInProgressError, TurnOptions, TurnResult, TurnState, TurnTracker

LOGGER = logging.getLogger(__name__)

__all__ = ["PROVIDER_FAILURES", "TurnOrchestrator"]

FAILED_RESPONSE_PREFIX = "Failed to generate response: "

# Failures that send a turn down the cache-fallback path.
PROVIDER_FAILURES: tuple[type[BaseException], ...] = (
    ProviderError,
    httpx.HTTPError,
    ConnectionError,
    TimeoutError,
)

_STREAM_CANCELLED = object()
_STREAM_EXHAUSTED = object()


@dataclass(slots=True)
class _Turn:
    """Mutable per-turn bookkeeping owned by the consumer loop."""

    turn_id: str
    notebook_id: str
    tracker: TurnTracker
    result: TurnResult
    board: ToolOutcomeBoard
    log_run: ChatEventLogRun
    gate: ToolGate | None = None
    parts: list[str] = field(default_factory=list)
    tool_calls: list[ToolCallDescriptor] = field(default_factory=list)
    calls: dict[str, ToolCallRequested] = field(default_factory=dict)
    tasks: dict[str, asyncio.Task[ToolResultEvent]] = field(default_factory=dict)


class TurnOrchestrator:
    """Runs chat turns for notebooks.

    Only one turn per notebook may be active at a time unless the caller
    opts out through :attr:`TurnOptions.allow_overlap`.
    """

    def __init__(
        self,
        *,
        store: Store,
        adapter: ModelAdapter,
        executor: ToolExecutor,
        tool_registry: ToolRegistry | None = None,
        permissions: ToolPermissionRegistry | None = None,
        approvals: ApprovalRequestManager | None = None,
        cache: ResponseCache | None = None,
        connectivity: ConnectivityMonitor | None = None,
        event_logger: ChatEventLogger | None = None,
        context_mode: ContextMode = "agentic",
        history_window: int = DEFAULT_HISTORY_WINDOW,
    ) -> None:
        self._history = ChatHistory(store)
        self._adapter = adapter
        self._executor = executor
        self._tool_registry = tool_registry
        self._permissions = permissions or ToolPermissionRegistry(store)
        self._approvals = approvals or ApprovalRequestManager(store)
        self._cache = cache or ResponseCache(store)
        self._connectivity = connectivity or StaticConnectivity(True)
        self._event_logger = event_logger or ChatEventLogger(enabled=False)
        self._context_mode: ContextMode = context_mode
        self._history_window = history_window
        self._active: dict[str, dict[str, CancellationToken]] = {}

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def history(self) -> ChatHistory:
        return self._history

    @property
    def permissions(self) -> ToolPermissionRegistry:
        return self._permissions

    @property
    def approvals(self) -> ApprovalRequestManager:
        return self._approvals

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_busy(self, notebook_id: str) -> bool:
        return bool(self._active.get(notebook_id))

    def cancel(self, notebook_id: str, reason: str | None = None) -> int:
        """Trigger cancellation for every active turn of ``notebook_id``."""

        tokens = list(self._active.get(notebook_id, {}).values())
        for token in tokens:
            token.cancel(reason or "cancelled by caller")
        if tokens:
            LOGGER.info("Cancelling %s active turn(s) for notebook %s", len(tokens), notebook_id)
        return len(tokens)

    def start_session(self) -> SessionContext:
        """Open a fresh approval session; its approvals never leak into others."""

        return SessionContext(session_id=uuid.uuid4().hex)

    def end_session(self, session: SessionContext) -> None:
        self._permissions.clear_session_approvals(session)
        LOGGER.debug("Ended approval session %s", session.session_id)

    def clear_history(self, notebook_id: str) -> int:
        if self.is_busy(notebook_id):
            raise TurnInProgressError(notebook_id)
        return self._history.clear_history(notebook_id)

    async def submit_query(
        self,
        notebook_id: str,
        query: str,
        history: Sequence[HistoryMessage] | None = None,
        *,
        sources: Sequence[Source] = (),
        options: TurnOptions | None = None,
    ) -> TurnResult:
        """Run one turn and return what it produced.

        Args:
            notebook_id: Notebook the turn belongs to; empty for notebook-less chat.
            query: The user's question.
            history: Prior conversation to replay. Loaded from the chat history
                when omitted.
            sources: Sources the answer may cite; also part of the cache key.
            options: Per-turn options.

        Returns:
            TurnResult describing the persisted events and how the turn ended.

        Raises:
            TurnInProgressError: Another turn is active for ``notebook_id``.
        """
        options = options or TurnOptions()
        active = self._active.setdefault(notebook_id, {})
        if active and not options.allow_overlap:
            raise TurnInProgressError(notebook_id, active_turn=next(iter(active)))

        turn_id = uuid.uuid4().hex
        cancel = options.cancel or CancellationToken()
        active[turn_id] = cancel
        try:
            with turn_context(notebook_id, turn_id):
                return await self._run_turn(turn_id, notebook_id, query, history, sources, options, cancel)
        finally:
            active.pop(turn_id, None)
            if not active:
                self._active.pop(notebook_id, None)

    # ------------------------------------------------------------------
    # Turn lifecycle
    # ------------------------------------------------------------------

    async def _run_turn(
        self,
        turn_id: str,
        notebook_id: str,
        query: str,
        history: Sequence[HistoryMessage] | None,
        sources: Sequence[Source],
        options: TurnOptions,
        cancel: CancellationToken,
    ) -> TurnResult:
        tracker = TurnTracker()
        user_event = UserEvent(notebook_id=notebook_id, content=query)
        result = TurnResult(turn_id=turn_id, notebook_id=notebook_id, user_event=user_event)
        turn = _Turn(
            turn_id=turn_id,
            notebook_id=notebook_id,
            tracker=tracker,
            result=result,
            board=ToolOutcomeBoard(),
            log_run=ChatEventLogRun(),
        )

        # Replayed history never contains the query itself; the adapter appends it.
        if history is None:
            history = self._load_history(turn)

        tracker.advance(TurnState.SUBMITTED)
        self._save(turn, user_event, "user message")

        source_ids = [source.id for source in sources]
        cache_key = make_cache_key(query, source_ids)
        mode = options.context_mode or self._context_mode
        stream_options = StreamOptions(
            tools=self._tool_definitions(mode),
            context_mode=mode,
            on_status=options.on_status,
            tool_outcomes=turn.board,
        )
        turn.gate = ToolGate(
            self._permissions,
            self._approvals,
            self._executor,
            session=options.session,
            on_state=tracker.advance_tool,
        )

        turn.log_run = self._event_logger.start_run(
            run_id=turn_id,
            notebook_id=notebook_id,
            query=query,
            sources=[{"id": source.id, "title": source.title} for source in sources],
            history=[{"role": message.role, "content": message.content} for message in history],
            metadata={"context_mode": mode, "cache_key": cache_key},
        )
        with turn.log_run:
            if not await self._connectivity.is_online():
                cached = self._lookup_cache(turn, cache_key)
                if cached is not None:
                    LOGGER.info("Offline; answering turn %s from cache %s", turn_id, cache_key)
                    stream_options.report_status("Response loaded from cache (offline)")
                    self._finish_from_cache(turn, cached, reason="offline")
                    tracker.advance(TurnState.DONE)
                    return self._close(turn)
                LOGGER.debug("Offline without a cached answer for %s; trying the model anyway", cache_key)

            tracker.advance(TurnState.STREAMING)
            stream_options.report_status("Thinking...")
            try:
                completed = await self._stream(turn, sources, query, history, stream_options, cancel)
                if completed is not None and not await self._await_tools(turn, cancel):
                    completed = None
            except PROVIDER_FAILURES as exc:
                await self._fail(turn, exc, cache_key)
                return self._close(turn)
            except BaseException:
                await self._cancel_tools(turn)
                raise

            if completed is None:
                await self._finish_cancelled(turn, cancel)
                return self._close(turn)

            tracker.advance(TurnState.FINALIZING)
            self._finalize(turn, completed, query=query, source_ids=source_ids, cache_key=cache_key)
            tracker.advance(TurnState.DONE)
            return self._close(turn)

    async def _stream(
        self,
        turn: _Turn,
        sources: Sequence[Source],
        query: str,
        history: Sequence[HistoryMessage],
        options: StreamOptions,
        cancel: CancellationToken,
    ) -> StreamCompleted | None:
        """Consume the adapter stream; ``None`` means the turn was cancelled."""

        stream = self._adapter.stream_chat(sources, query, history, options)
        try:
            while True:
                event = await self._next_event(stream, cancel)
                if event is _STREAM_CANCELLED:
                    return None
                if event is _STREAM_EXHAUSTED:
                    raise ProviderError("Model stream ended without a final response")
                completed = self._handle_event(turn, event)  # type: ignore[arg-type]
                if completed is not None:
                    return completed
        finally:
            await _aclose(stream)

    def _handle_event(self, turn: _Turn, event: StreamEvent) -> StreamCompleted | None:
        match event:
            case TextDelta(text=text):
                turn.parts.append(text)
            case ToolCallRequested():
                self._dispatch_tool(turn, event)
            case ToolResultReported():
                self._acknowledge_tool_result(turn, event)
            case StreamCompleted():
                return event
            case _:
                assert_never(event)
        return None

    async def _next_event(self, stream: AsyncIterator[StreamEvent], cancel: CancellationToken) -> Any:
        if cancel.cancelled:
            return _STREAM_CANCELLED
        pull = asyncio.ensure_future(_pull(stream))
        if await _wait_or_cancel(pull, cancel):
            return pull.result()
        pull.cancel()
        await asyncio.gather(pull, return_exceptions=True)
        return _STREAM_CANCELLED

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    def _dispatch_tool(self, turn: _Turn, call: ToolCallRequested) -> None:
        if call.tool_call_id in turn.tasks:
            LOGGER.debug("Ignoring repeated tool call %s", call.tool_call_id)
            return
        turn.tracker.advance(TurnState.TOOL_CALL_PENDING)
        turn.calls[call.tool_call_id] = call
        turn.tracker.begin_tool(call.tool_call_id)
        turn.tool_calls.append(
            ToolCallDescriptor(tool_call_id=call.tool_call_id, tool_name=call.tool_name, args=dict(call.args))
        )
        LOGGER.debug("Dispatching tool %s (%s) for turn %s", call.tool_name, call.tool_call_id, turn.turn_id)
        turn.tasks[call.tool_call_id] = asyncio.create_task(
            self._run_tool(turn, call),
            name=f"sourcewise-tool-{call.tool_name}-{call.tool_call_id}",
        )
        turn.tracker.advance(TurnState.STREAMING)

    async def _run_tool(self, turn: _Turn, call: ToolCallRequested) -> ToolResultEvent:
        assert turn.gate is not None
        try:
            gated = await turn.gate.run(call)
        except asyncio.CancelledError:
            self._record_cancelled(turn, call)
            raise
        return self._record_tool_result(turn, call, gated)

    def _record_tool_result(self, turn: _Turn, call: ToolCallRequested, gated: GateResult) -> ToolResultEvent:
        outcome = gated.outcome
        if gated.persistence_error is not None:
            self._degrade(turn, f"approval for tool {call.tool_name}", gated.persistence_error)
        event = ToolResultEvent(
            notebook_id=turn.notebook_id,
            tool_call_id=call.tool_call_id,
            tool_name=call.tool_name,
            status=outcome.status,
            result=outcome.result,
            error=outcome.error,
            duration_ms=gated.duration_ms,
        )
        self._save(turn, event, f"result of tool {call.tool_name}")
        turn.result.tool_results.append(event)
        turn.tracker.advance_tool(call.tool_call_id, TurnState.DONE)
        turn.board.publish(outcome)
        turn.log_run.log_tool(
            tool_call_id=call.tool_call_id,
            tool_name=call.tool_name,
            args=call.args,
            status=outcome.status,
            result=outcome.result,
            error=outcome.error,
            duration_ms=gated.duration_ms,
        )
        return event

    def _record_cancelled(self, turn: _Turn, call: ToolCallRequested) -> ToolResultEvent:
        cancelled = ToolCancelledError()
        outcome = ToolOutcome(call.tool_call_id, call.tool_name, "cancelled", error=cancelled.message)
        return self._record_tool_result(turn, call, GateResult(outcome=outcome))

    def _acknowledge_tool_result(self, turn: _Turn, event: ToolResultReported) -> None:
        if event.tool_call_id in turn.tasks:
            LOGGER.debug("Adapter reported result for tool call %s", event.tool_call_id)
            return
        LOGGER.warning(
            "Dropping tool result for unknown call %s (%s) in turn %s",
            event.tool_call_id,
            event.tool_name,
            turn.turn_id,
        )

    async def _await_tools(self, turn: _Turn, cancel: CancellationToken) -> bool:
        """Wait for every dispatched tool; ``False`` when cancelled first."""

        pending = [task for task in turn.tasks.values() if not task.done()]
        if not pending:
            return True
        gathered = asyncio.gather(*pending, return_exceptions=True)
        if not await _wait_or_cancel(gathered, cancel):
            return False
        for outcome in gathered.result():
            if isinstance(outcome, Exception):
                raise outcome
        return True

    async def _cancel_tools(self, turn: _Turn) -> None:
        open_requests = list(turn.gate.open_requests.values()) if turn.gate is not None else []
        outstanding = [task for task in turn.tasks.values() if not task.done()]
        for task in outstanding:
            task.cancel()
        if outstanding:
            await asyncio.gather(*outstanding, return_exceptions=True)
        # Tasks cancelled before their first step never ran their own cleanup.
        for call_id, call in turn.calls.items():
            if turn.tracker.tool_state(call_id) is not TurnState.DONE:
                self._record_cancelled(turn, call)
        turn.board.cancel_pending()
        for request_id in open_requests:
            try:
                self._approvals.respond(ApprovalResponse(request_id=request_id, approved=False))
            except ApprovalError as exc:
                LOGGER.debug("Approval %s already settled: %s", request_id, exc)
            except PersistenceError as exc:
                self._degrade(turn, f"rejection of approval {request_id}", exc)

    def _tool_definitions(self, mode: ContextMode) -> list[dict[str, Any]]:
        if mode != "agentic" or self._tool_registry is None:
            return []
        try:
            visible = self._permissions.list_visible_tool_names()
        except PersistenceError:
            LOGGER.warning("Could not read tool permissions; offering no tools", exc_info=True)
            return []
        return self._tool_registry.to_openai_tools(names=visible)

    # ------------------------------------------------------------------
    # Endings
    # ------------------------------------------------------------------

    def _finalize(
        self,
        turn: _Turn,
        completed: StreamCompleted,
        *,
        query: str,
        source_ids: Sequence[str],
        cache_key: str,
    ) -> None:
        content = completed.content or "".join(turn.parts)
        citations = list(completed.citations)
        self._persist_assistant(turn, content, citations, {})
        if turn.notebook_id:
            try:
                self._cache.put(
                    cache_key,
                    query=query,
                    source_ids=source_ids,
                    response=content,
                    citations=citations,
                    notebook_id=turn.notebook_id,
                )
            except PersistenceError as exc:
                self._degrade(turn, "response cache entry", exc)
        turn.log_run.log_completion(
            response_text=content,
            tool_call_count=len(turn.tool_calls),
            warnings=turn.result.warnings,
        )

    def _finish_from_cache(self, turn: _Turn, cached: CachedResponse, *, reason: str) -> None:
        turn.result.from_cache = True
        turn.result.cache_reason = reason
        metadata = {"from_cache": True, "cache_reason": reason, "cache_key": cached.id}
        self._persist_assistant(turn, cached.response, list(cached.citations), metadata)
        turn.log_run.log_completion(
            response_text=cached.response,
            tool_call_count=len(turn.tool_calls),
            from_cache=True,
            warnings=turn.result.warnings,
        )

    async def _fail(self, turn: _Turn, exc: BaseException, cache_key: str) -> None:
        classified = classify_error(exc)
        LOGGER.warning("Turn %s failed (%s): %s", turn.turn_id, classified.category, exc)
        turn.tracker.advance(TurnState.FAILED)
        turn.result.error = classified.technical_message
        await self._cancel_tools(turn)

        cached = self._lookup_cache(turn, cache_key)
        if cached is not None:
            LOGGER.info("Falling back to cached answer %s for turn %s", cache_key, turn.turn_id)
            self._finish_from_cache(turn, cached, reason="error")
        else:
            content = FAILED_RESPONSE_PREFIX + format_error_for_user(exc)
            metadata = {"error": True, "error_category": classified.category}
            self._persist_assistant(turn, content, [], metadata)
            turn.log_run.log_failure(
                message=classified.technical_message,
                details={"category": classified.category, "recoverable": classified.recoverable},
            )
        turn.tracker.advance(TurnState.DONE)

    async def _finish_cancelled(self, turn: _Turn, cancel: CancellationToken) -> None:
        LOGGER.info("Turn %s cancelled: %s", turn.turn_id, cancel.reason or "no reason given")
        await self._cancel_tools(turn)
        turn.result.cancelled = True
        content = "".join(turn.parts)
        self._persist_assistant(turn, content, [], {"cancelled": True})
        turn.log_run.log_failure(message="turn cancelled", details={"reason": cancel.reason})
        turn.tracker.advance(TurnState.DONE)

    def _persist_assistant(
        self,
        turn: _Turn,
        content: str,
        citations: list[Citation],
        metadata: dict[str, Any],
    ) -> None:
        event = AssistantEvent(
            notebook_id=turn.notebook_id,
            content=content,
            citations=citations,
            tool_calls=list(turn.tool_calls),
            metadata={"turn_id": turn.turn_id, **metadata},
        )
        self._save(turn, event, "assistant message")
        turn.result.assistant_event = event
        turn.result.citation_groups = group_citations(citations)
        turn.log_run.log_assistant(
            content=content,
            citations=[citation.to_dict() for citation in citations],
            tool_calls=[call.to_dict() for call in turn.tool_calls],
            metadata=event.metadata,
        )

    def _close(self, turn: _Turn) -> TurnResult:
        result = turn.result
        result.states = turn.tracker.history
        result.duration_ms = (time.perf_counter() - result.started_at) * 1000.0
        LOGGER.debug(
            "Turn %s finished in %.1fms (from_cache=%s, cancelled=%s, degraded=%s)",
            turn.turn_id,
            result.duration_ms,
            result.from_cache,
            result.cancelled,
            result.degraded,
        )
        return result

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _save(self, turn: _Turn, event: ChatEvent, what: str) -> None:
        try:
            self._history.save_event(event)
        except PersistenceError as exc:
            self._degrade(turn, what, exc)

    def _load_history(self, turn: _Turn) -> list[HistoryMessage]:
        try:
            return self._history.get_messages(turn.notebook_id, limit=self._history_window)
        except PersistenceError as exc:
            self._degrade(turn, "history lookup", exc)
            return []

    def _lookup_cache(self, turn: _Turn, cache_key: str) -> CachedResponse | None:
        try:
            return self._cache.get(cache_key)
        except PersistenceError as exc:
            self._degrade(turn, "response cache lookup", exc)
            return None

    def _degrade(self, turn: _Turn, what: str, exc: PersistenceError) -> None:
        LOGGER.warning("Turn %s degraded; %s failed: %s", turn.turn_id, what, exc)
        turn.result.degraded = True
        turn.result.warnings.append(f"{what} failed: {exc}")


# -----------------------------------------------------------------------------
# Stream helpers
# -----------------------------------------------------------------------------


async def _pull(stream: AsyncIterator[StreamEvent]) -> Any:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _STREAM_EXHAUSTED


async def _wait_or_cancel(future: asyncio.Future[Any], cancel: CancellationToken) -> bool:
    """Wait for ``future``; ``False`` when ``cancel`` fired first."""

    if cancel.cancelled:
        return False
    stop = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({future, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop.cancel()
    return future.done()


async def _aclose(stream: AsyncIterator[StreamEvent]) -> None:
    close = getattr(stream, "aclose", None)
    if close is not None:
        await close()
