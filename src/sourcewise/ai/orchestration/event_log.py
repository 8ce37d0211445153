"""Per-turn JSONL traces for debugging chat turns.

When ``Settings.debug_event_logging`` is on, every turn writes
``events/chat-<utc timestamp>-<turn id>.jsonl`` next to the process log. The
first line records the query, sources and replayed history; tool, assistant
and a single terminal ``completion`` or ``failure`` line follow.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Any, Mapping, Sequence

from ...utils import logging as logging_utils

LOGGER = logging.getLogger(__name__)

_MAX_DEPTH = 6


def _jsonable(value: Any, depth: int = 0) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if depth >= _MAX_DEPTH:
        return repr(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item, depth + 1) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item, depth + 1) for item in value]
    return repr(value)


class ChatEventLogRun:
    """Trace of one turn. Without a ``path`` every call is a no-op."""

    def __init__(self, path: Path | None = None, *, context: Mapping[str, Any] | None = None) -> None:
        self.path = path
        self._stream: IO[str] | None = path.open("w", encoding="utf-8") if path is not None else None
        self._done = False
        self._emit("start", context or {})

    @property
    def active(self) -> bool:
        return self._stream is not None and not self._done

    def __enter__(self) -> "ChatEventLogRun":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.log_failure(message=str(exc) if exc is not None else "turn ended without completion")
        return False

    def log_tool(
        self,
        *,
        tool_call_id: str,
        tool_name: str,
        args: Mapping[str, Any],
        status: str,
        result: Any = None,
        error: str | None = None,
        duration_ms: float | None = None,
    ) -> None:
        self._emit(
            "tool",
            {
                "tool_call_id": tool_call_id,
                "tool_name": tool_name,
                "args": args,
                "status": status,
                "result": result,
                "error": error,
                "duration_ms": duration_ms,
            },
        )

    def log_assistant(
        self,
        *,
        content: str,
        citations: Sequence[Mapping[str, Any]] | None,
        tool_calls: Sequence[Mapping[str, Any]] | None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        self._emit(
            "assistant",
            {
                "content": content,
                "citations": citations or [],
                "tool_calls": tool_calls or [],
                "metadata": metadata or {},
            },
        )

    def log_completion(
        self,
        *,
        response_text: str,
        tool_call_count: int,
        from_cache: bool = False,
        warnings: Sequence[str] | None = None,
    ) -> None:
        self._finish(
            "completion",
            {
                "status": "success",
                "response_text": response_text,
                "tool_call_count": tool_call_count,
                "from_cache": from_cache,
                "warnings": warnings or [],
            },
        )

    def log_failure(self, *, message: str, details: Mapping[str, Any] | None = None) -> None:
        fields: dict[str, Any] = {"status": "failure", "message": message}
        if details:
            fields["details"] = details
        self._finish("failure", fields)

    def _finish(self, event: str, fields: Mapping[str, Any]) -> None:
        if not self.active:
            return
        self._emit(event, fields)
        self._done = True
        assert self._stream is not None
        try:
            self._stream.close()
        except OSError:  # pragma: no cover - closing a log file is best effort
            LOGGER.debug("Failed to close chat event log %s", self.path, exc_info=True)

    def _emit(self, event: str, fields: Mapping[str, Any]) -> None:
        if not self.active:
            return
        assert self._stream is not None
        line = {"event": event, "timestamp": time.time(), **_jsonable(fields)}
        self._stream.write(json.dumps(line, ensure_ascii=False) + "\n")
        self._stream.flush()


class ChatEventLogger:
    """Creates a :class:`ChatEventLogRun` per turn when enabled."""

    def __init__(self, *, enabled: bool, base_dir: Path | str | None = None) -> None:
        self.enabled = bool(enabled)
        self._base_dir = Path(base_dir) if base_dir else None

    @property
    def base_dir(self) -> Path:
        if self._base_dir is not None:
            return self._base_dir
        log_path = logging_utils.get_log_path()
        root = log_path.parent if log_path is not None else Path.home() / ".sourcewise" / "logs"
        return root / "events"

    def start_run(
        self,
        *,
        run_id: str,
        notebook_id: str,
        query: str,
        sources: Sequence[Mapping[str, Any]] | None,
        history: Sequence[Mapping[str, Any]] | None,
        metadata: Mapping[str, Any] | None = None,
    ) -> ChatEventLogRun:
        if not self.enabled:
            return ChatEventLogRun()
        context = {
            "run_id": run_id,
            "notebook_id": notebook_id,
            "query": query,
            "sources": sources or [],
            "history": history or [],
            "metadata": metadata or {},
        }
        directory = self.base_dir
        stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
        slug = "".join(ch for ch in run_id if ch.isalnum())[:12] or "turn"
        try:
            directory.mkdir(parents=True, exist_ok=True)
            run = ChatEventLogRun(directory / f"chat-{stamp}-{slug}.jsonl", context=context)
        except OSError as exc:
            LOGGER.warning("Chat event logging disabled for turn %s: %s", run_id, exc)
            return ChatEventLogRun()
        LOGGER.debug("Chat event log started: %s", run.path)
        return run


__all__ = ["ChatEventLogRun", "ChatEventLogger"]
