"""Approval requests for gated tool calls.

Requests are persisted in the ``approval_requests`` collection so the UI can
list them independently of the turn that opened them. A turn waiting on a
decision awaits an in-process future; :meth:`ApprovalRequestManager.respond`
records the decision durably first and then wakes the waiter.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Literal, Mapping

from ...services.storage import APPROVAL_REQUESTS, Store
from .permissions import DEFAULT_SESSION, ApprovalScope, SessionContext, ToolPermissionRegistry

LOGGER = logging.getLogger(__name__)

ApprovalStatus = Literal["pending", "approved", "rejected"]
PendingListener = Callable[["ApprovalRequest"], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


class ApprovalError(RuntimeError):
    """Base class for approval bookkeeping errors."""


class ApprovalNotFoundError(ApprovalError):
    def __init__(self, request_id: str) -> None:
        super().__init__(f"Approval request '{request_id}' does not exist")
        self.request_id = request_id


class ApprovalAlreadyResolvedError(ApprovalError):
    def __init__(self, request_id: str, status: str) -> None:
        super().__init__(f"Approval request '{request_id}' is already {status}")
        self.request_id = request_id
        self.status = status


@dataclass(slots=True)
class ApprovalRequest:
    """One authorization decision for a tool call."""

    tool_name: str
    args: Dict[str, Any] = field(default_factory=dict)
    reason: str = ""
    tool_call_id: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: int = field(default_factory=_now_ms)
    status: ApprovalStatus = "pending"
    scope: ApprovalScope | None = None
    resolved_at: int | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "args": dict(self.args),
            "reason": self.reason,
            "timestamp": self.timestamp,
            "status": self.status,
            "scope": self.scope,
            "resolved_at": self.resolved_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ApprovalRequest":
        return cls(
            id=str(payload["id"]),
            tool_call_id=payload.get("tool_call_id"),
            tool_name=str(payload.get("tool_name", "")),
            args=dict(payload.get("args") or {}),
            reason=str(payload.get("reason", "")),
            timestamp=int(payload.get("timestamp") or 0),
            status=payload.get("status", "pending"),
            scope=payload.get("scope"),
            resolved_at=payload.get("resolved_at"),
        )


@dataclass(slots=True, frozen=True)
class ApprovalResponse:
    """A decision reported by the UI for one request."""

    request_id: str
    approved: bool
    scope: ApprovalScope = "once"
    timestamp: int = field(default_factory=_now_ms)


class ApprovalRequestManager:
    """Creates, lists and resolves approval requests."""

    def __init__(self, store: Store) -> None:
        self._store = store
        self._waiters: dict[str, asyncio.Future[bool]] = {}
        self._listeners: list[PendingListener] = []

    # ------------------------------------------------------------------
    # Creation & lookup
    # ------------------------------------------------------------------

    def create_request(
        self,
        tool_name: str,
        args: Mapping[str, Any],
        reason: str,
        *,
        tool_call_id: str | None = None,
    ) -> ApprovalRequest:
        request = ApprovalRequest(
            tool_name=tool_name,
            args=dict(args),
            reason=reason,
            tool_call_id=tool_call_id,
        )
        self._store.put(APPROVAL_REQUESTS, request.to_dict())
        LOGGER.info("Approval requested for %s (request=%s)", tool_name, request.id)
        self._notify_pending(request)
        return request

    def get(self, request_id: str) -> ApprovalRequest | None:
        record = self._store.get(APPROVAL_REQUESTS, request_id)
        return ApprovalRequest.from_dict(record) if record is not None else None

    def list_pending(self) -> list[ApprovalRequest]:
        records = self._store.get_by_index(APPROVAL_REQUESTS, "status", "pending")
        requests = [ApprovalRequest.from_dict(record) for record in records]
        requests.sort(key=lambda request: (request.timestamp, request.id))
        return requests

    def subscribe(self, listener: PendingListener) -> Callable[[], None]:
        """Register ``listener`` for newly created requests; returns an unsubscribe callable."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify_pending(self, request: ApprovalRequest) -> None:
        for listener in list(self._listeners):
            try:
                listener(request)
            except Exception:  # pragma: no cover - UI listener failures are not ours to raise
                LOGGER.debug("Pending approval listener failed", exc_info=True)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def respond(self, response: ApprovalResponse) -> ApprovalRequest:
        request = self.get(response.request_id)
        if request is None:
            raise ApprovalNotFoundError(response.request_id)
        if not request.is_pending:
            raise ApprovalAlreadyResolvedError(request.id, request.status)
        request.status = "approved" if response.approved else "rejected"
        request.scope = response.scope if response.approved else None
        request.resolved_at = response.timestamp
        self._store.put(APPROVAL_REQUESTS, request.to_dict())
        LOGGER.info("Approval request %s for %s %s", request.id, request.tool_name, request.status)
        self._wake(request.id, response.approved)
        return request

    def respond_and_apply(
        self,
        response: ApprovalResponse,
        registry: ToolPermissionRegistry,
        session: SessionContext = DEFAULT_SESSION,
    ) -> ApprovalRequest:
        """Resolve a request and, when approved, apply its scope to the policy."""

        request = self.respond(response)
        if response.approved:
            registry.add_approval(request.tool_name, response.scope, session)
        return request

    def approve_all(
        self,
        registry: ToolPermissionRegistry | None = None,
        session: SessionContext = DEFAULT_SESSION,
        *,
        scope: ApprovalScope = "once",
    ) -> list[ApprovalRequest]:
        """Approve every request pending right now.

        A ``session`` or ``forever`` scope is applied to ``registry`` for each
        approved tool, exactly as :meth:`respond_and_apply` does.

        Raises:
            ValueError: ``scope`` outlives the request but no ``registry`` was given.
        """
        if scope != "once" and registry is None:
            raise ValueError(f"Approval scope '{scope}' needs a permission registry to apply it")
        resolved = self._resolve_snapshot(approved=True, scope=scope)
        if registry is not None:
            for request in resolved:
                registry.add_approval(request.tool_name, scope, session)
        return resolved

    def reject_all(self) -> list[ApprovalRequest]:
        return self._resolve_snapshot(approved=False)

    def _resolve_snapshot(self, *, approved: bool, scope: ApprovalScope = "once") -> list[ApprovalRequest]:
        snapshot = self.list_pending()
        resolved: list[ApprovalRequest] = []
        for request in snapshot:
            try:
                resolved.append(self.respond(ApprovalResponse(request.id, approved, scope)))
            except ApprovalAlreadyResolvedError:
                LOGGER.debug("Request %s resolved concurrently; skipping", request.id)
        return resolved

    # ------------------------------------------------------------------
    # Rendezvous
    # ------------------------------------------------------------------

    async def wait_for_decision(self, request_id: str) -> bool:
        """Suspend until ``request_id`` is resolved; returns ``True`` when approved.

        There is no timeout. Cancelling the awaiting task leaves the request
        pending for whoever resolves it next.
        """

        request = self.get(request_id)
        if request is None:
            raise ApprovalNotFoundError(request_id)
        if not request.is_pending:
            return request.status == "approved"
        future = self._waiters.get(request_id)
        if future is None or future.done():
            future = asyncio.get_running_loop().create_future()
            self._waiters[request_id] = future
        try:
            return await asyncio.shield(future)
        finally:
            if future.done():
                self._waiters.pop(request_id, None)

    def _wake(self, request_id: str, approved: bool) -> None:
        future = self._waiters.pop(request_id, None)
        if future is not None and not future.done():
            future.set_result(approved)


__all__ = [
    "ApprovalAlreadyResolvedError",
    "ApprovalError",
    "ApprovalNotFoundError",
    "ApprovalRequest",
    "ApprovalRequestManager",
    "ApprovalResponse",
    "ApprovalStatus",
]
