"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from sourcewise.ai.ai_types import Source
from sourcewise.ai.tools.approvals import ApprovalRequestManager
from sourcewise.ai.tools.permissions import ToolPermissionRegistry
from sourcewise.chat.history import ChatHistory
from sourcewise.services.response_cache import ResponseCache
from sourcewise.services.storage import MemoryStore


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def permissions(store: MemoryStore) -> ToolPermissionRegistry:
    return ToolPermissionRegistry(store)


@pytest.fixture
def approvals(store: MemoryStore) -> ApprovalRequestManager:
    return ApprovalRequestManager(store)


@pytest.fixture
def cache(store: MemoryStore) -> ResponseCache:
    return ResponseCache(store)


@pytest.fixture
def history(store: MemoryStore) -> ChatHistory:
    return ChatHistory(store)


@pytest.fixture
def sources() -> list[Source]:
    return [
        Source(id="s1", title="Tidal Power", url="https://example.com/tides", content="Tides move water."),
        Source(id="s2", title="Wave Farms", url="https://example.com/waves", content="Waves carry energy."),
    ]
