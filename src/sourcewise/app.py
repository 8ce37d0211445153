"""Bootstrap helpers that assemble a chat runtime from persisted settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from openai import AsyncOpenAI

from .ai.client import AIClient, OpenAIChatAdapter
from .ai.orchestration import ChatEventLogger, TurnOrchestrator
from .ai.tools.executor import RegistryToolExecutor
from .ai.tools.tool_registry import ToolRegistry
from .services.connectivity import ConnectivityMonitor, HttpConnectivityProbe
from .services.settings import Settings, SettingsStore, redact_secret
from .services.storage import SQLiteStore, Store
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    """Everything a host needs to run chat turns."""

    settings: Settings
    store: Store
    client: AIClient
    adapter: OpenAIChatAdapter
    tool_registry: ToolRegistry
    orchestrator: TurnOrchestrator

    async def aclose(self) -> None:
        await self.client.aclose()
        close = getattr(self.store, "close", None)
        if callable(close):
            close()


def configure_logging(debug: bool = False, *, force: bool = False) -> Path:
    """Configure file and console logging for the process."""

    level = logging.DEBUG if debug else logging.INFO
    log_path = logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))
    return log_path


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def build_runtime(
    settings: Settings,
    *,
    tool_registry: ToolRegistry | None = None,
    store: Store | None = None,
    openai_client: AsyncOpenAI | None = None,
    connectivity: ConnectivityMonitor | None = None,
) -> Runtime:
    """Wire storage, the model adapter, tools and the orchestrator together."""

    registry = tool_registry or ToolRegistry()
    active_store = store or SQLiteStore(settings.database_path)
    client = AIClient(settings.to_client_settings(), client=openai_client)
    adapter = OpenAIChatAdapter(client)
    orchestrator = TurnOrchestrator(
        store=active_store,
        adapter=adapter,
        executor=RegistryToolExecutor(registry),
        tool_registry=registry,
        connectivity=connectivity
        or HttpConnectivityProbe(settings.connectivity_url, timeout=settings.connectivity_timeout),
        event_logger=ChatEventLogger(enabled=settings.debug_event_logging),
        context_mode="classic" if settings.context_mode == "classic" else "agentic",
        history_window=settings.history_window,
    )
    _LOGGER.info(
        "Runtime ready (model=%s, base_url=%s, api_key=%s, context_mode=%s, tools=%s)",
        settings.model,
        settings.base_url,
        redact_secret(settings.api_key) or "<unset>",
        settings.context_mode,
        len(registry.list_tools()),
    )
    return Runtime(
        settings=settings,
        store=active_store,
        client=client,
        adapter=adapter,
        tool_registry=registry,
        orchestrator=orchestrator,
    )


__all__ = ["Runtime", "build_runtime", "configure_logging", "load_settings"]
