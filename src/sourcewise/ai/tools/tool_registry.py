"""Registry of the notebook tools a model may call.

Each entry pairs a callable with the JSON schema of its keyword arguments.
The schema is what the model sees through :meth:`ToolRegistry.to_openai_tools`
and what :class:`~sourcewise.ai.tools.executor.RegistryToolExecutor`
validates arguments against before calling the tool.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, Mapping, TypeVar

LOGGER = logging.getLogger(__name__)

ToolFn = TypeVar("ToolFn", bound=Callable[..., Any])


def object_schema(parameters: Mapping[str, Any] | None) -> dict[str, Any]:
    """Normalize a parameter description into a closed JSON object schema.

    Accepts either a full ``{"type": "object", ...}`` schema or the short
    ``{"properties": ..., "required": [...]}`` form. Unknown arguments are
    rejected unless the schema sets ``additionalProperties`` itself.
    """

    schema = copy.deepcopy(dict(parameters or {}))
    schema["type"] = "object"
    schema.setdefault("properties", {})
    schema.setdefault("additionalProperties", False)
    if not schema.get("required"):
        schema.pop("required", None)
    return schema


@dataclass(slots=True)
class NotebookTool:
    name: str
    description: str
    parameters: dict[str, Any]
    impl: Callable[..., Any]
    enabled: bool = True

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": copy.deepcopy(self.parameters),
            },
        }


class ToolRegistry:
    """Named tools, in registration order.

    Example:
        registry = ToolRegistry()

        @registry.tool(name="listSources", description="List notebook sources")
        async def list_sources() -> list[dict]:
            return await notebook.sources()
    """

    def __init__(self) -> None:
        self._tools: dict[str, NotebookTool] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[NotebookTool]:
        return iter(list(self._tools.values()))

    def __len__(self) -> int:
        return len(self._tools)

    def register(
        self,
        impl: Callable[..., Any],
        *,
        name: str | None = None,
        description: str | None = None,
        parameters: Mapping[str, Any] | None = None,
        enabled: bool = True,
    ) -> NotebookTool:
        """Add ``impl`` under ``name``, replacing any tool already registered there.

        The name defaults to the callable's ``__name__`` and the description
        to its docstring.
        """
        tool_name = name or getattr(impl, "__name__", None) or type(impl).__name__
        summary = description if description is not None else (getattr(impl, "__doc__", None) or "").strip()
        if tool_name in self._tools:
            LOGGER.warning("Replacing registered tool %s", tool_name)
        entry = NotebookTool(
            name=tool_name,
            description=summary,
            parameters=object_schema(parameters),
            impl=impl,
            enabled=enabled,
        )
        self._tools[tool_name] = entry
        LOGGER.debug("Registered tool %s (%s parameters)", tool_name, len(entry.parameters["properties"]))
        return entry

    def tool(
        self,
        *,
        name: str | None = None,
        description: str | None = None,
        parameters: Mapping[str, Any] | None = None,
    ) -> Callable[[ToolFn], ToolFn]:
        """Decorator form of :meth:`register`; returns the function unchanged."""

        def decorate(fn: ToolFn) -> ToolFn:
            self.register(fn, name=name, description=description, parameters=parameters)
            return fn

        return decorate

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> NotebookTool | None:
        return self._tools.get(name)

    def set_enabled(self, name: str, enabled: bool) -> bool:
        entry = self._tools.get(name)
        if entry is None:
            return False
        entry.enabled = enabled
        return True

    def list_tools(self, *, enabled_only: bool = True) -> list[str]:
        return [entry.name for entry in self._tools.values() if entry.enabled or not enabled_only]

    def to_openai_tools(self, *, names: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """Function definitions for enabled tools, optionally limited to ``names``."""

        wanted = None if names is None else set(names)
        return [
            entry.to_openai()
            for entry in self._tools.values()
            if entry.enabled and (wanted is None or entry.name in wanted)
        ]


__all__ = ["NotebookTool", "ToolRegistry", "object_schema"]
