"""Tool execution behind the permission gate."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Iterable, Mapping, Protocol

import jsonschema
from jsonschema import Draft202012Validator

from .errors import InvalidToolArgumentsError, ToolError, ToolExecutionError, ToolNotFoundError
from .tool_registry import ToolRegistry

LOGGER = logging.getLogger(__name__)

MAX_SCHEMA_ERRORS = 5


class ToolExecutor(Protocol):
    """Runs a tool that already passed the permission/approval gate."""

    async def execute(self, tool_name: str, args: Mapping[str, Any]) -> Any:
        """Return the tool's result or raise :class:`ToolError`."""
        ...


class RegistryToolExecutor:
    """Executes registered callables after validating their arguments."""

    def __init__(self, registry: ToolRegistry, *, validate_arguments: bool = True) -> None:
        self._registry = registry
        self._validate_arguments = validate_arguments
        self._validators: dict[str, Draft202012Validator] = {}

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def execute(self, tool_name: str, args: Mapping[str, Any]) -> Any:
        registration = self._registry.get(tool_name)
        if registration is None or not registration.enabled:
            raise ToolNotFoundError(
                message=f"Tool '{tool_name}' is not registered or disabled.",
                tool_name=tool_name,
            )
        if self._validate_arguments:
            self._validate(tool_name, registration.parameters, args)

        LOGGER.debug("Executing tool %s", tool_name)
        try:
            result = registration.impl(**dict(args))
            if inspect.isawaitable(result):
                result = await result
        except ToolError:
            raise
        except Exception as exc:
            LOGGER.warning("Tool %s failed: %s", tool_name, exc)
            raise ToolExecutionError.from_exception(exc, tool_name=tool_name) from exc
        return result

    def _validate(self, tool_name: str, schema: Mapping[str, Any], args: Mapping[str, Any]) -> None:
        validator = self._validators.get(tool_name)
        if validator is None:
            try:
                validator = Draft202012Validator(schema)
            except jsonschema.exceptions.SchemaError as exc:
                raise ToolExecutionError(
                    message=f"Tool '{tool_name}' has an invalid schema: {exc.message}",
                ) from exc
            self._validators[tool_name] = validator

        issues = list(_take(validator.iter_errors(dict(args)), MAX_SCHEMA_ERRORS))
        if not issues:
            return
        first = issues[0]
        path = _format_schema_path(first.absolute_path)
        messages = [f"{_format_schema_path(issue.absolute_path) or '$'}: {issue.message}" for issue in issues]
        raise InvalidToolArgumentsError(
            message=f"Invalid arguments for '{tool_name}': {first.message}",
            details={"errors": messages},
            path=path or None,
        )


def _take(iterable: Iterable[Any], limit: int) -> Iterable[Any]:
    for index, item in enumerate(iterable):
        if index >= limit:
            return
        yield item


def _format_schema_path(path: Iterable[Any]) -> str:
    parts: list[str] = []
    for part in path:
        if isinstance(part, int):
            parts.append(f"[{part}]")
        else:
            parts.append(f".{part}" if parts else str(part))
    return "".join(parts)


__all__ = ["RegistryToolExecutor", "ToolExecutor"]
