"""Tests for ai/tools/tool_registry.py."""

from __future__ import annotations

from sourcewise.ai.tools.tool_registry import ToolRegistry, object_schema


def read_source(sourceId: str, maxChars: int = 2000) -> str:
    """Read the content of one notebook source."""
    return f"{sourceId}:{maxChars}"


READ_SOURCE_PARAMS = {
    "properties": {
        "sourceId": {"type": "string", "description": "Source id"},
        "maxChars": {"type": "integer", "minimum": 1, "default": 2000},
    },
    "required": ["sourceId"],
}


class TestObjectSchema:
    """Tests for parameter schema normalization."""

    def test_short_form_is_closed(self) -> None:
        schema = object_schema(READ_SOURCE_PARAMS)

        assert schema["type"] == "object"
        assert schema["required"] == ["sourceId"]
        assert schema["additionalProperties"] is False
        assert "type" not in READ_SOURCE_PARAMS

    def test_empty_parameters(self) -> None:
        assert object_schema(None) == {"type": "object", "properties": {}, "additionalProperties": False}

    def test_explicit_additional_properties_is_kept(self) -> None:
        schema = object_schema({"properties": {}, "additionalProperties": True, "required": []})

        assert schema["additionalProperties"] is True
        assert "required" not in schema


class TestRegistration:
    """Tests for registering tools."""

    def test_defaults_come_from_callable(self) -> None:
        registry = ToolRegistry()

        entry = registry.register(read_source)

        assert entry.name == "read_source"
        assert entry.description == "Read the content of one notebook source."
        assert "read_source" in registry
        assert len(registry) == 1

    def test_decorator_registers_and_returns_function(self) -> None:
        registry = ToolRegistry()

        @registry.tool(name="listSources", description="List notebook sources")
        def list_sources() -> list[str]:
            return ["s1"]

        assert list_sources() == ["s1"]
        assert registry.get("listSources").impl is list_sources
        assert registry.get("listSources").description == "List notebook sources"

    def test_reregistering_replaces_entry(self) -> None:
        registry = ToolRegistry()
        registry.register(lambda: "old", name="listTabs")
        registry.register(lambda: "new", name="listTabs")

        assert len(registry) == 1
        assert registry.get("listTabs").impl() == "new"

    def test_unregister(self) -> None:
        registry = ToolRegistry()
        registry.register(read_source, name="readSource")

        assert registry.unregister("readSource") is True
        assert registry.unregister("readSource") is False
        assert registry.get("readSource") is None


class TestRendering:
    """Tests for OpenAI function definitions."""

    def test_to_openai_tools_filters_by_name_and_enabled(self) -> None:
        registry = ToolRegistry()
        registry.register(read_source, name="readSource", parameters=READ_SOURCE_PARAMS)
        registry.register(lambda: [], name="listSources", description="List sources")
        registry.register(lambda: [], name="listTabs", description="List tabs")
        registry.set_enabled("listSources", False)

        tools = registry.to_openai_tools(names=["readSource", "listSources"])

        assert [tool["function"]["name"] for tool in tools] == ["readSource"]
        assert tools[0]["type"] == "function"
        assert tools[0]["function"]["parameters"]["required"] == ["sourceId"]
        assert tools[0]["function"]["parameters"]["properties"]["maxChars"]["default"] == 2000

    def test_rendered_schema_is_a_copy(self) -> None:
        registry = ToolRegistry()
        registry.register(read_source, name="readSource", parameters=READ_SOURCE_PARAMS)

        rendered = registry.to_openai_tools()
        rendered[0]["function"]["parameters"]["properties"].clear()

        assert "sourceId" in registry.get("readSource").parameters["properties"]

    def test_enable_disable_round_trip(self) -> None:
        registry = ToolRegistry()
        registry.register(lambda: [], name="listTabs")

        registry.set_enabled("listTabs", False)
        assert registry.list_tools() == []
        assert registry.list_tools(enabled_only=False) == ["listTabs"]

        registry.set_enabled("listTabs", True)
        assert registry.list_tools() == ["listTabs"]
        assert registry.set_enabled("missing", True) is False
