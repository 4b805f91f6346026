"""Tests for ToolRegistry."""

import pytest

from parley.tools.registry import ToolRegistry
from parley.types import ToolNotFoundError
from tests.mock_tools import EchoTool, ExtraKeysTool, FailingTool, WriteTool


class TestToolRegistry:
    """Test suite for ToolRegistry."""

    def test_register_and_get(self):
        reg = ToolRegistry()
        tool = EchoTool()
        reg.register(tool)
        assert reg.get("echo") is tool
        assert "echo" in reg
        assert len(reg) == 1

    def test_get_returns_none_for_unknown(self):
        reg = ToolRegistry()
        assert reg.get("nonexistent") is None

    def test_require_raises_for_unknown(self):
        reg = ToolRegistry()
        with pytest.raises(ToolNotFoundError, match="nonexistent") as info:
            reg.require("nonexistent")
        assert info.value.name == "nonexistent"

    def test_duplicate_registration_raises_valueerror(self):
        reg = ToolRegistry()
        reg.register(EchoTool())
        with pytest.raises(ValueError, match="already registered"):
            reg.register(EchoTool())

    def test_duplicate_registration_with_overwrite(self):
        reg = ToolRegistry()
        tool1 = EchoTool()
        tool2 = EchoTool()
        reg.register(tool1)
        reg.register(tool2, overwrite=True)
        assert reg.get("echo") is tool2

    def test_unregister(self):
        reg = ToolRegistry()
        reg.register(EchoTool())
        reg.unregister("echo")
        reg.unregister("never-registered")
        assert reg.list() == []


class TestToolFilters:
    @pytest.fixture
    def reg(self):
        reg = ToolRegistry()
        reg.register(WriteTool())
        reg.register(EchoTool())
        reg.register(FailingTool())
        reg.register(ExtraKeysTool())
        return reg

    def test_list_returns_all_sorted_by_name(self, reg):
        names = [t.name for t in reg.list()]
        assert names == ["echo", "explode", "flexible", "write_file"]

    def test_exclude_all(self, reg):
        assert reg.list("-*") == []

    def test_include_all(self, reg):
        assert len(reg.list("*")) == 4
        assert len(reg.list("")) == 4

    def test_include_only(self, reg):
        assert [t.name for t in reg.list("echo, write_file")] == ["echo", "write_file"]

    def test_exclude_some(self, reg):
        assert [t.name for t in reg.list("-explode")] == ["echo", "flexible", "write_file"]
        assert [t.name for t in reg.list("*, -explode -flexible")] == ["echo", "write_file"]

    def test_exclude_all_overrides_includes(self, reg):
        assert reg.list("echo, -*") == []

    def test_filter_is_case_insensitive(self, reg):
        assert [t.name for t in reg.list("ECHO")] == ["echo"]

    def test_to_openai_schema(self, reg):
        schema = reg.to_openai_schema("echo")
        assert len(schema) == 1
        fn = schema[0]["function"]
        assert schema[0]["type"] == "function"
        assert fn["name"] == "echo"
        assert fn["parameters"]["type"] == "object"
        assert fn["parameters"]["additionalProperties"] is False

    def test_to_openai_schema_sorted(self, reg):
        names = [s["function"]["name"] for s in reg.to_openai_schema()]
        assert names == sorted(names)

    def test_empty_registry(self):
        reg = ToolRegistry()
        assert reg.list() == []
        assert reg.to_openai_schema() == []
