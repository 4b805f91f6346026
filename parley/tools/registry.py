from __future__ import annotations

from parley.llm.filters import Filter
from parley.tools.base import Tool
from parley.types import ToolNotFoundError


class ToolRegistry:
    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool, *, overwrite: bool = False) -> None:
        if tool.name in self._tools and not overwrite:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def require(self, name: str) -> Tool:
        t = self.get(name)
        if not t:
            raise ToolNotFoundError(name)
        return t

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def list(self, tool_filter: str | None = None) -> list[Tool]:
        """Registered tools sorted by name, restricted by a filter expression."""
        tools = sorted(self._tools.values(), key=lambda t: t.name)
        if tool_filter is None:
            return tools
        flt = Filter.parse(tool_filter)
        return [t for t in tools if flt.allows(t.name)]

    def to_openai_schema(self, tool_filter: str | None = None) -> list[dict]:
        return [t.to_openai_schema() for t in self.list(tool_filter)]
