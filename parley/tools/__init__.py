"""Tools: the abstract tool, its registry, argument validation and execution."""

from parley.tools.base import Tool, normalize_schema
from parley.tools.registry import ToolRegistry
from parley.tools.runner import RegistryToolRunner
from parley.tools.validation import ToolValidator

__all__ = ["RegistryToolRunner", "Tool", "ToolRegistry", "ToolValidator", "normalize_schema"]
