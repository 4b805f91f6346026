"""Provider executor interface."""

from parley.llm.providers.base import ProviderExecutor, Request, ToolCallRequest

__all__ = ["ProviderExecutor", "Request", "ToolCallRequest"]
