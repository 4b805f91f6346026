"""LLM subsystem -- interactions, bodies, returns and stream coalescing."""

from parley.llm.body import EMPTY_BODY, Body, BodyBuilder
from parley.llm.coalescer import TextCoalescer, ToolCallCoalescer, coalesce_text
from parley.llm.returns import Return
from parley.llm.token_counter import TokenCounter
from parley.llm.types import (
    Agent,
    ErrorInteraction,
    Interaction,
    Metrics,
    TextInteraction,
    ToolCallFragment,
    ToolCallInteraction,
    ToolResultInteraction,
)

__all__ = [
    "Agent",
    "Body",
    "BodyBuilder",
    "EMPTY_BODY",
    "ErrorInteraction",
    "Interaction",
    "Metrics",
    "Return",
    "TextCoalescer",
    "TextInteraction",
    "TokenCounter",
    "ToolCallCoalescer",
    "ToolCallFragment",
    "ToolCallInteraction",
    "ToolResultInteraction",
    "coalesce_text",
]
