"""Core types for the LLM subsystem: agents, metrics and interactions."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_turn_id() -> str:
    return uuid.uuid4().hex


class Agent(str, Enum):
    """Role that produced an interaction."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    CONTEXT = "context"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    ERROR = "error"


@dataclass(frozen=True)
class Metrics:
    """
    Token usage and timing for one provider call.

    Metrics are combined by summing token counts and completion time; the
    provider, model and finish reason keep the most recent non-empty value.
    ``last_effective_total_tokens`` tracks the size of the most recent call,
    which is the best estimate of how much of the context window the
    conversation currently occupies.
    """

    provider: str | None = None
    model: str | None = None
    finish_reason: str | None = None
    input_tokens_prompt: int = 0
    input_tokens_cached: int = 0
    output_tokens_reasoning: int = 0
    output_tokens_generation: int = 0
    estimated_input_tokens: int = 0
    estimated_output_tokens: int = 0
    completion_time: float = 0.0
    last_effective_total_tokens: int = 0

    @property
    def input_tokens(self) -> int:
        return self.input_tokens_prompt + self.input_tokens_cached

    @property
    def output_tokens(self) -> int:
        return self.output_tokens_reasoning + self.output_tokens_generation

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def total_estimated_tokens(self) -> int:
        return self.estimated_input_tokens + self.estimated_output_tokens

    @property
    def effective_total_tokens(self) -> int:
        return max(self.total_tokens, self.total_estimated_tokens)

    @property
    def current_tokens(self) -> int:
        """Tokens occupied by the conversation as of the latest call."""
        if self.last_effective_total_tokens > 0:
            return self.last_effective_total_tokens
        return self.effective_total_tokens

    def combine(self, other: Metrics | None) -> Metrics:
        """Return a new ``Metrics`` holding ``self`` followed by ``other``."""
        if other is None:
            return self
        last = other.current_tokens or self.last_effective_total_tokens
        return Metrics(
            provider=other.provider or self.provider,
            model=other.model or self.model,
            finish_reason=other.finish_reason or self.finish_reason,
            input_tokens_prompt=self.input_tokens_prompt + other.input_tokens_prompt,
            input_tokens_cached=self.input_tokens_cached + other.input_tokens_cached,
            output_tokens_reasoning=self.output_tokens_reasoning + other.output_tokens_reasoning,
            output_tokens_generation=self.output_tokens_generation + other.output_tokens_generation,
            estimated_input_tokens=self.estimated_input_tokens + other.estimated_input_tokens,
            estimated_output_tokens=self.estimated_output_tokens + other.estimated_output_tokens,
            completion_time=self.completion_time + other.completion_time,
            last_effective_total_tokens=last,
        )

    def context_usage(self, context_limit: int | None) -> float | None:
        """Fraction of *context_limit* in use, or ``None`` if the limit is unknown."""
        if not context_limit or context_limit <= 0:
            return None
        return round(self.current_tokens / context_limit, 4)


# ---------------------------------------------------------------------------
# Interactions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Interaction:
    """
    One atomic unit of conversation.

    Interactions are immutable; use :meth:`with_turn_id` or
    ``dataclasses.replace`` to derive a changed copy.
    """

    agent: Agent = Agent.USER
    turn_id: str = ""
    timestamp: datetime = field(default_factory=_utcnow)
    metrics: Metrics | None = None

    def with_turn_id(self, turn_id: str) -> Interaction:
        if self.turn_id == turn_id:
            return self
        return replace(self, turn_id=turn_id)

    def preview(self) -> str:
        return ""


@dataclass(frozen=True)
class TextInteraction(Interaction):
    content: str = ""
    reasoning: str = ""
    summary: bool = False

    def preview(self) -> str:
        return self.content


@dataclass(frozen=True)
class ToolCallInteraction(Interaction):
    agent: Agent = Agent.TOOL_CALL
    id: str = ""
    name: str = ""
    arguments: dict = field(default_factory=dict)

    @property
    def arguments_json(self) -> str:
        return json.dumps(self.arguments, sort_keys=True)

    def preview(self) -> str:
        return f"tool:{self.name}"


@dataclass(frozen=True)
class ToolCallFragment(Interaction):
    """
    A partial tool call as it arrives on a stream.

    Fragments carry raw argument text rather than parsed arguments, are
    keyed by ``id`` when the provider sends one and by ``index`` otherwise,
    and are never committed to history.  ``ToolCallCoalescer`` turns them
    into :class:`ToolCallInteraction` snapshots.
    """

    agent: Agent = Agent.TOOL_CALL
    index: int = 0
    id: str = ""
    name: str = ""
    arguments_text: str = ""

    def preview(self) -> str:
        return f"tool:{self.name}"


@dataclass(frozen=True)
class ToolResultInteraction(Interaction):
    agent: Agent = Agent.TOOL_RESULT
    id: str = ""
    name: str = ""
    result: dict = field(default_factory=dict)
    messages: tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.result.get("success", True) is not False

    def preview(self) -> str:
        return f"tool_result:{self.name}"


@dataclass(frozen=True)
class ErrorInteraction(Interaction):
    agent: Agent = Agent.ERROR
    content: str = ""

    def preview(self) -> str:
        return self.content

