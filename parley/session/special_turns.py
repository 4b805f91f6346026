"""
Special turns: one-off provider calls that run outside the normal loop.

A special turn sends its own interactions (not the conversation history)
to the provider, under its own timeout, and then folds the result back into
the history according to a :class:`PersistenceStrategy`.  Greetings and
context summarization are both special turns.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable

from parley.llm.body import Body, BodyBuilder
from parley.llm.filters import EXCLUDE_ALL
from parley.llm.types import (
    Agent,
    Interaction,
    TextInteraction,
    ToolCallInteraction,
    ToolResultInteraction,
)

GREETING_TIMEOUT = 30.0
SUMMARIZE_TIMEOUT = 60.0
TOOL_RESULT_PREVIEW = 500


class PersistenceStrategy(str, Enum):
    """How a special turn's result is merged into history."""

    PERSIST_RESULT = "persist_result"
    PERSIST_ALL = "persist_all"
    EPHEMERAL = "ephemeral"
    REPLACE_ABOVE = "replace_above"


@dataclass(frozen=True)
class InteractionFilter:
    """
    Selects interactions by agent.

    ``allow`` (when set) whitelists agents; ``block`` always wins.
    """

    allow: frozenset[Agent] | None = None
    block: frozenset[Agent] = frozenset()

    @classmethod
    def allow_all(cls) -> InteractionFilter:
        return cls()

    @classmethod
    def allow_only(cls, *agents: Agent) -> InteractionFilter:
        return cls(allow=frozenset(agents))

    @classmethod
    def block_agents(cls, *agents: Agent) -> InteractionFilter:
        return cls(block=frozenset(agents))

    @classmethod
    def preserve_system_context(cls) -> InteractionFilter:
        """Keeps only system and context interactions."""
        return cls.allow_only(Agent.SYSTEM, Agent.CONTEXT)

    def allows(self, interaction: Interaction) -> bool:
        if interaction.agent in self.block:
            return False
        return self.allow is None or interaction.agent in self.allow


@dataclass
class SpecialTurnConfig:
    """
    Parameters
    ----------
    turn_type:
        Free-form label used in logs (``"greeting"``, ``"summarize"``).
    interactions:
        What the provider sees instead of the conversation history.
    model:
        Model override; the session's model when ``None``.
    timeout:
        Seconds before the call is cancelled; ``None`` for no limit.
    persistence:
        How the result is merged into history.
    persistence_filter:
        For ``REPLACE_ABOVE``, which interactions above the anchor survive.
    """

    turn_type: str
    interactions: list[Interaction] = field(default_factory=list)
    model: str | None = None
    tool_filter: str = EXCLUDE_ALL
    context_filter: str = EXCLUDE_ALL
    json_output_schema: str | None = None
    timeout: float | None = None
    persistence: PersistenceStrategy = PersistenceStrategy.PERSIST_RESULT
    persistence_filter: InteractionFilter = field(default_factory=InteractionFilter.allow_all)
    metadata: dict = field(default_factory=dict)

    @property
    def is_summarize(self) -> bool:
        return bool(self.metadata.get("is_summarize"))

    def body(self) -> Body:
        return (
            BodyBuilder.create()
            .with_tool_filter(self.tool_filter)
            .with_context_filter(self.context_filter)
            .with_json_output_schema(self.json_output_schema)
            .add_range(self.interactions)
            .build()
        )


def apply_persistence(
    history: Body,
    config: SpecialTurnConfig,
    result: Iterable[Interaction],
    anchor: int | None = None,
) -> Body:
    """
    Merge a special turn's *result* into *history*.

    For ``REPLACE_ABOVE`` everything before *anchor* is replaced by the
    interactions the persistence filter keeps followed by the result;
    *anchor* and everything after it is kept.  Without an anchor the whole
    history is replaced.  Merged-in interactions are marked new; existing
    markers outside the replaced range are kept.
    """
    result = list(result)
    if config.is_summarize:
        result = [
            replace(i, summary=True) if isinstance(i, TextInteraction) else i
            for i in result
        ]

    builder = BodyBuilder.from_body(history)
    strategy = config.persistence

    if strategy == PersistenceStrategy.EPHEMERAL:
        return builder.build()
    if strategy == PersistenceStrategy.PERSIST_RESULT:
        return builder.add_range(result).build()
    if strategy == PersistenceStrategy.PERSIST_ALL:
        return builder.add_range(config.interactions).add_range(result).build()

    end = len(history.interactions) if anchor is None else anchor
    kept = [i for i in history.interactions[:end] if config.persistence_filter.allows(i)]
    builder.replace_range(0, end, kept, mark_new=False)
    builder.replace_range(len(kept), len(kept), result)
    return builder.build()


# ---------------------------------------------------------------------------
# Built-in special turns
# ---------------------------------------------------------------------------


GREETING_USER_PROMPT = (
    "Please send a short friendly greeting to start the chat. "
    "Keep it to one or two sentences."
)

SUMMARIZER_SYSTEM_PROMPT = (
    "You are a helpful assistant that writes concise, accurate summaries of "
    "conversations. Preserve all essential information while using far fewer "
    "tokens. Do not add a title or section headers; lists are fine. "
    "Format the summary as markdown."
)


def greeting_turn(system_prompt: str | None = None, model: str | None = None) -> SpecialTurnConfig:
    """A tool-free greeting shaped by the conversation's system prompt."""
    if system_prompt:
        prompt = (
            "You are a chat assistant. The user has provided the following "
            f"instructions:\n---\n{system_prompt}\n---\n"
            "Based on these instructions, write a brief, friendly greeting that "
            "welcomes the user and steers the conversation toward your area of "
            "expertise. Be warm and professional and avoid technical detail. "
            "One or two sentences maximum."
        )
    else:
        prompt = (
            "Write a brief, friendly greeting that welcomes the user to a "
            "general purpose chat. One or two sentences maximum."
        )
    return SpecialTurnConfig(
        turn_type="greeting",
        interactions=[
            TextInteraction(agent=Agent.SYSTEM, content=prompt),
            TextInteraction(agent=Agent.USER, content=GREETING_USER_PROMPT),
        ],
        model=model,
        timeout=GREETING_TIMEOUT,
        persistence=PersistenceStrategy.PERSIST_RESULT,
        metadata={"is_greeting": True},
    )


def _render_value(value: object) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, default=str)


def render_transcript(interactions: Iterable[Interaction]) -> str:
    """Plain-text transcript of *interactions* for the summarizer."""
    lines: list[str] = []
    for interaction in interactions:
        if interaction.agent in (Agent.SYSTEM, Agent.CONTEXT):
            continue
        if isinstance(interaction, TextInteraction):
            lines.append(f"[{interaction.agent.value}]: {interaction.content}")
        elif isinstance(interaction, ToolCallInteraction):
            lines.append(f"[Tool Call]: {interaction.name}")
            lines.append(f"Arguments: {interaction.arguments_json}")
        elif isinstance(interaction, ToolResultInteraction):
            lines.append(f"[Tool Result]: {interaction.name}")
            text = _render_value(interaction.result)
            if len(text) > TOOL_RESULT_PREVIEW:
                text = text[:TOOL_RESULT_PREVIEW] + "... [truncated]"
            lines.append(f"Result: {text}")
        else:
            continue
        lines.append("")
    return "\n".join(lines)


def summarize_turn(history: Iterable[Interaction], model: str | None = None) -> SpecialTurnConfig:
    """
    Summarize *history* into a single assistant message.

    The result replaces everything above the last user message except
    system and context interactions.
    """
    prompt = "\n".join(
        [
            "Please summarize the following conversation. Capture:",
            "1. The key topics discussed",
            "2. Decisions or conclusions reached",
            "3. Pending questions or tasks",
            "4. Context needed to continue the conversation",
            "",
            "Write a coherent narrative an AI assistant can use to keep helping "
            "the user. Be concise but do not lose critical information.",
            "",
            "---",
            "CONVERSATION TO SUMMARIZE:",
            "---",
            "",
            render_transcript(history),
            "---",
            "END OF CONVERSATION",
            "---",
        ]
    )
    return SpecialTurnConfig(
        turn_type="summarize",
        interactions=[
            TextInteraction(agent=Agent.SYSTEM, content=SUMMARIZER_SYSTEM_PROMPT),
            TextInteraction(agent=Agent.USER, content=prompt),
        ],
        model=model,
        timeout=SUMMARIZE_TIMEOUT,
        persistence=PersistenceStrategy.REPLACE_ABOVE,
        persistence_filter=InteractionFilter.preserve_system_context(),
        metadata={"is_summarize": True},
    )
