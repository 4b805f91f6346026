"""
Immutable conversation body and its builder.

A :class:`Body` is a snapshot: an ordered tuple of interactions, the indices
that were added or replaced by the mutation that produced it ("new"
markers), the tool/context filter expressions and an optional JSON output
schema.  Bodies are never modified; :class:`BodyBuilder` copies a body,
applies changes and builds a fresh snapshot, so a reader holding an older
snapshot never observes a half-applied update.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from functools import reduce
from typing import Iterable, Iterator

from parley.llm.filters import EXCLUDE_ALL
from parley.llm.types import (
    Agent,
    ErrorInteraction,
    Interaction,
    Metrics,
    TextInteraction,
    ToolCallInteraction,
    ToolResultInteraction,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Body:
    interactions: tuple[Interaction, ...] = ()
    new_indices: tuple[int, ...] = ()
    tool_filter: str = EXCLUDE_ALL
    context_filter: str = EXCLUDE_ALL
    json_output_schema: str | None = None

    # ------------------------------------------------------------------
    # Basic queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self.interactions)

    def __iter__(self) -> Iterator[Interaction]:
        return iter(self.interactions)

    @property
    def requires_json_output(self) -> bool:
        return bool(self.json_output_schema)

    @property
    def metrics(self) -> Metrics:
        """Metrics aggregated over every interaction in history order."""
        return reduce(
            lambda acc, i: acc.combine(i.metrics), self.interactions, Metrics()
        )

    @property
    def messages(self) -> list[str]:
        """De-duplicated diagnostic messages attached to tool results."""
        seen: set[str] = set()
        combined: list[str] = []
        for interaction in self.interactions:
            if isinstance(interaction, ToolResultInteraction):
                for msg in interaction.messages:
                    if msg and msg not in seen:
                        seen.add(msg)
                        combined.append(msg)
        return combined

    def new_interactions(self) -> list[Interaction]:
        return [self.interactions[i] for i in self.new_indices]

    def last_interaction(self, agent: Agent | None = None) -> Interaction | None:
        for interaction in reversed(self.interactions):
            if agent is None or interaction.agent == agent:
                return interaction
        return None

    def last_text(self) -> str | None:
        for interaction in reversed(self.interactions):
            if isinstance(interaction, TextInteraction):
                return interaction.content
        return None

    def turn_metrics(self, turn_id: str) -> Metrics:
        if not turn_id:
            return Metrics()
        return reduce(
            lambda acc, i: acc.combine(i.metrics),
            (i for i in self.interactions if i.turn_id == turn_id),
            Metrics(),
        )

    # ------------------------------------------------------------------
    # Tool-call bookkeeping
    # ------------------------------------------------------------------

    def tool_calls(self) -> list[ToolCallInteraction]:
        return [i for i in self.interactions if isinstance(i, ToolCallInteraction)]

    def tool_results(self) -> list[ToolResultInteraction]:
        return [i for i in self.interactions if isinstance(i, ToolResultInteraction)]

    def find_tool_call(self, call_id: str) -> ToolCallInteraction | None:
        for interaction in self.interactions:
            if isinstance(interaction, ToolCallInteraction) and interaction.id == call_id:
                return interaction
        return None

    def pending_tool_calls(self) -> list[ToolCallInteraction]:
        """Tool calls with no matching tool result, in history order."""
        resolved = {r.id for r in self.tool_results()}
        return [c for c in self.tool_calls() if c.id not in resolved]

    def pending_tool_call_count(self) -> int:
        return len(self.pending_tool_calls())

    @property
    def is_stable(self) -> bool:
        return self.pending_tool_call_count() == 0


EMPTY_BODY = Body()


class BodyBuilder:
    """Fluent builder producing immutable :class:`Body` snapshots."""

    def __init__(self) -> None:
        self._interactions: list[Interaction] = []
        self._new: list[int] = []
        self._tool_filter = EXCLUDE_ALL
        self._context_filter = EXCLUDE_ALL
        self._json_output_schema: str | None = None
        self._turn_id: str | None = None

    @classmethod
    def create(cls) -> BodyBuilder:
        return cls()

    @classmethod
    def from_body(cls, body: Body | None) -> BodyBuilder:
        """Start from an existing snapshot, preserving its new markers."""
        b = cls()
        if body is not None:
            b._interactions.extend(body.interactions)
            b._new.extend(body.new_indices)
            b._tool_filter = body.tool_filter
            b._context_filter = body.context_filter
            b._json_output_schema = body.json_output_schema
        return b

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def with_tool_filter(self, expr: str | None) -> BodyBuilder:
        if expr is not None:
            self._tool_filter = expr
        return self

    def with_context_filter(self, expr: str | None) -> BodyBuilder:
        if expr is not None:
            self._context_filter = expr
        return self

    def with_json_output_schema(self, schema: str | None) -> BodyBuilder:
        if schema is not None:
            self._json_output_schema = schema
        return self

    def with_turn_id(self, turn_id: str | None) -> BodyBuilder:
        """Stamp *turn_id* on added interactions that have none."""
        self._turn_id = turn_id
        return self

    # ------------------------------------------------------------------
    # Appending
    # ------------------------------------------------------------------

    def _stamp(self, interaction: Interaction) -> Interaction:
        if self._turn_id and not interaction.turn_id:
            return interaction.with_turn_id(self._turn_id)
        return interaction

    def add(self, interaction: Interaction | None, *, mark_new: bool = True) -> BodyBuilder:
        if interaction is None:
            return self
        self._interactions.append(self._stamp(interaction))
        if mark_new:
            self._new.append(len(self._interactions) - 1)
        return self

    def add_range(
        self, items: Iterable[Interaction | None] | None, *, mark_new: bool = True
    ) -> BodyBuilder:
        for item in items or ():
            self.add(item, mark_new=mark_new)
        return self

    def add_text(
        self,
        agent: Agent,
        content: str,
        metrics: Metrics | None = None,
        reasoning: str = "",
    ) -> BodyBuilder:
        return self.add(
            TextInteraction(agent=agent, content=content, reasoning=reasoning, metrics=metrics)
        )

    def add_user(self, content: str) -> BodyBuilder:
        return self.add_text(Agent.USER, content)

    def add_assistant(self, content: str, metrics: Metrics | None = None) -> BodyBuilder:
        return self.add_text(Agent.ASSISTANT, content, metrics=metrics)

    def add_system(self, content: str) -> BodyBuilder:
        return self.add_text(Agent.SYSTEM, content)

    def add_tool_call(
        self, call_id: str, name: str, arguments: dict | None = None, metrics: Metrics | None = None
    ) -> BodyBuilder:
        return self.add(
            ToolCallInteraction(id=call_id, name=name, arguments=arguments or {}, metrics=metrics)
        )

    def add_tool_result(
        self,
        result: dict,
        call_id: str = "",
        name: str = "",
        metrics: Metrics | None = None,
        messages: Iterable[str] = (),
    ) -> BodyBuilder:
        return self.add(
            ToolResultInteraction(
                id=call_id,
                name=name,
                result=result,
                metrics=metrics,
                messages=tuple(messages),
            )
        )

    def add_error(self, content: str, metrics: Metrics | None = None) -> BodyBuilder:
        return self.add(ErrorInteraction(content=content, metrics=metrics))

    # ------------------------------------------------------------------
    # Replacing
    # ------------------------------------------------------------------

    def upsert_tool_call(self, call: ToolCallInteraction, *, mark_new: bool = True) -> bool:
        """
        Record *call* exactly once, keyed by its id.

        A call already present is replaced only by a snapshot whose
        arguments are at least as long as the stored ones, so a stale or
        out-of-order fragment cannot regress it.  Returns ``True`` when the
        history changed.
        """
        call = self._stamp(call)
        for idx, existing in enumerate(self._interactions):
            if not (isinstance(existing, ToolCallInteraction) and existing.id == call.id):
                continue
            if len(call.arguments_json) < len(existing.arguments_json):
                return False
            if (call.name, call.arguments) == (existing.name, existing.arguments):
                return False
            if not call.turn_id and existing.turn_id:
                call = replace(call, turn_id=existing.turn_id)
            self._interactions[idx] = call
            if mark_new:
                self._new.append(idx)
            return True

        self.add(call, mark_new=mark_new)
        return True

    def replace_range(
        self,
        start: int,
        end: int,
        items: Iterable[Interaction],
        *,
        mark_new: bool = True,
    ) -> BodyBuilder:
        """Replace ``interactions[start:end]`` with *items*."""
        items = [self._stamp(i) for i in items if i is not None]
        start = max(0, start)
        end = min(len(self._interactions), max(start, end))
        shift = len(items) - (end - start)

        markers: list[int] = []
        for idx in self._new:
            if idx < start:
                markers.append(idx)
            elif idx >= end:
                markers.append(idx + shift)
        if mark_new:
            markers.extend(range(start, start + len(items)))

        self._interactions[start:end] = items
        self._new = markers
        return self

    def clear_new_markers(self) -> BodyBuilder:
        self._new.clear()
        return self

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def build(self) -> Body:
        count = len(self._interactions)
        seen: set[int] = set()
        markers: list[int] = []
        for idx in self._new:
            if 0 <= idx < count and idx not in seen:
                seen.add(idx)
                markers.append(idx)
        logger.debug("Built body: interactions=%d new=%s", count, markers)
        return Body(
            interactions=tuple(self._interactions),
            new_indices=tuple(markers),
            tool_filter=self._tool_filter,
            context_filter=self._context_filter,
            json_output_schema=self._json_output_schema,
        )
