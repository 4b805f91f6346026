"""
Coalescing of streamed text and tool-call deltas.

Providers disagree on what a stream chunk contains: some send pure deltas,
some resend the cumulative text so far, and some replay an older prefix
after a retry.  :func:`coalesce_text` reconciles all three:

  - *cumulative*: the incoming text starts with what we have -> take it.
  - *stale*: what we have starts with the incoming text -> keep ours.
  - otherwise the incoming text is a delta -> append it.

Accumulated text therefore never shrinks, and replaying a snapshot that
was already applied is a no-op.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from parley.llm.types import (
    Agent,
    Metrics,
    TextInteraction,
    ToolCallFragment,
    ToolCallInteraction,
)

logger = logging.getLogger(__name__)


def coalesce_text(accumulated: str, incoming: str) -> str:
    """Merge *incoming* into *accumulated*; see the module docstring."""
    if not incoming:
        return accumulated
    if not accumulated:
        return incoming
    if incoming.startswith(accumulated):
        return incoming
    if accumulated.startswith(incoming):
        return accumulated
    return accumulated + incoming


class TextCoalescer:
    """Accumulates streamed text deltas into a single ``TextInteraction``."""

    def __init__(self, agent: Agent = Agent.ASSISTANT) -> None:
        self.agent = agent
        self.content = ""
        self.reasoning = ""
        self.metrics: Metrics | None = None
        self.fragments = 0

    def feed(self, delta: TextInteraction) -> TextInteraction:
        """Apply *delta* and return the accumulated snapshot."""
        self.content = coalesce_text(self.content, delta.content)
        self.reasoning = coalesce_text(self.reasoning, delta.reasoning)
        if delta.metrics is not None:
            self.metrics = delta.metrics
        self.fragments += 1
        return self.snapshot()

    @property
    def has_content(self) -> bool:
        return bool(self.content or self.reasoning)

    def snapshot(self) -> TextInteraction:
        return TextInteraction(
            agent=self.agent,
            content=self.content,
            reasoning=self.reasoning,
            metrics=self.metrics,
        )

    def reset(self) -> None:
        self.content = ""
        self.reasoning = ""
        self.metrics = None
        self.fragments = 0


@dataclass
class _CallBuffer:
    index: int
    id: str = ""
    name: str = ""
    raw: str = ""
    parsed: dict | None = None
    metrics: Metrics | None = None
    order: int = 0


class ToolCallCoalescer:
    """
    Accumulates tool-call fragments and snapshots keyed by call id.

    Fragments are pure deltas: their name and argument text are appended
    as they arrive.  Fragments without an id are keyed by their stream
    index until an id shows up.  Snapshots without an id update the latest
    id-less call of the same name.  Parsed snapshots
    (``ToolCallInteraction``) replace what we hold only when their argument
    JSON is at least as long, so an older snapshot arriving late cannot
    regress a call.

    :meth:`finish` parses raw argument text; failures are recorded in
    ``self.errors`` and the call is dropped.
    """

    def __init__(self) -> None:
        self._buf: dict[str, _CallBuffer] = {}
        self._index_keys: dict[int, str] = {}
        self.errors: list[str] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def feed(self, delta: ToolCallFragment | ToolCallInteraction) -> ToolCallInteraction:
        """Apply *delta* and return the current view of the call it belongs to."""
        if isinstance(delta, ToolCallInteraction):
            buf = self._feed_snapshot(delta)
        else:
            buf = self._feed_fragment(delta)
        return self._view(buf)

    def snapshots(self) -> list[ToolCallInteraction]:
        """Current best view of every call, in first-seen order, without parsing errors."""
        return [self._view(buf) for buf in self._ordered()]

    def finish(self) -> list[ToolCallInteraction]:
        """Finalize all buffered calls.  Unparsable calls are dropped."""
        calls: list[ToolCallInteraction] = []
        for buf in self._ordered():
            args = buf.parsed
            if args is None:
                raw = buf.raw or "{}"
                try:
                    args = json.loads(raw)
                except (json.JSONDecodeError, ValueError) as exc:
                    self.errors.append(
                        f"tool_call_json_parse_failed id={buf.id or buf.index} err={exc}"
                    )
                    logger.warning(
                        "Dropping tool call %s: arguments are not valid JSON",
                        buf.name or buf.index,
                    )
                    continue
                if not isinstance(args, dict):
                    self.errors.append(
                        f"tool_call_arguments_not_object id={buf.id or buf.index}"
                    )
                    continue
            calls.append(self._to_interaction(buf, args))
        return calls

    def reset(self) -> None:
        self._buf.clear()
        self._index_keys.clear()
        self.errors.clear()

    def __len__(self) -> int:
        return len(self._buf)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ordered(self) -> list[_CallBuffer]:
        return sorted(self._buf.values(), key=lambda b: b.order)

    def _key_for(self, call_id: str, index: int | None) -> str:
        if call_id:
            key = call_id
            if index is not None and index in self._index_keys:
                # An id arrived for a call that was buffered by index only.
                old = self._index_keys[index]
                if old != key and old in self._buf and not self._buf[old].id:
                    buf = self._buf.pop(old)
                    buf.id = call_id
                    self._buf[key] = buf
            if index is not None:
                self._index_keys[index] = key
            return key
        if index is not None and index in self._index_keys:
            return self._index_keys[index]
        key = f"#{index}"
        if index is not None:
            self._index_keys[index] = key
        return key

    def _buffer(self, key: str, index: int) -> _CallBuffer:
        buf = self._buf.get(key)
        if buf is None:
            buf = _CallBuffer(index=index, order=len(self._buf))
            self._buf[key] = buf
        return buf

    def _anonymous_key(self, name: str) -> str:
        # An id-less snapshot updates the latest id-less call with its name.
        for key, buf in reversed(self._buf.items()):
            if not buf.id and buf.name == name:
                return key
        return f"~{len(self._buf)}"

    def _feed_fragment(self, frag: ToolCallFragment) -> _CallBuffer:
        key = self._key_for(frag.id, frag.index)
        buf = self._buffer(key, frag.index)
        if frag.id and not buf.id:
            buf.id = frag.id
        buf.name += frag.name
        buf.raw += frag.arguments_text
        if frag.metrics is not None:
            buf.metrics = frag.metrics
        return buf

    def _feed_snapshot(self, call: ToolCallInteraction) -> _CallBuffer:
        key = call.id or self._anonymous_key(call.name)
        buf = self._buffer(key, len(self._buf))
        if call.id and not buf.id:
            buf.id = call.id
        buf.name = coalesce_text(buf.name, call.name)
        incoming = call.arguments_json
        current = json.dumps(buf.parsed, sort_keys=True) if buf.parsed is not None else buf.raw
        if len(incoming) >= len(current):
            buf.parsed = dict(call.arguments)
            buf.raw = incoming
        if call.metrics is not None:
            buf.metrics = call.metrics
        return buf

    def _view(self, buf: _CallBuffer) -> ToolCallInteraction:
        args = buf.parsed if buf.parsed is not None else self._try_parse(buf.raw)
        return self._to_interaction(buf, args or {})

    @staticmethod
    def _try_parse(raw: str) -> dict | None:
        if not raw:
            return None
        try:
            value = json.loads(raw)
        except (json.JSONDecodeError, ValueError):
            return None
        return value if isinstance(value, dict) else None

    @staticmethod
    def _to_interaction(buf: _CallBuffer, args: dict) -> ToolCallInteraction:
        return ToolCallInteraction(
            id=buf.id or f"call_{buf.index}",
            name=buf.name.strip(),
            arguments=args,
            metrics=buf.metrics,
        )
