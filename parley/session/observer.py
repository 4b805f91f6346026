"""
Session observer: a table of optional notification callbacks.

Every callback is optional.  Notifications are delivered synchronously and
in emission order; a callback that raises is logged and the session carries
on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from typing import TYPE_CHECKING, Any, Callable, Optional

from parley.llm.types import Interaction, ToolCallInteraction, ToolResultInteraction

if TYPE_CHECKING:
    from parley.llm.providers.base import Request
    from parley.llm.returns import Return

logger = logging.getLogger(__name__)


@dataclass
class Observer:
    """
    Callbacks invoked by ``ConversationSession``.

    Attributes
    ----------
    on_start:
        A run begins; receives the request.
    on_delta:
        A streamed text or tool-call fragment arrived.
    on_interaction_completed:
        An interaction was committed to history.
    on_tool_call:
        A pending tool call is about to execute.
    on_tool_result:
        A tool result was committed.
    on_final:
        The run reached a stable result.
    on_error:
        The run failed; receives an exception describing the failure.
    """

    on_start: Optional[Callable[["Request"], Any]] = None
    on_delta: Optional[Callable[[Interaction], Any]] = None
    on_interaction_completed: Optional[Callable[[Interaction], Any]] = None
    on_tool_call: Optional[Callable[[ToolCallInteraction], Any]] = None
    on_tool_result: Optional[Callable[[ToolResultInteraction], Any]] = None
    on_final: Optional[Callable[["Return"], Any]] = None
    on_error: Optional[Callable[[BaseException], Any]] = None

    def notify(self, event: str, *args: Any) -> None:
        """Invoke the ``event`` callback, logging rather than raising on failure."""
        callback = getattr(self, event, None)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Observer callback %s failed", event)


# ---------------------------------------------------------------------------
# Combinators
# ---------------------------------------------------------------------------


_EVENTS = tuple(f.name for f in fields(Observer))


def combine_observers(*observers: Observer | None) -> Observer:
    """Fan each notification out to every observer, in argument order."""
    active = [o for o in observers if o is not None]

    def _fan_out(event: str) -> Callable[..., None]:
        def dispatch(*args: Any) -> None:
            for obs in active:
                obs.notify(event, *args)

        return dispatch

    return Observer(**{event: _fan_out(event) for event in _EVENTS})


def logging_observer(log: logging.Logger | None = None, level: int = logging.DEBUG) -> Observer:
    """
    Observer that writes a diagnostic transcript of the session to *log*.

    Text is abbreviated to keep the transcript readable.
    """
    log = log or logging.getLogger("parley.trace")

    def _short(text: str, limit: int = 120) -> str:
        text = (text or "").replace("\n", " ")
        return text if len(text) <= limit else text[:limit] + "..."

    return Observer(
        on_start=lambda req: log.log(
            level, "start provider=%s model=%s interactions=%d",
            req.provider, req.model, len(req.body),
        ),
        on_delta=lambda i: log.log(level, "delta %s: %s", i.agent.value, _short(i.preview())),
        on_interaction_completed=lambda i: log.log(
            level, "interaction %s turn=%s: %s", i.agent.value, i.turn_id, _short(i.preview())
        ),
        on_tool_call=lambda c: log.log(
            level, "tool_call id=%s name=%s args=%s", c.id, c.name, _short(c.arguments_json)
        ),
        on_tool_result=lambda r: log.log(
            level, "tool_result id=%s name=%s success=%s", r.id, r.name, r.succeeded
        ),
        on_final=lambda ret: log.log(
            level, "final success=%s interactions=%d", ret.success, len(ret.body)
        ),
        on_error=lambda exc: log.log(logging.WARNING, "error: %s", exc),
    )
